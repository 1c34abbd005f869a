import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# --- Configuration ---
APP_NAME = "calcpad"
DEBUG_MODE = False  # Set to True while developing the web API

WEB_HOST = "0.0.0.0"
WEB_PORT = 5200

# Frankfurter is free and needs no API key
DEFAULT_PROVIDER = "frankfurter"
DEFAULT_BASE_CURRENCY = "USD"

# Connection timeout handed to the HTTP transport (seconds)
HTTP_TIMEOUT = 10

CURRENCY_API_KEY_ENV = "CALCPAD_CURRENCY_API_KEY"
CRYPTO_API_KEY_ENV = "CALCPAD_CRYPTO_API_KEY"


# --- Per-user paths ---


def config_dir() -> Path:
    """Directory holding settings.json and the CLI history."""
    path = Path(os.path.expanduser("~")) / ".config" / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def data_dir() -> Path:
    """Directory holding the currency rate cache."""
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path(os.path.expanduser("~")) / ".local" / "share"
    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def rates_cache_path() -> Path:
    return data_dir() / "currency_rates.json"


def history_path() -> Path:
    return config_dir() / "history"


# --- Settings ---


class Settings:
    """User settings consumed by the calculation engine.

    Only the handful of values the engine needs live here: the base currency
    used for "100 EUR" style lines, the fiat rate provider with its key, the
    crypto provider key and the timestamp of the last successful refresh.
    """

    def __init__(
        self,
        base_currency: str = DEFAULT_BASE_CURRENCY,
        currency_provider: str = DEFAULT_PROVIDER,
        currency_api_key: str = "",
        crypto_api_key: str = "",
        last_currency_update: Optional[str] = None,
        path: Optional[Path] = None,
    ):
        self.base_currency = (base_currency or DEFAULT_BASE_CURRENCY).upper()
        self.currency_provider = currency_provider or DEFAULT_PROVIDER
        self.currency_api_key = currency_api_key or ""
        self.crypto_api_key = crypto_api_key or ""
        self.last_currency_update = last_currency_update
        self.path = path

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Settings":
        """Loads settings from disk, falling back to defaults."""
        path = Path(path) if path else config_dir() / "settings.json"
        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    logger.warning(f"Ignoring malformed settings file {path}")
                    data = {}
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to read settings from {path}: {e}")
                data = {}

        settings = cls(
            base_currency=data.get("base_currency", DEFAULT_BASE_CURRENCY),
            currency_provider=data.get("currency_provider", DEFAULT_PROVIDER),
            currency_api_key=data.get("currency_api_key", ""),
            crypto_api_key=data.get("crypto_api_key", ""),
            last_currency_update=data.get("last_currency_update"),
            path=path,
        )

        # Environment wins over the stored keys
        if os.environ.get(CURRENCY_API_KEY_ENV):
            settings.currency_api_key = os.environ[CURRENCY_API_KEY_ENV]
        if os.environ.get(CRYPTO_API_KEY_ENV):
            settings.crypto_api_key = os.environ[CRYPTO_API_KEY_ENV]
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_currency": self.base_currency,
            "currency_provider": self.currency_provider,
            "currency_api_key": self.currency_api_key,
            "crypto_api_key": self.crypto_api_key,
            "last_currency_update": self.last_currency_update,
        }

    def save(self):
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save settings to {self.path}: {e}")
