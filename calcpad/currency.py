import re
import json
import logging
import threading
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, Future
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, Tuple, List, Callable

import requests

from calcpad import config
from calcpad.errors import UnknownCurrency, NetworkError, InvalidResponse

logger = logging.getLogger(__name__)


BASE_CURRENCY = "USD"

# Approximate units per 1 USD, used when no cache exists so conversions work offline
FALLBACK_RATES = {
    # Fiat
    "USD": 1.0,
    "EUR": 0.92,
    "TRY": 35.5,
    "GBP": 0.79,
    "JPY": 157.0,
    "CNY": 7.3,
    "RUB": 95.0,
    "AUD": 1.57,
    "CAD": 1.44,
    "CHF": 0.88,
    "INR": 84.0,
    "KRW": 1450.0,
    "BRL": 6.2,
    "MXN": 20.5,
    "PLN": 4.0,
    "SEK": 11.0,
    "NOK": 11.2,
    "DKK": 7.0,
    "SGD": 1.36,
    "HKD": 7.8,
    "NZD": 1.78,
    "ZAR": 18.5,
    "THB": 35.0,
    "AED": 3.67,
    "SAR": 3.75,
    "ALL": 95.0,
    # Crypto
    "BTC": 0.000023,
    "ETH": 0.00043,
    "BNB": 0.0033,
    "XRP": 1.6,
    "ADA": 1.7,
    "SOL": 0.0095,
    "DOGE": 12.5,
    "DOT": 0.125,
    "MATIC": 1.1,
    "LTC": 0.014,
    "USDT": 1.0,
    "USDC": 1.0,
    "TRX": 5.0,
}

CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "₺": "TRY",
    "£": "GBP",
    "¥": "JPY",
    "₽": "RUB",
    "₿": "BTC",
    "Ξ": "ETH",
}

CRYPTO_SYMBOLS = [
    "BTC", "ETH", "USDT", "USDC", "BNB", "XRP", "ADA",
    "DOGE", "SOL", "TRX", "DOT", "LTC", "MATIC",
]

COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDT": "tether",
    "USDC": "usd-coin",
    "BNB": "binancecoin",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "SOL": "solana",
    "TRX": "tron",
    "DOT": "polkadot",
    "LTC": "litecoin",
    "MATIC": "matic-network",
}

FREECRYPTOAPI_URL = "https://api.freecryptoapi.com/v1/getData?symbol={symbol}"
COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price?ids={ids}&vs_currencies=usd"

_AMOUNT = r"(\d+(?:[.,]\d+)?)"
_CODE = r"([A-Za-z]{2,5})"

# "100 USD to EUR", "100usd -> eur", "100 USD EUR"
FULL_PATTERN = re.compile(
    r"^\s*" + _AMOUNT + r"\s*" + _CODE + r"\b\s*(?:to|->|=>|>)?\s*" + _CODE + r"\s*$",
    re.IGNORECASE,
)
# "100 EUR", converted to the base currency
SHORT_PATTERN = re.compile(r"^\s*" + _AMOUNT + r"\s*" + _CODE + r"\s*$", re.IGNORECASE)

_SYMBOL_CLASS = "[" + re.escape("".join(CURRENCY_SYMBOLS)) + "]"
# "$100 to EUR": a symbol in front of the amount moves behind it
LEADING_SYMBOL_PATTERN = re.compile(r"^\s*(" + _SYMBOL_CLASS + r")\s*(\d+(?:[.,]\d+)?)")


# --- Provider response parsers ---


def parse_rates_object(data: Dict[str, Any]) -> Dict[str, float]:
    """{"rates": {"EUR": 0.92, ...}} (Frankfurter, OpenExchangeRates, Fixer)."""
    rates = data.get("rates")
    if not isinstance(rates, dict):
        raise InvalidResponse("Response has no 'rates' object")
    return {str(code).upper(): float(rate) for code, rate in rates.items()}


def parse_quotes(data: Dict[str, Any]) -> Dict[str, float]:
    """{"quotes": {"USDEUR": 0.92, ...}} (exchangerate.host, CurrencyLayer)."""
    quotes = data.get("quotes")
    if not isinstance(quotes, dict):
        raise InvalidResponse("Response has no 'quotes' object")
    return {
        key[3:].upper(): float(rate)
        for key, rate in quotes.items()
        if key.startswith(BASE_CURRENCY) and len(key) > 3
    }


def parse_coinapi(data: Dict[str, Any]) -> Dict[str, float]:
    """{"rates": [{"asset_id_quote": "EUR", "rate": 0.92}, ...]} (CoinAPI)."""
    rates = data.get("rates")
    if not isinstance(rates, list):
        raise InvalidResponse("Response has no 'rates' array")
    parsed = {}
    for entry in rates:
        if isinstance(entry, dict) and "asset_id_quote" in entry and "rate" in entry:
            parsed[str(entry["asset_id_quote"]).upper()] = float(entry["rate"])
    return parsed


def parse_twelvedata(data: Dict[str, Any]) -> Dict[str, float]:
    """{"symbol": "EUR/USD", "rate": 1.08} gives USD per EUR."""
    try:
        usd_per_eur = float(data["rate"])
    except (KeyError, TypeError, ValueError):
        raise InvalidResponse("Response has no 'rate' value")
    if usd_per_eur <= 0:
        raise InvalidResponse(f"Invalid EUR/USD rate {usd_per_eur}")
    return {"EUR": 1.0 / usd_per_eur}


def parse_alphavantage(data: Dict[str, Any]) -> Dict[str, float]:
    """FX_DAILY EUR->USD series; the latest close gives USD per EUR."""
    series = data.get("Time Series FX (Daily)")
    if not isinstance(series, dict) or not series:
        raise InvalidResponse("Response has no 'Time Series FX (Daily)' data")
    latest = series[max(series.keys())]
    try:
        usd_per_eur = float(latest["4. close"])
    except (KeyError, TypeError, ValueError):
        raise InvalidResponse("Latest FX_DAILY entry has no close value")
    if usd_per_eur <= 0:
        raise InvalidResponse(f"Invalid EUR/USD close {usd_per_eur}")
    return {"EUR": 1.0 / usd_per_eur}


Provider = namedtuple(
    "Provider", ["url_template", "requires_key", "auth_header", "parser", "full_table"]
)

PROVIDERS = {
    "frankfurter": Provider(
        "https://api.frankfurter.dev/v1/latest?base=USD", False, None, parse_rates_object, True
    ),
    "openexchangerates": Provider(
        "https://openexchangerates.org/api/latest.json?app_id={key}", True, None, parse_rates_object, True
    ),
    "exchangerate.host": Provider(
        "https://api.exchangerate.host/live?access_key={key}", True, None, parse_quotes, True
    ),
    "alphavantage": Provider(
        "https://www.alphavantage.co/query?function=FX_DAILY&from_symbol=EUR&to_symbol=USD&apikey={key}",
        True, None, parse_alphavantage, False,
    ),
    "twelvedata": Provider(
        "https://api.twelvedata.com/exchange_rate?symbol=EUR/USD&apikey={key}",
        True, None, parse_twelvedata, False,
    ),
    "coinapi": Provider(
        "https://rest.coinapi.io/v1/exchangerate/USD", True, "X-CoinAPI-Key", parse_coinapi, True
    ),
    "fixer": Provider(
        "https://data.fixer.io/api/latest?access_key={key}", True, None, parse_rates_object, True
    ),
    "currencylayer": Provider(
        "https://api.currencylayer.com/live?access_key={key}", True, None, parse_quotes, True
    ),
}


class RateStore:
    """Currency code -> units of that currency per 1 USD."""

    def __init__(self, rates: Optional[Dict[str, float]] = None):
        self._lock = threading.Lock()
        self._rates: Dict[str, float] = {}
        self.loaded = False
        if rates:
            self.replace(rates)

    def get(self, code: str) -> Optional[float]:
        with self._lock:
            return self._rates.get(code.upper())

    def __contains__(self, code: str) -> bool:
        with self._lock:
            return code.upper() in self._rates

    def __len__(self) -> int:
        with self._lock:
            return len(self._rates)

    def codes(self) -> List[str]:
        with self._lock:
            return sorted(self._rates.keys())

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._rates)

    def replace(self, rates: Dict[str, float]):
        """Swaps in a whole new table; USD stays pinned to 1.0."""
        with self._lock:
            self._rates = {code.upper(): float(rate) for code, rate in rates.items()}
            self._rates[BASE_CURRENCY] = 1.0
            self.loaded = True

    def update(self, code: str, rate: float):
        with self._lock:
            self._rates[code.upper()] = float(rate)
            self._rates[BASE_CURRENCY] = 1.0
            self.loaded = True

    def load(self, path: Path) -> bool:
        """Loads the JSON cache written by save(). Returns False if unusable."""
        path = Path(path)
        if not path.exists():
            return False
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read rate cache {path}: {e}")
            return False

        rates = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(rates, dict) or not rates:
            logger.warning(f"Rate cache {path} has no rates")
            return False

        try:
            self.replace({code: float(rate) for code, rate in rates.items()})
        except (TypeError, ValueError) as e:
            logger.warning(f"Rate cache {path} holds a non-numeric rate: {e}")
            return False
        logger.info(f"Loaded {len(self)} cached rates from {path}")
        return True

    def save(self, path: Path):
        """Writes {"base": "USD", "rates": {...}} over the whole file."""
        path = Path(path)
        payload = {"base": BASE_CURRENCY, "rates": self.snapshot()}
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
        except OSError as e:
            logger.error(f"Failed to write rate cache {path}: {e}")


class CurrencyService:
    """Converts between currencies and keeps the rate table fresh.

    Rates are loaded from the disk cache (or the built-in snapshot) on
    construction. refresh_rates() runs in a single background worker, so
    requests go out one at a time and the caller gets a Future back.
    """

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        store: Optional[RateStore] = None,
        cache_path: Optional[Path] = None,
        http: Optional[requests.Session] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.settings = settings or config.Settings()
        self.cache_path = Path(cache_path) if cache_path else config.rates_cache_path()
        self.http = http or requests.Session()
        self._executor = executor
        self._executor_lock = threading.Lock()
        self._rates_updated_callbacks: List[Callable[[], None]] = []
        self._error_callbacks: List[Callable[[str], None]] = []

        if store is not None:
            self.store = store
        else:
            self.store = RateStore()
            if not self.store.load(self.cache_path):
                logger.info("No usable rate cache, using built-in fallback rates")
                self.store.replace(FALLBACK_RATES)

    # --- Configuration ---

    @property
    def provider(self) -> str:
        return self.settings.currency_provider

    def set_provider(self, provider: str):
        self.settings.currency_provider = provider

    def set_api_key(self, key: str):
        self.settings.currency_api_key = key or ""

    def on_rates_updated(self, callback: Callable[[], None]):
        self._rates_updated_callbacks.append(callback)

    def on_error(self, callback: Callable[[str], None]):
        self._error_callbacks.append(callback)

    def has_rates(self) -> bool:
        return self.store.loaded and len(self.store) > 0

    def supported_currencies(self) -> List[str]:
        return self.store.codes()

    # --- Conversion ---

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        """Converts through USD. Raises UnknownCurrency for codes not in the table."""
        from_code = from_currency.upper()
        to_code = to_currency.upper()

        from_rate = self.store.get(from_code)
        if from_rate is None:
            raise UnknownCurrency(from_code)
        to_rate = self.store.get(to_code)
        if to_rate is None:
            raise UnknownCurrency(to_code)

        if from_code == to_code:
            return float(amount)
        return amount / from_rate * to_rate

    @staticmethod
    def substitute_symbols(expression: str) -> str:
        expr = expression.strip()
        leading = LEADING_SYMBOL_PATTERN.match(expr)
        if leading:
            symbol, amount = leading.groups()
            expr = f"{amount} {CURRENCY_SYMBOLS[symbol]}" + expr[leading.end():]
        for symbol, code in CURRENCY_SYMBOLS.items():
            expr = expr.replace(symbol, f" {code} ")
        return expr.strip()

    def parse_and_convert(
        self, expression: str, base_currency: Optional[str] = None
    ) -> Optional[Tuple[float, str, str]]:
        """Parses '100 USD to EUR' or '100 EUR' and converts it.

        Returns (result, from_code, to_code), or None when the line is not a
        currency conversion or names a currency the table does not know.
        """
        expr = self.substitute_symbols(expression)

        implicit_target = False
        match = FULL_PATTERN.match(expr)
        if match:
            amount_str, from_code, to_code = match.groups()
        else:
            match = SHORT_PATTERN.match(expr)
            if not match:
                return None
            amount_str, from_code = match.groups()
            to_code = base_currency or self.settings.base_currency
            implicit_target = True

        from_code = from_code.upper()
        to_code = to_code.upper()
        if implicit_target and from_code == to_code:
            return None

        try:
            amount = float(amount_str.replace(",", "."))
            result = self.convert(amount, from_code, to_code)
        except ValueError:
            return None
        except UnknownCurrency as e:
            logger.debug(f"Not a currency conversion '{expression}': {e}")
            return None
        return result, from_code, to_code

    # --- Refresh ---

    def refresh_rates(self) -> Future:
        """Schedules a fiat + crypto refresh on the background worker."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rates")
            future = self._executor.submit(self.refresh_rates_now)
        future.add_done_callback(self._log_refresh_failure)
        return future

    @staticmethod
    def _log_refresh_failure(future: Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Currency refresh crashed: {error}", exc_info=error)

    def shutdown(self):
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def refresh_rates_now(self) -> bool:
        """Runs the refresh in the calling thread. Returns True if fiat rates were updated."""
        updated = False
        try:
            updated = self._refresh_fiat()
        except (NetworkError, InvalidResponse) as e:
            logger.warning(f"Fiat rate refresh via {self.provider} failed: {e}")
            self._emit_error(str(e))
        finally:
            # Crypto runs regardless of the fiat outcome
            self.refresh_crypto_rates()
        return updated

    def _refresh_fiat(self) -> bool:
        provider = PROVIDERS.get(self.provider)
        if provider is None:
            raise InvalidResponse(f"Unknown provider: {self.provider}")

        api_key = self.settings.currency_api_key
        if provider.requires_key and not api_key:
            logger.info(f"No API key set for {self.provider}, keeping cached rates")
            return False

        url = provider.url_template.format(key=api_key)
        headers = {"Accept": "application/json"}
        if provider.auth_header:
            headers[provider.auth_header] = api_key

        data = self._get_json(url, headers)
        try:
            rates = provider.parser(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise InvalidResponse(f"Malformed {self.provider} response: {e}")
        if not rates:
            raise InvalidResponse("No rates found in API response")

        if provider.full_table:
            self.store.replace(rates)
        else:
            for code, rate in rates.items():
                self.store.update(code, rate)
        self.store.save(self.cache_path)

        logger.info(f"Updated {len(self.store)} rates from {self.provider}")
        self.settings.last_currency_update = datetime.now(timezone.utc).isoformat()
        self._emit_rates_updated()
        return True

    def refresh_crypto_rates(self) -> int:
        """Updates crypto prices; returns how many symbols were updated."""
        crypto_key = self.settings.crypto_api_key
        if not crypto_key:
            return self._fetch_all_coingecko_rates()

        updated = 0
        for symbol in CRYPTO_SYMBOLS:
            price = self._fetch_freecryptoapi_price(symbol, crypto_key)
            source = "FreeCryptoAPI"
            if price is None:
                price = self._fetch_coingecko_price(symbol)
                source = "CoinGecko fallback"
            if price is None:
                continue
            self._store_crypto_price(symbol, price)
            logger.debug(f"{symbol} = {price} USD ({source})")
            updated += 1
        return updated

    def _store_crypto_price(self, symbol: str, usd_price: float):
        self.store.update(symbol, 1.0 / usd_price)
        self.store.save(self.cache_path)
        self._emit_rates_updated()

    def _fetch_freecryptoapi_price(self, symbol: str, key: str) -> Optional[float]:
        headers = {"Accept": "application/json", "Authorization": f"Bearer {key}"}
        try:
            data = self._get_json(FREECRYPTOAPI_URL.format(symbol=symbol), headers)
        except (NetworkError, InvalidResponse) as e:
            logger.debug(f"FreeCryptoAPI failed for {symbol}: {e}")
            return None

        symbols = data.get("symbols")
        if data.get("status") != "success" or not isinstance(symbols, list) or not symbols:
            return None
        try:
            price = float(symbols[0].get("last"))
        except (AttributeError, TypeError, ValueError):
            return None
        return price if price > 0 else None

    def _fetch_coingecko_price(self, symbol: str) -> Optional[float]:
        coin_id = COINGECKO_IDS.get(symbol)
        if coin_id is None:
            return None
        try:
            data = self._get_json(COINGECKO_URL.format(ids=coin_id), {"Accept": "application/json"})
        except (NetworkError, InvalidResponse) as e:
            logger.debug(f"CoinGecko failed for {symbol}: {e}")
            return None
        return self._coingecko_price(data, coin_id)

    def _fetch_all_coingecko_rates(self) -> int:
        ids = ",".join(COINGECKO_IDS[symbol] for symbol in CRYPTO_SYMBOLS)
        try:
            data = self._get_json(COINGECKO_URL.format(ids=ids), {"Accept": "application/json"})
        except (NetworkError, InvalidResponse) as e:
            logger.warning(f"CoinGecko crypto refresh failed: {e}")
            return 0

        updated = 0
        for symbol in CRYPTO_SYMBOLS:
            price = self._coingecko_price(data, COINGECKO_IDS[symbol])
            if price is not None:
                self.store.update(symbol, 1.0 / price)
                updated += 1

        if updated:
            self.store.save(self.cache_path)
            logger.info(f"Updated {updated} crypto rates (CoinGecko)")
            self._emit_rates_updated()
        return updated

    @staticmethod
    def _coingecko_price(data: Dict[str, Any], coin_id: str) -> Optional[float]:
        coin = data.get(coin_id)
        if not isinstance(coin, dict) or "usd" not in coin:
            return None
        try:
            price = float(coin["usd"])
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None

    def _get_json(self, url: str, headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = self.http.get(url, headers=headers, timeout=config.HTTP_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NetworkError(str(e))

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponse(f"Response is not JSON: {e}")
        if not isinstance(data, dict):
            raise InvalidResponse("Invalid API response")
        return data

    def _emit_rates_updated(self):
        for callback in self._rates_updated_callbacks:
            callback()

    def _emit_error(self, message: str):
        for callback in self._error_callbacks:
            callback(message)
