"""Shared fixtures; nothing here touches the network or the real home directory."""

from unittest.mock import Mock

import pytest
import requests

from calcpad.config import Settings
from calcpad.currency import CurrencyService, RateStore, FALLBACK_RATES
from calcpad.units import UnitConverter


def make_response(payload):
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


def make_http(routes):
    """A stand-in for requests.Session whose get() answers by URL fragment."""
    http = Mock()

    def get(url, headers=None, timeout=None):
        for fragment, payload in routes.items():
            if fragment in url:
                if isinstance(payload, Exception):
                    raise payload
                return make_response(payload)
        raise requests.ConnectionError(f"no route for {url}")

    http.get.side_effect = get
    return http


@pytest.fixture(scope="session")
def units():
    # Building the pint registry is slow, so one converter serves every test
    return UnitConverter()


@pytest.fixture
def settings(tmp_path):
    return Settings(path=tmp_path / "settings.json")


@pytest.fixture
def currency(settings, tmp_path):
    service = CurrencyService(
        settings,
        store=RateStore(FALLBACK_RATES),
        cache_path=tmp_path / "currency_rates.json",
        http=make_http({}),
    )
    yield service
    service.shutdown()
