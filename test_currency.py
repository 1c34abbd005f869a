"""Tests for currency conversion and rate refresh, with the HTTP layer mocked."""

import json
import threading
from concurrent.futures import Future
from unittest.mock import Mock

import pytest
import requests

from calcpad import config
from calcpad.config import Settings
from calcpad.currency import (
    CurrencyService,
    RateStore,
    FALLBACK_RATES,
    CRYPTO_SYMBOLS,
    COINGECKO_IDS,
    parse_rates_object,
    parse_quotes,
    parse_coinapi,
    parse_twelvedata,
    parse_alphavantage,
)
from calcpad.errors import UnknownCurrency, NetworkError, InvalidResponse

from conftest import make_http, make_response


def coingecko_payload(price):
    return {coin_id: {"usd": price} for coin_id in COINGECKO_IDS.values()}


def test_convert(currency):
    assert currency.convert(100, "USD", "EUR") == pytest.approx(92.0)
    assert currency.convert(92, "eur", "usd") == pytest.approx(100.0)
    assert currency.convert(5, "EUR", "EUR") == 5.0


def test_convert_unknown_currency(currency):
    with pytest.raises(UnknownCurrency) as excinfo:
        currency.convert(1, "ZZZ", "USD")
    assert excinfo.value.code == "ZZZ"


@pytest.mark.parametrize(
    "line, from_code, to_code, expected",
    [
        ("100 USD to EUR", "USD", "EUR", 92.0),
        ("100usd -> eur", "USD", "EUR", 92.0),
        ("100 USD EUR", "USD", "EUR", 92.0),
        ("$100 to EUR", "USD", "EUR", 92.0),
        ("100 USDT to USD", "USDT", "USD", 100.0),
        ("92 EUR", "EUR", "USD", 100.0),
    ],
)
def test_parse_and_convert(currency, line, from_code, to_code, expected):
    result, parsed_from, parsed_to = currency.parse_and_convert(line)
    assert (parsed_from, parsed_to) == (from_code, to_code)
    assert result == pytest.approx(expected)


def test_parse_and_convert_uses_given_base(currency):
    result, _, to_code = currency.parse_and_convert("100 USD", base_currency="EUR")
    assert to_code == "EUR"
    assert result == pytest.approx(92.0)


@pytest.mark.parametrize(
    "line", ["100 USD", "100 ZZZ to EUR", "10 km to miles", "2 + 2", "hello", ""]
)
def test_parse_and_convert_rejects(currency, line):
    assert currency.parse_and_convert(line) is None


def test_substitute_symbols():
    assert CurrencyService.substitute_symbols("€50") == "50 EUR"
    assert CurrencyService.substitute_symbols("$100 to £") == "100 USD to  GBP"


def test_rate_store_round_trip(tmp_path):
    path = tmp_path / "rates.json"
    RateStore({"EUR": 0.5, "USD": 3.0}).save(path)

    saved = json.loads(path.read_text())
    assert saved == {"base": "USD", "rates": {"EUR": 0.5, "USD": 1.0}}

    store = RateStore()
    assert store.load(path)
    assert store.get("eur") == 0.5
    assert "USD" in store
    assert store.codes() == ["EUR", "USD"]


def test_rate_store_rejects_bad_cache(tmp_path):
    path = tmp_path / "rates.json"
    assert not RateStore().load(path)

    path.write_text("{not json")
    assert not RateStore().load(path)

    path.write_text(json.dumps({"base": "USD", "rates": {}}))
    assert not RateStore().load(path)


def test_service_falls_back_without_cache(settings, tmp_path):
    service = CurrencyService(settings, cache_path=tmp_path / "missing.json", http=Mock())
    assert service.has_rates()
    assert "EUR" in service.supported_currencies()
    assert len(service.supported_currencies()) == len(FALLBACK_RATES)


def test_service_loads_cache(settings, tmp_path):
    path = tmp_path / "rates.json"
    RateStore({"EUR": 0.5}).save(path)
    service = CurrencyService(settings, cache_path=path, http=Mock())
    assert service.supported_currencies() == ["EUR", "USD"]
    assert service.convert(1, "USD", "EUR") == 0.5


def test_provider_parsers():
    assert parse_rates_object({"rates": {"eur": 0.9}}) == {"EUR": 0.9}
    assert parse_quotes({"quotes": {"USDEUR": 0.9, "USDGBP": 0.8}}) == {"EUR": 0.9, "GBP": 0.8}
    assert parse_coinapi({"rates": [{"asset_id_quote": "EUR", "rate": 0.9}, {"bogus": 1}]}) == {"EUR": 0.9}
    assert parse_twelvedata({"symbol": "EUR/USD", "rate": "1.25"}) == {"EUR": 0.8}

    series = {
        "2024-01-01": {"4. close": "2.0"},
        "2024-01-02": {"4. close": "1.25"},
    }
    assert parse_alphavantage({"Time Series FX (Daily)": series}) == {"EUR": 0.8}


@pytest.mark.parametrize(
    "parser", [parse_rates_object, parse_quotes, parse_coinapi, parse_twelvedata, parse_alphavantage]
)
def test_provider_parsers_reject_missing_data(parser):
    with pytest.raises(InvalidResponse):
        parser({"error": "bad key"})


def test_refresh_replaces_table(currency, settings):
    currency.http = make_http({
        "frankfurter": {"base": "USD", "rates": {"EUR": 0.5, "GBP": 0.25}},
        "coingecko": coingecko_payload(50000.0),
    })
    updates = []
    currency.on_rates_updated(lambda: updates.append(True))

    assert currency.refresh_rates_now()

    assert currency.convert(1, "USD", "EUR") == 0.5
    assert currency.store.get("USD") == 1.0
    assert "JPY" not in currency.supported_currencies()
    assert currency.store.get("BTC") == pytest.approx(1 / 50000.0)
    assert settings.last_currency_update is not None
    assert updates

    cached = json.loads(currency.cache_path.read_text())
    assert cached["rates"]["GBP"] == 0.25


def test_refresh_passes_timeout(currency):
    currency.http = make_http({"frankfurter": {"rates": {"EUR": 0.5}}, "coingecko": {}})
    currency.refresh_rates_now()
    for call in currency.http.get.call_args_list:
        assert call.kwargs["timeout"] == config.HTTP_TIMEOUT


def test_single_pair_provider_merges(currency, settings):
    settings.currency_provider = "twelvedata"
    settings.currency_api_key = "secret"
    currency.http = make_http({"twelvedata": {"rate": 1.25}, "coingecko": {}})

    assert currency.refresh_rates_now()
    assert currency.store.get("EUR") == pytest.approx(0.8)
    assert currency.store.get("GBP") == FALLBACK_RATES["GBP"]


def test_coinapi_sends_key_header(currency, settings):
    settings.currency_provider = "coinapi"
    currency.set_api_key("secret")
    currency.http = make_http({
        "coinapi": {"rates": [{"asset_id_quote": "EUR", "rate": 0.5}]},
        "coingecko": {},
    })

    assert currency.refresh_rates_now()
    first_call = currency.http.get.call_args_list[0]
    assert first_call.kwargs["headers"]["X-CoinAPI-Key"] == "secret"


def test_refresh_skips_fiat_without_key(currency, settings):
    currency.set_provider("fixer")
    currency.http = make_http({"coingecko": coingecko_payload(2.0)})

    assert not currency.refresh_rates_now()
    urls = [call.args[0] for call in currency.http.get.call_args_list]
    assert not any("fixer" in url for url in urls)
    assert currency.store.get("EUR") == FALLBACK_RATES["EUR"]
    assert currency.store.get("BTC") == 0.5


def test_refresh_network_failure_keeps_rates(currency):
    currency.http = make_http({"frankfurter": requests.ConnectionError("offline")})
    errors = []
    currency.on_error(errors.append)

    assert not currency.refresh_rates_now()
    assert errors and "offline" in errors[0]
    assert currency.store.snapshot() == RateStore(FALLBACK_RATES).snapshot()
    assert not currency.cache_path.exists()


def test_refresh_http_error_status(currency):
    response = make_response({})
    response.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
    currency.http = Mock()
    currency.http.get.return_value = response

    with pytest.raises(NetworkError):
        currency._get_json("https://api.frankfurter.dev/v1/latest", {})


def test_invalid_json_response(currency):
    response = make_response(None)
    response.json.side_effect = ValueError("no json")
    currency.http = Mock()
    currency.http.get.return_value = response
    with pytest.raises(InvalidResponse):
        currency._get_json("https://example.invalid", {})

    currency.http.get.return_value = make_response(["not", "a", "dict"])
    with pytest.raises(InvalidResponse):
        currency._get_json("https://example.invalid", {})


def test_crypto_falls_back_to_coingecko(currency, settings):
    settings.crypto_api_key = "crypto-key"
    currency.http = make_http({
        "freecryptoapi": {"status": "error"},
        "coingecko": coingecko_payload(4.0),
    })

    assert currency.refresh_crypto_rates() == len(CRYPTO_SYMBOLS)
    assert currency.store.get("ETH") == 0.25

    freecrypto_calls = [
        call for call in currency.http.get.call_args_list if "freecryptoapi" in call.args[0]
    ]
    assert freecrypto_calls[0].kwargs["headers"]["Authorization"] == "Bearer crypto-key"


def test_crypto_uses_freecryptoapi_price(currency, settings):
    settings.crypto_api_key = "crypto-key"
    currency.http = make_http({
        "freecryptoapi": {"status": "success", "symbols": [{"last": "10"}]},
    })

    assert currency.refresh_crypto_rates() == len(CRYPTO_SYMBOLS)
    assert currency.store.get("BTC") == pytest.approx(0.1)


def test_refresh_rates_runs_in_background(settings, tmp_path):
    service = CurrencyService(
        settings,
        store=RateStore(FALLBACK_RATES),
        cache_path=tmp_path / "rates.json",
        http=make_http({"frankfurter": {"rates": {"EUR": 0.7}}, "coingecko": {}}),
    )
    try:
        future = service.refresh_rates()
        assert isinstance(future, Future)
        assert future.result(timeout=5) is True
        assert service.store.get("EUR") == 0.7
    finally:
        service.shutdown()


def test_refresh_requests_share_one_worker(currency):
    workers = []
    currency.refresh_rates_now = Mock(side_effect=lambda: workers.append(threading.current_thread().name))
    futures = []
    callers = [threading.Thread(target=lambda: futures.append(currency.refresh_rates())) for _ in range(4)]
    try:
        for caller in callers:
            caller.start()
        for caller in callers:
            caller.join()
        for future in futures:
            future.result(timeout=5)
        assert len(workers) == 4
        assert len(set(workers)) == 1
    finally:
        currency.shutdown()


def test_refresh_crash_is_logged(currency, caplog):
    currency.refresh_rates_now = Mock(side_effect=RuntimeError("boom"))
    future = currency.refresh_rates()
    with pytest.raises(RuntimeError):
        future.result(timeout=5)
    currency.shutdown()
    assert "Currency refresh crashed: boom" in caplog.text


def test_settings_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"base_currency": "eur", "currency_api_key": "stored"}))
    monkeypatch.setenv(config.CURRENCY_API_KEY_ENV, "from-env")
    monkeypatch.delenv(config.CRYPTO_API_KEY_ENV, raising=False)

    settings = Settings.load(path)
    assert settings.base_currency == "EUR"
    assert settings.currency_api_key == "from-env"
    assert settings.crypto_api_key == ""
    assert settings.currency_provider == config.DEFAULT_PROVIDER


def test_settings_save_and_corrupt_file(tmp_path, monkeypatch):
    monkeypatch.delenv(config.CURRENCY_API_KEY_ENV, raising=False)
    path = tmp_path / "settings.json"
    settings = Settings(base_currency="gbp", path=path)
    settings.last_currency_update = "2024-01-01T00:00:00+00:00"
    settings.save()
    assert Settings.load(path).last_currency_update == "2024-01-01T00:00:00+00:00"

    path.write_text("{broken")
    assert Settings.load(path).base_currency == "USD"
