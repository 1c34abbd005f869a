"""Tests for the HTTP API and the command line front end."""

import builtins
import json
from unittest.mock import patch

import pytest

from calcpad import app as calcpad_app
from calcpad.app import Engine, create_app, main, run_cli_mode

from conftest import make_http


@pytest.fixture
def engine(settings, currency, units):
    return Engine(settings=settings, currency=currency, units=units)


@pytest.fixture
def client(engine):
    flask_app = create_app(engine)
    flask_app.config["TESTING"] = True
    return flask_app.test_client()


def test_calculate(client):
    response = client.post("/calculate", json={"query": "2 + 3 * 4"})
    assert response.status_code == 200
    data = response.get_json()
    assert data["result"] == "14"
    assert data["value"] == 14
    assert data["kind"] == "math"


def test_calculate_conversions(client):
    data = client.post("/calculate", json={"query": "10 km to miles"}).get_json()
    assert data["result"] == "6.2137 mile"

    data = client.post("/calculate", json={"query": "100 USD to EUR"}).get_json()
    assert data["result"] == "92.00 EUR"


@pytest.mark.parametrize(
    "payload, message",
    [
        ({}, "Missing 'query'"),
        ({"query": "   "}, "empty"),
        ({"query": "x = 5"}, "session"),
        ({"query": "hello there"}, "Could not understand"),
        ({"query": "1 / 0"}, "Division by zero"),
    ],
)
def test_calculate_errors(client, payload, message):
    response = client.post("/calculate", json=payload)
    assert response.status_code == 400
    assert message in response.get_json()["error"]


def test_session_lifecycle(client):
    response = client.post("/sessions")
    assert response.status_code == 201
    session_id = response.get_json()["session_id"]

    data = client.post(f"/sessions/{session_id}/calculate", json={"query": "x = 10"}).get_json()
    assert data == {"variable_set": "x", "result": 10.0}

    data = client.post(f"/sessions/{session_id}/calculate", json={"query": "x * 2"}).get_json()
    assert data["result"] == "20"

    assert client.get(f"/sessions/{session_id}").get_json() == {"x": 10.0}

    data = client.post(f"/sessions/{session_id}/annotate", json={"text": "x + 1\nhello"}).get_json()
    assert data == {"lines": [" = 11", ""]}

    assert client.delete(f"/sessions/{session_id}").status_code == 204
    assert client.get(f"/sessions/{session_id}").status_code == 404


def test_sessions_are_isolated(client):
    first = client.post("/sessions").get_json()["session_id"]
    second = client.post("/sessions").get_json()["session_id"]
    client.post(f"/sessions/{first}/calculate", json={"query": "y = 3"})

    response = client.post(f"/sessions/{second}/calculate", json={"query": "y + 1"})
    assert response.status_code == 400
    assert "Unknown variable 'y'" in response.get_json()["error"]


def test_unknown_session(client):
    assert client.post("/sessions/nope/calculate", json={"query": "1 + 1"}).status_code == 404
    assert client.post("/sessions/nope/annotate", json={"text": "1 + 1"}).status_code == 404
    assert client.delete("/sessions/nope").status_code == 404


def test_annotate_requires_text(client):
    session_id = client.post("/sessions").get_json()["session_id"]
    assert client.post(f"/sessions/{session_id}/annotate", json={}).status_code == 400


def test_analyze(client):
    data = client.post("/analyze", json={"text": "$5\n$10", "type": "sum"}).get_json()
    assert data["result"] == "\nTotal: $15.00"

    assert client.post("/analyze", json={"text": "1", "type": "median"}).status_code == 400
    assert client.post("/analyze", json={}).status_code == 400


def test_units(client):
    categories = client.get("/units").get_json()["categories"]
    assert "length" in categories
    assert "temperature" in categories

    data = client.get("/units/length").get_json()
    assert "km" in data["units"]
    assert client.get("/units/bogus").status_code == 404


def test_currencies(client):
    data = client.get("/currencies").get_json()
    assert data["base"] == "USD"
    assert "EUR" in data["currencies"]
    assert data["last_update"] is None


def test_currency_refresh_is_scheduled(client, engine):
    with patch.object(engine.currency, "refresh_rates") as refresh:
        response = client.post("/currencies/refresh")
    assert response.status_code == 202
    refresh.assert_called_once_with()


def test_engine_saves_settings_after_refresh(engine, settings):
    engine.currency.http = make_http({"frankfurter": {"rates": {"EUR": 0.5}}, "coingecko": {}})
    assert engine.currency.refresh_rates_now()

    saved = json.loads(settings.path.read_text())
    assert saved["last_currency_update"] == settings.last_currency_update


def test_cli_session(engine, monkeypatch, capsys):
    lines = iter(["2 + 2", "x = 3", "vars", "10 km to miles", "nonsense words", "clear", "vars", "exit"])
    monkeypatch.setattr(builtins, "input", lambda prompt="": next(lines))
    monkeypatch.setattr(calcpad_app, "setup_readline", lambda session: True)

    run_cli_mode(engine)

    out = capsys.readouterr().out
    assert "\n4\n" in out
    assert "x = 3" in out
    assert "6.2137 mile" in out
    assert "Could not understand 'nonsense words'" in out
    assert "No variables defined." in out


def test_main_analyze(tmp_path, capsys):
    note = tmp_path / "note.txt"
    note.write_text("sum\nMilk 4.50\nBread 2")
    assert main(["--analyze", "sum", str(note)]) == 0
    assert capsys.readouterr().out.strip() == "Total: 6.50"

    assert main(["--analyze", "median", str(note)]) == 2


def test_main_note(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    note = tmp_path / "note.txt"
    note.write_text("price = 20\nprice * 3\nhello")

    assert main(["--note", str(note)]) == 0
    assert capsys.readouterr().out == "price = 20\nprice * 3 = 60\nhello\n"
