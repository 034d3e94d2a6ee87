from __future__ import annotations

import json
from pathlib import Path

import pytest

from medipi_transmit.constants import ExitCode
from medipi_transmit.errors import ConfigError
from medipi_transmit.main import async_main, load_readings


class DummyResponse:
    def __init__(self, status_code: int = 200, text: str = "") -> None:
        self.status_code = status_code
        self.text = text


class DummyAsyncClient:
    def __init__(self, response: DummyResponse) -> None:
        self.response = response
        self.requests = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, content=None, headers=None):
        self.requests.append({"url": url, "content": content, "headers": headers})
        return self.response


def _write_properties(path: Path, properties: dict) -> Path:
    path.write_text(
        "# MediPi transmitter\n" + "\n".join(f"{k}={v}" for k, v in properties.items()) + "\n",
        encoding="utf-8",
    )
    return path


def _write_reading(path: Path, reading) -> Path:
    path.write_text(json.dumps(reading), encoding="utf-8")
    return path


def test_load_readings_keeps_argument_order(tmp_path) -> None:
    scale = _write_reading(tmp_path / "scale.json", {"kg": 81.4})
    oximeter = _write_reading(
        tmp_path / "oximeter.json",
        {"device_token": "oximeter", "device_type": "Oximeter", "payload": {"spo2": 97}},
    )

    registry = load_readings([f"scale={scale}", f"oximeter={oximeter}"])

    devices = registry.devices()
    assert [d.token for d in devices] == ["scale", "oximeter"]
    assert devices[0].get_data().payload == {"kg": 81.4}
    assert devices[1].get_data().device_type == "Oximeter"


def test_load_readings_wraps_scalar_values(tmp_path) -> None:
    reading = _write_reading(tmp_path / "temp.json", 36.8)

    registry = load_readings([f"thermometer={reading}"])

    assert registry.devices()[0].get_data().payload == {"value": 36.8}


@pytest.mark.parametrize("argument", ["no-separator", "=file.json", "token="])
def test_load_readings_rejects_malformed_argument(argument: str) -> None:
    with pytest.raises(ConfigError):
        load_readings([argument])


def test_load_readings_rejects_duplicate_token(tmp_path) -> None:
    reading = _write_reading(tmp_path / "scale.json", {"kg": 81.4})

    with pytest.raises(ConfigError, match="Duplicate"):
        load_readings([f"scale={reading}", f"scale={reading}"])


def test_load_readings_rejects_bad_json(tmp_path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigError, match="broken"):
        load_readings([f"scale={broken}"])


@pytest.mark.anyio
async def test_async_main_transmits(monkeypatch, properties, tmp_path) -> None:
    client = DummyAsyncClient(DummyResponse(200, "Upload OK"))
    monkeypatch.setattr(
        "medipi_transmit.transport.https.httpx.AsyncClient", lambda *args, **kwargs: client
    )
    monkeypatch.setenv("MEDIPI_PATIENT_CERT_PASSWORD", "patient-pass")
    props = _write_properties(tmp_path / "medipi.properties", properties)
    reading = _write_reading(tmp_path / "scale.json", {"kg": 81.4})

    code = await async_main(["--properties", str(props), "--reading", f"scale={reading}"])

    assert code == ExitCode.SUCCESS
    assert len(client.requests) == 1
    assert client.requests[0]["url"] == properties["medipi.concentrator.url"]


@pytest.mark.anyio
async def test_async_main_reports_rejection(monkeypatch, properties, tmp_path, capsys) -> None:
    client = DummyAsyncClient(DummyResponse(500, "E_AUTH"))
    monkeypatch.setattr(
        "medipi_transmit.transport.https.httpx.AsyncClient", lambda *args, **kwargs: client
    )
    monkeypatch.setenv("MEDIPI_PATIENT_CERT_PASSWORD", "patient-pass")
    props = _write_properties(tmp_path / "medipi.properties", properties)
    reading = _write_reading(tmp_path / "scale.json", {"kg": 81.4})

    code = await async_main(["--properties", str(props), "--reading", f"scale={reading}"])

    assert code == ExitCode.FAILED
    assert "Transmission Failed: E_AUTH" in capsys.readouterr().err


@pytest.mark.anyio
async def test_async_main_nothing_selected(properties, tmp_path) -> None:
    props = _write_properties(tmp_path / "medipi.properties", properties)
    reading = _write_reading(tmp_path / "scale.json", {"kg": 81.4})

    code = await async_main(
        ["--properties", str(props), "--reading", f"scale={reading}", "--select", "oximeter"]
    )

    assert code == ExitCode.NOTHING_SENT


@pytest.mark.anyio
async def test_async_main_config_error(tmp_path) -> None:
    code = await async_main(["--properties", str(tmp_path / "missing.properties")])

    assert code == ExitCode.ERROR
