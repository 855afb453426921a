"""Test fixtures for the letterbox endpoint tests."""
import json
import os
import re
import sys

import pytest
from fastapi.testclient import TestClient

# Add parent dir to path so imports work
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from auth import hash_password
from config import load_config, settings

TEST_UUID = "0f8fad5b-d9cb-469f-a165-70867728950e"
TEST_SERIAL = "AAAA000000000000"


@pytest.fixture(autouse=True)
def no_delays(monkeypatch):
    """Disable the artificial response delays."""
    monkeypatch.setattr(settings, "FAILURE_DELAY", 0.0)
    monkeypatch.setattr(settings, "FAILURE_JITTER", 0.0)
    monkeypatch.setattr(settings, "SUCCESS_JITTER", 0.0)


@pytest.fixture
def datadir(tmp_path):
    """Empty data directory."""
    path = tmp_path / "data"
    path.mkdir()
    return path


def write_config(path, datadir, **entries) -> str:
    """Write a config file; keyword names use '__' for '.'."""
    lines = [f"datadir={datadir}"]
    for key, value in entries.items():
        lines.append(f"{key.replace('__', '.')}={value}")
    path.write_text("\n".join(lines) + "\n")
    return str(path)


@pytest.fixture
def config_factory(tmp_path, datadir):
    """Build a LetterboxConfig from keyword entries."""

    def factory(**entries):
        entries.setdefault("uuid", TEST_UUID)
        return load_config(write_config(tmp_path / "ttn-letterbox.conf", datadir, **entries))

    return factory


@pytest.fixture
def users_file(datadir):
    """User file with a wildcard user and a single-device user."""
    path = datadir / "ttn.users.list"
    path.write_text(
        "# user:hash:acl\n"
        f"alice:{hash_password('secret')}:*\n"
        f"bob:{hash_password('hunter2')}:sensorA\n"
        f"carol:{hash_password('nothing')}:\n"
    )
    return path


@pytest.fixture
def client_factory(tmp_path, datadir, monkeypatch):
    """Start the app against a fresh config; yields TestClients."""
    clients = []

    def factory(base_url="https://testserver", **entries):
        entries.setdefault("uuid", TEST_UUID)
        entries.setdefault("autoregister", "1")
        path = write_config(tmp_path / "ttn-letterbox.conf", datadir, **entries)
        monkeypatch.setattr(settings, "CONFIG_FILE", path)
        from main import app

        client = TestClient(app, base_url=base_url)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(client_factory):
    """Client without the login gate."""
    return client_factory(extensions="notifyDbusSignal,notifyEmail,rrd,statistics")


@pytest.fixture
def auth_client(client_factory, users_file):
    """Client with all extensions including userauth."""
    return client_factory()


def make_uplink(
    dev_id="sensorA",
    serial=TEST_SERIAL,
    box="full",
    sensor=500,
    counter=1,
    time="2024-01-01T00:00:00Z",
) -> dict:
    """TTN v2 uplink as sent by the simulator."""
    return {
        "dev_id": dev_id,
        "hardware_serial": serial,
        "counter": counter,
        "payload_fields": {
            "box": box,
            "sensor": sensor,
            "temp": 1,
            "tempC": 19,
            "threshold": 30,
            "voltage": 3.2,
        },
        "metadata": {
            "time": time,
            "gateways": [{"gtw_id": "eui-0000000000000000", "rssi": -80, "snr": 7}],
        },
    }


def make_v3_uplink(dev_id="sensorB", serial="BBBB000000000000", box="empty", sensor=10, counter=5) -> dict:
    """TTN v3 uplink layout."""
    return {
        "end_device_ids": {"device_id": dev_id, "dev_eui": serial},
        "received_at": "2024-01-01T00:00:00Z",
        "uplink_message": {
            "f_cnt": counter,
            "decoded_payload": {"box": box, "sensor": sensor, "tempC": 21, "voltage": 3.1},
            "rx_metadata": [{"rssi": -90, "snr": 5.5}],
        },
    }


def post_uplink(client, payload: dict, credential=None):
    headers = {"Content-Type": "application/json"}
    if credential is not None:
        headers["X-TTN-AUTH"] = credential
    return client.post("/", content=json.dumps(payload), headers=headers)


def login(client, username="alice", password="secret", extra=None):
    """Fetch the login form and submit it."""
    form_page = client.get("/")
    assert form_page.status_code == 200
    data = {
        "session_token_form": re.search(r'name="session_token_form" value="([^"]+)"', form_page.text).group(1),
        "rand": re.search(r'name="rand" value="([^"]+)"', form_page.text).group(1),
        "action": "login",
        "username": username,
        "password": password,
    }
    data.update(extra or {})
    return client.post("/", data=data)
