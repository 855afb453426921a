"""Tests for the uplink receiver endpoint."""
import json
import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from auth import hash_password
from errors import AuthError, ValidationError
from ingestion import Ingestor, parse_body
from models import BoxStatus
from registry import DeviceRegistry
from status_store import StatusStore
from tests.conftest import make_uplink, make_v3_uplink, post_uplink


def registry_lines(datadir):
    return (datadir / "ttn.devices.list").read_text().splitlines()


class TestParseBody:
    @pytest.mark.parametrize("body", [b"", b"   ", b"{nope", b"[1, 2]", b"\xff\xfe"])
    def test_rejected(self, body):
        with pytest.raises(ValidationError):
            parse_body(body)

    def test_object(self):
        assert parse_body(b' {"a": 1} ') == {"a": 1}


class TestIngestor:
    @pytest.fixture
    def ingestor(self, config_factory, datadir):
        extensions = MagicMock()
        config = config_factory(autoregister="1")
        return Ingestor(config, DeviceRegistry(str(datadir)), StatusStore(str(datadir)), extensions)

    def test_hooks_see_derived_state(self, ingestor):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        ingestor.ingest(json.dumps(make_uplink(box="empty")).encode(), now=now)
        result = ingestor.ingest(json.dumps(make_uplink(box="full")).encode(), now=now + timedelta(minutes=5))

        assert result.state == BoxStatus.FILLED
        assert not result.registered
        name, args, _ = ingestor.extensions.call.mock_calls[-1]
        assert args[0] == "store_data"
        assert args[1] == "sensorA"
        assert args[3].box == BoxStatus.FILLED

    def test_threshold_override(self, config_factory, datadir):
        config = config_factory(autoregister="1", threshold__sensorA="600")
        ingestor = Ingestor(config, DeviceRegistry(str(datadir)), StatusStore(str(datadir)), MagicMock())
        result = ingestor.ingest(json.dumps(make_uplink(box="full", sensor=500)).encode())
        assert result.state == BoxStatus.EMPTY

    def test_first_uplink_registers(self, ingestor, datadir):
        result = ingestor.ingest(json.dumps(make_uplink()).encode())
        assert result.registered
        assert registry_lines(datadir) == ["sensorA:AAAA000000000000"]

    def test_concurrent_first_uplinks_register_once(self, ingestor, datadir):
        original_load = DeviceRegistry.load

        def slow_load(registry):
            devices = original_load(registry)
            time.sleep(0.2)
            return devices

        outcomes = []
        start = threading.Barrier(2)

        def deliver(serial):
            start.wait()
            try:
                ingestor.ingest(json.dumps(make_uplink(serial=serial)).encode())
                outcomes.append("ok")
            except AuthError:
                outcomes.append("rejected")

        with patch.object(DeviceRegistry, "load", slow_load):
            threads = [
                threading.Thread(target=deliver, args=(serial,))
                for serial in ("AAAA000000000000", "BBBB000000000000")
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        assert sorted(outcomes) == ["ok", "rejected"]
        assert len(registry_lines(datadir)) == 1

    def test_concurrent_devices_both_registered(self, ingestor, datadir):
        start = threading.Barrier(2)

        def deliver(dev_id, serial):
            start.wait()
            ingestor.ingest(json.dumps(make_uplink(dev_id=dev_id, serial=serial)).encode())

        threads = [
            threading.Thread(target=deliver, args=("sensorA", "AAAA000000000000")),
            threading.Thread(target=deliver, args=("sensorB", "BBBB000000000000")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(registry_lines(datadir)) == ["sensorA:AAAA000000000000", "sensorB:BBBB000000000000"]


class TestReceiveEndpoint:
    def test_uplink_accepted(self, client, datadir):
        response = post_uplink(client, make_uplink(box="full"))
        assert response.status_code == 200
        assert response.text == "OK\n"
        assert registry_lines(datadir) == ["sensorA:AAAA000000000000"]
        status = json.loads((datadir / "ttn.sensorA.status.json").read_text())
        assert status["state"] == "full"

    def test_edge_sequence(self, client, datadir):
        states = []
        for box in ("empty", "full", "full", "empty"):
            assert post_uplink(client, make_uplink(box=box)).status_code == 200
            states.append(json.loads((datadir / "ttn.sensorA.status.json").read_text())["state"])
        assert states == ["empty", "filled", "full", "emptied"]

    def test_replay_registers_once(self, client, datadir):
        payload = make_uplink()
        post_uplink(client, payload)
        post_uplink(client, payload)
        assert len(registry_lines(datadir)) == 1

    def test_raw_log_written(self, client, datadir):
        post_uplink(client, make_uplink())
        logs = [p for p in os.listdir(datadir) if p.endswith(".raw.log")]
        assert len(logs) == 1
        assert logs[0].startswith("ttn.sensorA.")

    def test_v3_uplink(self, client, datadir):
        assert post_uplink(client, make_v3_uplink()).status_code == 200
        assert (datadir / "ttn.sensorB.status.json").exists()

    def test_serial_mismatch_rejected(self, client, datadir):
        post_uplink(client, make_uplink())
        before = (datadir / "ttn.sensorA.status.json").read_text()

        response = post_uplink(client, make_uplink(serial="BBBB000000000000", box="empty"))
        assert response.status_code == 401
        assert response.text == "device not accepted\n"
        assert (datadir / "ttn.sensorA.status.json").read_text() == before

    def test_unknown_device_without_autoregister(self, client_factory, datadir):
        client = client_factory(extensions="statistics", autoregister="0")
        response = post_uplink(client, make_uplink())
        assert response.status_code == 401
        assert not (datadir / "ttn.sensorA.status.json").exists()
        assert not (datadir / "ttn.devices.list").exists()

    def test_invalid_json(self, client):
        response = client.post("/", content="{broken", headers={"Content-Type": "application/json"})
        assert response.status_code == 500
        assert response.headers["content-type"].startswith("text/plain")

    def test_empty_body(self, client):
        response = client.post("/", content="", headers={"Content-Type": "application/json"})
        assert response.status_code == 500

    def test_missing_dev_id(self, client, datadir):
        payload = make_uplink()
        del payload["dev_id"]
        assert post_uplink(client, payload).status_code == 500
        assert not (datadir / "ttn.devices.list").exists()

    def test_credential_header(self, client, datadir):
        (datadir / "ttn.devices.list").write_text(f"sensorA:AAAA000000000000:{hash_password('devsecret')}\n")
        assert post_uplink(client, make_uplink()).status_code == 401
        assert post_uplink(client, make_uplink(), credential="wrong").status_code == 401
        assert post_uplink(client, make_uplink(), credential="devsecret").status_code == 200

    def test_json_body_with_form_content_type(self, client, datadir):
        """Uplinks sent with a form content type are still taken as JSON."""
        response = client.post(
            "/",
            content=json.dumps(make_uplink()),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 200
        assert (datadir / "ttn.sensorA.status.json").exists()

    def test_form_without_authenticator(self, client):
        response = client.post("/", data={"action": "login"})
        assert response.status_code == 400

    def test_extension_files_created(self, client, datadir):
        post_uplink(client, make_uplink())
        assert (datadir / "ttn.sensorA.boxstatus.png").exists()
        assert (datadir / "ttn.sensorA.receivedstatus.png").exists()
        assert (datadir / "ttn.sensorA.rrd.csv").exists()

    def test_head(self, client):
        assert client.head("/").status_code == 200
