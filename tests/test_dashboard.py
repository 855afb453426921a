"""Tests for the dashboard, login flow and ACL filtering."""
import os
import re
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from auth import COOKIE_NAME
from dashboard import format_age
from status_store import StatusStore
from tests.conftest import login, make_uplink, post_uplink

PLAIN = {"Accept": "text/plain"}
JSON = {"Accept": "application/json"}


def feed(client):
    post_uplink(client, make_uplink(dev_id="sensorA", serial="AAAA000000000000", box="full"))
    post_uplink(client, make_uplink(dev_id="sensorB", serial="BBBB000000000000", box="empty"))


class TestFormatAge:
    def test_two_largest_units(self):
        assert format_age(2 * 86400 + 3 * 3600 + 5) == "2 days 3 hours"

    def test_seconds_only(self):
        assert format_age(42) == "42 seconds"

    def test_zero(self):
        assert format_age(0) == "0 seconds"

    def test_german(self):
        assert format_age(3660, "de") == "1 Stunden 1 Minuten"

    def test_none(self):
        assert format_age(None) == ""


class TestDashboardWithoutLogin:
    def test_no_devices(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "no devices found" in response.text

    def test_html(self, client):
        feed(client)
        response = client.get("/")
        assert response.status_code == 200
        assert "sensorA" in response.text
        assert "sensorB" in response.text
        assert "<b>full</b>" in response.text

    def test_german(self, client):
        feed(client)
        response = client.get("/", headers={"Accept-Language": "de-DE,de;q=0.9"})
        assert "Briefkasten-Sensor-Status" in response.text
        assert "<b>VOLL</b>" in response.text

    def test_plain(self, client):
        feed(client)
        response = client.get("/", headers=PLAIN)
        assert response.headers["content-type"].startswith("text/plain")
        blocks = response.text.strip().split("\n\n")
        assert blocks[0].startswith("dev_id=sensorA\n")
        assert "status=full" in blocks[0]
        assert "hardware_serial=AAAA000000000000" in blocks[0]
        assert blocks[1].startswith("dev_id=sensorB\n")

    def test_json(self, client):
        feed(client)
        data = client.get("/", headers=JSON).json()
        assert set(data) == {"sensorA", "sensorB"}
        assert data["sensorB"]["status"] == "empty"
        assert data["sensorA"]["sensor"] == 500

    def test_dev_id_filter(self, client):
        feed(client)
        data = client.get("/", params={"dev_id": "sensorB"}, headers=JSON).json()
        assert list(data) == ["sensorB"]

    def test_details(self, client):
        feed(client)
        assert "<th>RSSI</th>" not in client.get("/").text
        assert "<th>RSSI</th>" in client.get("/", params={"details": "on"}).text

    def test_autoreload(self, client):
        assert 'http-equiv="refresh"' not in client.get("/").text
        assert 'content="300"' in client.get("/", params={"autoreload": "on"}).text

    def test_statistics_images(self, client):
        feed(client)
        response = client.get("/", params={"statistics": "on"})
        assert response.text.count('<img alt="boxstatus"') == 2

    def test_rrd_images(self, client):
        feed(client)
        response = client.get("/", params={"rrd": "on"})
        assert response.text.count('<img alt="sensor"') == 2

    def test_waits_for_device_lock(self, client, datadir):
        feed(client)
        responses = []

        def fetch():
            responses.append(client.get("/", params={"statistics": "on"}))

        thread = threading.Thread(target=fetch)
        with StatusStore(str(datadir)).device_lock("sensorA"):
            thread.start()
            time.sleep(0.3)
            assert responses == []
        thread.join(timeout=10)

        assert responses[0].status_code == 200
        assert responses[0].text.count('<img alt="boxstatus"') == 2


class TestLogin:
    def test_login_form_served(self, auth_client):
        response = auth_client.get("/")
        assert response.status_code == 200
        assert 'name="session_token_form"' in response.text
        assert COOKIE_NAME in response.cookies

    def test_login_and_dashboard(self, auth_client):
        feed(auth_client)
        response = login(auth_client)
        assert response.status_code == 200
        assert "Login successful" in response.text

        dashboard = auth_client.get("/")
        assert "authenticated as user: alice" in dashboard.text
        assert "sensorA" in dashboard.text
        assert "sensorB" in dashboard.text

    def test_wrong_password(self, auth_client):
        response = login(auth_client, password="wrong")
        assert response.status_code == 401
        assert "username/password not accepted" in response.text
        assert 'name="session_token_form"' in auth_client.get("/").text

    def test_tampered_form(self, auth_client):
        response = login(auth_client, extra={"rand": "0.1"})
        assert response.status_code == 401
        assert "login session invalid" in response.text

    def test_missing_action(self, auth_client):
        auth_client.get("/")
        response = auth_client.post("/", data={"username": "alice"})
        assert response.status_code == 400

    def test_logout(self, auth_client):
        login(auth_client)
        response = auth_client.post("/", data={"action": "logout"})
        assert response.status_code == 200
        assert "Logout successful" in response.text
        assert COOKIE_NAME not in auth_client.cookies
        assert 'name="session_token_form"' in auth_client.get("/").text

    def test_changepw_acknowledged(self, client_factory, users_file):
        client = client_factory(userauth__feature__changepw="1")
        login(client)
        assert 'id="changepw"' in client.get("/").text
        response = client.post("/", data={"action": "changepw"})
        assert response.status_code == 200
        assert "managed by the administrator" in response.text

    def test_changepw_without_login(self, auth_client):
        response = auth_client.post("/", data={"action": "changepw"})
        assert response.status_code == 401

    def test_https_required(self, client_factory, users_file):
        client = client_factory(base_url="http://testserver")
        response = client.get("/")
        assert response.status_code == 401
        assert "not called via HTTPS" in response.text

    def test_https_not_required(self, client_factory, users_file):
        client = client_factory(base_url="http://testserver", userauth__require_https="0")
        form_page = client.get("/")
        assert form_page.status_code == 200
        assert "secure" not in form_page.headers["set-cookie"].lower()

        response = login(client)
        assert response.status_code == 200
        assert "secure" not in response.headers["set-cookie"].lower()
        assert "authenticated as user: alice" in client.get("/").text

    def test_cookie_secure_over_https(self, auth_client):
        assert "secure" in auth_client.get("/").headers["set-cookie"].lower()

    def test_forwarded_https_accepted(self, client_factory, users_file):
        client = client_factory(base_url="http://testserver")
        response = client.get("/", headers={"X-Forwarded-Proto": "https"})
        assert response.status_code == 200
        assert 'name="session_token_form"' in response.text

    def test_internal_captcha(self, client_factory, users_file):
        client = client_factory(userauth__captcha__enable="1", userauth__captcha__service="internal")
        page = client.get("/")
        assert '<img alt="CAPTCHA" src="data:image/png;base64,' in page.text
        response = login(client, extra={"captcha_answer": "WRONG"})
        assert response.status_code == 401
        assert "(CAPTCHA)" in response.text


class TestUnauthenticatedMachineOutput:
    @pytest.mark.parametrize("headers", [PLAIN, JSON])
    def test_rejected(self, auth_client, headers):
        feed(auth_client)
        response = auth_client.get("/", headers=headers)
        assert response.status_code == 401
        assert "sensorA" not in response.text

    def test_json_error_body(self, auth_client):
        assert auth_client.get("/", headers=JSON).json() == {"error": "Authentication required"}


class TestAcl:
    def test_single_device_user(self, auth_client):
        feed(auth_client)
        login(auth_client, username="bob", password="hunter2")
        data = auth_client.get("/", headers=JSON).json()
        assert list(data) == ["sensorA"]

        page = auth_client.get("/").text
        assert re.search(r"permitted for devices: sensorA", page)
        assert "sensorB" not in page

    def test_empty_acl_sees_nothing(self, auth_client):
        feed(auth_client)
        login(auth_client, username="carol", password="nothing")
        page = auth_client.get("/").text
        assert "no devices found" in page
        assert "permitted for devices: NONE" in page

    def test_wildcard_user(self, auth_client):
        feed(auth_client)
        login(auth_client)
        assert "permitted for devices: ALL" in auth_client.get("/").text

    def test_filter_to_foreign_device_denied(self, auth_client):
        feed(auth_client)
        login(auth_client, username="bob", password="hunter2")
        response = auth_client.get("/", params={"dev_id": "sensorB"}, headers=JSON)
        assert response.status_code == 403
