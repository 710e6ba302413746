"""Tests for the guest API HTTP client."""

from unittest.mock import Mock

import pytest
import requests

from guest_launch.guest_api import GuestApiClient, GuestApiError, base_url_for
from guest_launch.models import WinApp

BASE_URL = "http://127.0.0.1:47270"


def make_response(payload=None, ok=True, error=None):
    response = Mock()
    response.ok = ok
    response.json.return_value = payload
    response.raise_for_status.side_effect = error
    return response


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def client(session):
    return GuestApiClient(timeout=2.0, session=session)


def test_base_url_for():
    assert base_url_for(54321) == "http://127.0.0.1:54321"


class TestIsOnline:
    def test_healthy_guest(self, client, session):
        session.get.return_value = make_response(ok=True)

        assert client.is_online(BASE_URL) is True
        session.get.assert_called_once_with(f"{BASE_URL}/health", timeout=2.0)

    def test_unhealthy_guest(self, client, session):
        session.get.return_value = make_response(ok=False)

        assert client.is_online(BASE_URL) is False

    def test_connection_refused(self, client, session):
        session.get.side_effect = requests.ConnectionError("refused")

        assert client.is_online(BASE_URL) is False


class TestGetApps:
    def test_parses_app_list(self, client, session):
        session.get.return_value = make_response(
            [
                {"Name": "Notepad", "Path": "C:\\Windows\\notepad.exe", "Source": "system", "Icon": "aWNvbg=="},
                {"Name": "Paint", "Path": "C:\\Windows\\mspaint.exe"},
            ]
        )

        apps = client.get_apps(BASE_URL)

        assert apps == [
            WinApp(name="Notepad", path="C:\\Windows\\notepad.exe", source="system", icon="aWNvbg=="),
            WinApp(name="Paint", path="C:\\Windows\\mspaint.exe"),
        ]
        session.get.assert_called_once_with(f"{BASE_URL}/apps", timeout=2.0)

    def test_http_error(self, client, session):
        session.get.return_value = make_response(error=requests.HTTPError("500 Server Error"))

        with pytest.raises(GuestApiError, match="Could not list apps"):
            client.get_apps(BASE_URL)

    def test_connection_error(self, client, session):
        session.get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(GuestApiError):
            client.get_apps(BASE_URL)

    def test_malformed_payload(self, client, session):
        session.get.return_value = make_response([{"Title": "Notepad"}])

        with pytest.raises(GuestApiError, match="Malformed"):
            client.get_apps(BASE_URL)
