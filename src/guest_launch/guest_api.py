import logging

import requests
from pydantic import TypeAdapter, ValidationError

from .models import WinApp

logger = logging.getLogger(__name__)

_APPS_ADAPTER = TypeAdapter(list[WinApp])


class GuestApiError(Exception):
    """Raised when the guest API cannot be reached or returns an unusable answer."""


def base_url_for(host_port: int) -> str:
    return f"http://127.0.0.1:{host_port}"


class GuestApiClient:
    """Consumes the HTTP API served from inside the Windows guest."""

    def __init__(self, timeout: float = 5.0, session: requests.Session | None = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def is_online(self, base_url: str) -> bool:
        try:
            response = self.session.get(f"{base_url}/health", timeout=self.timeout)
        except requests.RequestException:
            return False
        return response.ok

    def get_apps(self, base_url: str) -> list[WinApp]:
        try:
            response = self.session.get(f"{base_url}/apps", timeout=self.timeout)
            response.raise_for_status()
            apps = _APPS_ADAPTER.validate_python(response.json())
        except requests.RequestException as e:
            raise GuestApiError(f"Could not list apps from {base_url}: {e}") from e
        except ValidationError as e:
            raise GuestApiError(f"Malformed app list from {base_url}: {e}") from e

        logger.debug("Guest reported %d apps", len(apps))
        return apps
