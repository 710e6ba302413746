"""
Shared test fixtures for the launcher tests.

Provides fake collaborators for the orchestrator (runtime, guest API,
RDP launcher) and a recording wait function so no test sleeps for real.
"""

from unittest.mock import Mock

import pytest

from guest_launch.guest_api import GuestApiClient
from guest_launch.models import ContainerStatus, WinApp
from guest_launch.orchestrator import LaunchOrchestrator
from guest_launch.ports import PortMapper
from guest_launch.runtime import RuntimeActionError
from guest_launch.settings import get_settings

GUEST_API_PORT = 7148
API_HOST_PORT = 54321


class FakeRuntime:
    """In-memory container runtime that records every call."""

    def __init__(self, status: ContainerStatus = ContainerStatus.STOPPED, fail_on: tuple[str, ...] = ()):
        self._status = status
        self.fail_on = set(fail_on)
        self.calls: list[str] = []
        self.published: dict[int, int] = {}

    def status(self) -> ContainerStatus:
        self.calls.append("status")
        if "status" in self.fail_on:
            raise RuntimeActionError("daemon unreachable")
        return self._status

    def start(self) -> None:
        self.calls.append("start")
        if "start" in self.fail_on:
            raise RuntimeActionError("start failed")
        self._status = ContainerStatus.RUNNING

    def unpause(self) -> None:
        self.calls.append("unpause")
        if "unpause" in self.fail_on:
            raise RuntimeActionError("unpause failed")
        self._status = ContainerStatus.RUNNING

    def published_port(self, guest_port: int, protocol: str = "tcp"):
        if "published_port" in self.fail_on:
            raise RuntimeActionError("Could not inspect container 'WinBoat': 500 Server Error")
        return self.published.get(guest_port)


class RecordingWait:
    """Stands in for Event.wait: records each requested delay and returns at once."""

    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> bool:
        self.calls.append(seconds)
        return False

    @property
    def total(self) -> float:
        return sum(self.calls)


@pytest.fixture
def notepad() -> WinApp:
    return WinApp(name="Notepad", path="C:\\Windows\\System32\\notepad.exe", source="system")


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def mapper() -> PortMapper:
    return PortMapper(
        [
            "127.0.0.1:8006:8006",
            f"127.0.0.1:{API_HOST_PORT}:{GUEST_API_PORT}/tcp",
            "127.0.0.1:47300:3389/tcp",
            "127.0.0.1:47300:3389/udp",
        ]
    )


@pytest.fixture
def guest_api(notepad) -> Mock:
    api = Mock(spec=GuestApiClient)
    api.get_apps.return_value = [
        WinApp(name="Paint", path="C:\\Windows\\System32\\mspaint.exe"),
        notepad,
    ]
    api.is_online.return_value = True
    return api


@pytest.fixture
def app_launcher() -> Mock:
    return Mock()


@pytest.fixture
def wait() -> RecordingWait:
    return RecordingWait()


@pytest.fixture
def make_orchestrator(runtime, mapper, guest_api, app_launcher, wait):
    """Builds an orchestrator wired to the fakes; keyword arguments override any collaborator."""

    def factory(**overrides) -> LaunchOrchestrator:
        kwargs = dict(
            runtime=runtime,
            mapper_provider=lambda: mapper,
            guest_api=guest_api,
            launcher=app_launcher,
            is_online=lambda: True,
            guest_api_port=GUEST_API_PORT,
            wait=wait,
        )
        kwargs.update(overrides)
        return LaunchOrchestrator(**kwargs)

    return factory


@pytest.fixture
def compose_file(tmp_path, monkeypatch):
    """A compose definition on disk, selected through the environment."""
    path = tmp_path / "compose.yaml"
    path.write_text(
        "name: winboat\n"
        "services:\n"
        "  windows:\n"
        "    image: ghcr.io/dockur/windows:latest\n"
        "    container_name: WinBoat\n"
        "    environment:\n"
        "      VERSION: '11'\n"
        "    ports:\n"
        "      - 8006:8006\n"
        "      - 127.0.0.1:47270:7148\n"
        "      - 127.0.0.1:47300:3389/tcp\n"
        "      - 127.0.0.1:47300:3389/udp\n"
        "      - target: 5900\n"
        "        published: '5900'\n"
        "        protocol: tcp\n"
    )
    monkeypatch.setenv("GUEST_COMPOSE_FILE", str(path))
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()
