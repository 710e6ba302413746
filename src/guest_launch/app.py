from collections.abc import Callable

from .compose import ComposeStore
from .guest_api import GuestApiClient
from .models import LaunchProgress, WinApp
from .orchestrator import LaunchOrchestrator, resolve_host_port
from .rdp import RdpLauncher
from .runtime import DockerRuntime
from .settings import AppSettings


class Launcher:
    """
    Composition root: wires one runtime, one compose store and one
    orchestrator together. Create it once at startup and pass it around.
    """

    def __init__(
        self,
        settings: AppSettings,
        on_progress: Callable[[LaunchProgress], None] | None = None,
        on_session_error: Callable[[WinApp, Exception], None] | None = None,
    ):
        self.settings = settings
        self.compose = ComposeStore(settings.COMPOSE_FILE)
        self.runtime = DockerRuntime(settings.CONTAINER_NAME, base_url=settings.DOCKER_BASE_URL)
        self.guest_api = GuestApiClient(timeout=settings.HTTP_TIMEOUT)

        self.rdp = RdpLauncher(
            rdp_port=self.rdp_host_port,
            username=settings.RDP_USERNAME,
            password=settings.RDP_PASSWORD,
        )

        self.orchestrator = LaunchOrchestrator(
            runtime=self.runtime,
            mapper_provider=self.compose.mapper,
            guest_api=self.guest_api,
            launcher=self.rdp,
            guest_api_port=settings.GUEST_API_PORT,
            poll_interval=settings.POLL_INTERVAL,
            online_max_attempts=settings.ONLINE_MAX_ATTEMPTS,
            port_max_attempts=settings.PORT_MAX_ATTEMPTS,
            grace_delay=settings.LAUNCH_GRACE_DELAY,
            on_progress=on_progress,
            on_session_error=on_session_error,
        )

    def rdp_host_port(self) -> int | None:
        return resolve_host_port(self.compose.mapper(), self.runtime, self.settings.RDP_PORT)
