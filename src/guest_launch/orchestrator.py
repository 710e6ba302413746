"""
Launch orchestration: from any container power state to an application window
on the host.

One call walks ``idle -> starting_container -> waiting_online -> resolving_port
-> launching_app -> completed``. Any step may end the call as ``failed``; a
cancel request ends it as ``cancelled`` at the next suspend point. Runtime
actions already taken are never rolled back.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Protocol, TypeVar

from .guest_api import GuestApiClient, GuestApiError, base_url_for
from .models import (
    ContainerStatus,
    FailureKind,
    LaunchOutcome,
    LaunchPhase,
    LaunchProgress,
    LaunchState,
    LaunchTarget,
    PortProtocol,
    WinApp,
)
from .ports import PortMapper
from .runtime import ContainerRuntime, RuntimeActionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Progress phase shown while the machine sits in each state
PHASE_FOR_STATE = {
    LaunchState.STARTING_CONTAINER: LaunchPhase.STARTING_CONTAINER,
    LaunchState.WAITING_ONLINE: LaunchPhase.WAITING_ONLINE,
    LaunchState.RESOLVING_PORT: LaunchPhase.WAITING_ONLINE,
    LaunchState.LAUNCHING_APP: LaunchPhase.LAUNCHING_APP,
    LaunchState.COMPLETED: LaunchPhase.COMPLETED,
}


class AppLauncher(Protocol):
    def launch(self, app: WinApp) -> None:
        """Opens ``app`` on the host; returns when the remote session ends."""


class LaunchInProgressError(RuntimeError):
    """Raised when a launch is requested while another one is still running."""


class LaunchFailed(Exception):
    def __init__(self, kind: FailureKind, reason: str):
        super().__init__(reason)
        self.kind = kind
        self.reason = reason


class LaunchCancelled(Exception):
    pass


def resolve_host_port(
    mapper: Optional[PortMapper],
    runtime: ContainerRuntime,
    guest_port: int,
    protocol: PortProtocol = "tcp",
) -> Optional[int]:
    """
    Host port currently reaching ``guest_port``. Entries with an empty or
    ranged host side are resolved through the runtime's published ports.
    """
    if mapper is None:
        return None

    entry = mapper.lookup(guest_port, protocol)
    if entry is None:
        return None

    if isinstance(entry.host, int):
        return entry.host

    return runtime.published_port(guest_port, protocol)


class LaunchOrchestrator:
    def __init__(
        self,
        runtime: ContainerRuntime,
        mapper_provider: Callable[[], Optional[PortMapper]],
        guest_api: GuestApiClient,
        launcher: AppLauncher,
        is_online: Callable[[], bool] | None = None,
        guest_api_port: int = 7148,
        poll_interval: float = 1.0,
        online_max_attempts: int = 60,
        port_max_attempts: int = 30,
        grace_delay: float = 3.0,
        on_progress: Callable[[LaunchProgress], None] | None = None,
        on_session_error: Callable[[WinApp, Exception], None] | None = None,
        wait: Callable[[float], object] | None = None,
    ):
        self.runtime = runtime
        self.mapper_provider = mapper_provider
        self.guest_api = guest_api
        self.launcher = launcher
        self.is_online = is_online or self._guest_api_online
        self.guest_api_port = guest_api_port
        self.poll_interval = poll_interval
        self.online_max_attempts = online_max_attempts
        self.port_max_attempts = port_max_attempts
        self.grace_delay = grace_delay
        self.on_progress = on_progress
        self.on_session_error = on_session_error

        self._cancel_event = threading.Event()
        # wait(seconds) suspends the flow; it must return early once cancel() is called
        self._wait = wait or self._cancel_event.wait
        self._lock = threading.Lock()
        self._active = False
        self._executor: ThreadPoolExecutor | None = None

        self.state = LaunchState.IDLE
        self.progress: Optional[LaunchProgress] = None
        self.session_thread: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        return self._active

    def api_host_port(self) -> Optional[int]:
        return resolve_host_port(self.mapper_provider(), self.runtime, self.guest_api_port)

    def _guest_api_online(self) -> bool:
        port = self.api_host_port()
        return port is not None and self.guest_api.is_online(base_url_for(port))

    # Public entry points

    def launch(self, target: LaunchTarget | str) -> LaunchOutcome:
        """Runs one launch sequence on the calling thread and returns its outcome."""
        target = self._begin(target)
        try:
            return self._run(target)
        finally:
            self._finish()

    def launch_in_background(self, target: LaunchTarget | str) -> "Future[LaunchOutcome]":
        """Runs the launch sequence on a worker thread so the caller stays responsive."""
        target = self._begin(target)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="launch")

        def run() -> LaunchOutcome:
            try:
                return self._run(target)
            finally:
                self._finish()

        try:
            return self._executor.submit(run)
        except RuntimeError:
            self._finish()
            raise

    def cancel(self) -> None:
        """Abandons the active launch at its next suspend point."""
        if self._active:
            logger.info("Cancellation requested")
        self._cancel_event.set()

    def shutdown(self) -> None:
        self.cancel()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # State machine

    def _begin(self, target: LaunchTarget | str) -> LaunchTarget:
        if isinstance(target, str):
            target = LaunchTarget(name=target)

        with self._lock:
            if self._active:
                raise LaunchInProgressError(f"Cannot launch {target.label}: another launch is still running")
            self._active = True
            self._cancel_event.clear()

        self.state = LaunchState.IDLE
        self.progress = LaunchProgress(target_app_name=target.label)
        return target

    def _finish(self) -> None:
        with self._lock:
            self._active = False

    def _run(self, target: LaunchTarget) -> LaunchOutcome:
        logger.info("Launch requested for '%s'", target.label)
        try:
            try:
                status = self.runtime.status()
            except RuntimeActionError as e:
                raise LaunchFailed(FailureKind.RUNTIME, f"Could not read container status: {e}") from e

            self._enter(LaunchState.STARTING_CONTAINER)
            self._ensure_running(status)

            self._enter(LaunchState.WAITING_ONLINE)
            self._poll(self.is_online, self.online_max_attempts, "Guest did not come online in time")

            self._enter(LaunchState.RESOLVING_PORT)
            api_port = self._poll(
                self.api_host_port,
                self.port_max_attempts,
                f"Guest API port {self.guest_api_port} is not mapped to the host",
            )

            self._enter(LaunchState.LAUNCHING_APP)
            app = self._find_app(target, api_port)
            self._check_cancelled()
            self._dispatch(app)

            # The grace timer, not the session, decides completion
            self._sleep(self.grace_delay)
            self._enter(LaunchState.COMPLETED)

        except LaunchCancelled:
            self.state = LaunchState.CANCELLED
            self.progress.cancelled = True
            self._notify()
            logger.info("Launch of '%s' cancelled", target.label)
            return LaunchOutcome(state=LaunchState.CANCELLED, target=target, reason="Cancelled")

        except LaunchFailed as e:
            self.state = LaunchState.FAILED
            logger.error("Launch of '%s' failed: %s", target.label, e.reason)
            return LaunchOutcome(state=LaunchState.FAILED, target=target, reason=e.reason, failure=e.kind)

        logger.info("Launch of '%s' completed", target.label)
        return LaunchOutcome(state=LaunchState.COMPLETED, target=target)

    def _enter(self, state: LaunchState) -> None:
        self._check_cancelled()
        self.state = state
        logger.debug("Launch state: %s", state)

        phase = PHASE_FOR_STATE[state]
        if phase != self.progress.phase or state == LaunchState.STARTING_CONTAINER:
            self.progress.phase = phase
            self._notify()

    def _notify(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.progress.model_copy())

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise LaunchCancelled()

    def _sleep(self, seconds: float) -> None:
        self._check_cancelled()
        self._wait(seconds)
        self._check_cancelled()

    def _poll(self, check: Callable[[], Optional[T]], max_attempts: int, timeout_reason: str) -> T:
        """Calls ``check`` every poll interval until it returns a truthy value."""
        for attempt in range(1, max_attempts + 1):
            self._check_cancelled()
            try:
                value = check()
            except RuntimeActionError as e:
                raise LaunchFailed(FailureKind.RUNTIME, f"Container runtime error: {e}") from e
            if value:
                return value
            if attempt < max_attempts:
                self._sleep(self.poll_interval)

        raise LaunchFailed(FailureKind.TIMEOUT, f"{timeout_reason} ({max_attempts} attempts)")

    def _ensure_running(self, status: ContainerStatus) -> None:
        if status == ContainerStatus.RUNNING:
            return

        try:
            if status == ContainerStatus.PAUSED:
                logger.info("Container paused, resuming it")
                self.runtime.unpause()
            else:
                logger.info("Container %s, starting it", status)
                self.runtime.start()
        except RuntimeActionError as e:
            raise LaunchFailed(FailureKind.RUNTIME, f"Failed to start container: {e}") from e

    def _find_app(self, target: LaunchTarget, api_port: int) -> WinApp:
        base_url = base_url_for(api_port)
        logger.debug("Using API URL: %s", base_url)

        try:
            apps = self.guest_api.get_apps(base_url)
        except GuestApiError as e:
            raise LaunchFailed(FailureKind.API, str(e)) from e

        for app in apps:
            if app.matches(target):
                return app

        raise LaunchFailed(FailureKind.LOOKUP, f"App not found: {target.label}")

    def _dispatch(self, app: WinApp) -> None:
        self.session_thread = threading.Thread(
            target=self._run_session, args=(app,), name=f"session-{app.name}", daemon=True
        )
        self.session_thread.start()

    def _run_session(self, app: WinApp) -> None:
        try:
            self.launcher.launch(app)
        except Exception as e:
            logger.error("Error during app launch of '%s': %s", app.name, e)
            if self.on_session_error is not None:
                self.on_session_error(app, e)
            return

        logger.info("Session for '%s' ended", app.name)
