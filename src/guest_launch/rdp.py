import logging
import re
import shlex
import subprocess
from collections.abc import Callable
from typing import Optional

from .models import WinApp

logger = logging.getLogger(__name__)

VERSION_3_STRING = "version 3."


class RdpLaunchError(Exception):
    """Raised when the RDP client cannot be started or exits with an error."""


class FreeRDPInstallation:
    def __init__(self, file: str, default_args: list[str] | None = None):
        self.file = file
        self.default_args = default_args or []

    def command(self, args: list[str]) -> list[str]:
        return [self.file, *self.default_args, *args]

    def exec(self, args: list[str], timeout: float | None = None) -> subprocess.CompletedProcess:
        return subprocess.run(self.command(args), capture_output=True, text=True, timeout=timeout)

    def stringify_exec(self, args: list[str]) -> str:
        """Shell-safe rendering of the command, for logs."""
        return shlex.join(self.command(args))


FREERDP_INSTALLATIONS = [
    FreeRDPInstallation("xfreerdp3"),
    FreeRDPInstallation("xfreerdp"),
    FreeRDPInstallation("flatpak", ["run", "--command=xfreerdp", "com.freerdp.FreeRDP"]),
]


def find_freerdp(installations: list[FreeRDPInstallation] = FREERDP_INSTALLATIONS) -> Optional[FreeRDPInstallation]:
    """Returns the first FreeRDP 3.x installation available on the system."""
    for installation in installations:
        try:
            output = installation.exec(["--version"], timeout=10)
        except (OSError, subprocess.SubprocessError):
            continue
        if VERSION_3_STRING in output.stdout:
            return installation
    return None


def _app_argument(app: WinApp) -> str:
    # Quotes and commas would break FreeRDP's key:value list
    name = re.sub(r'[",]', "", app.name)
    path = app.path.replace('"', "")
    return f'/app:program:"{path}",name:"{name}"'


class RdpLauncher:
    """
    Opens one application window from the guest through FreeRDP.

    ``launch`` blocks until the remote session ends.
    """

    def __init__(
        self,
        rdp_port: Callable[[], Optional[int]],
        username: str,
        password: str,
        installation: FreeRDPInstallation | None = None,
    ):
        self.installation = installation
        self.rdp_port = rdp_port
        self.username = username
        self.password = password

    def ensure_installation(self) -> FreeRDPInstallation:
        if self.installation is None:
            self.installation = find_freerdp()
        if self.installation is None:
            raise RdpLaunchError("FreeRDP 3.x was not found (tried xfreerdp3, xfreerdp and the flatpak)")
        return self.installation

    def build_args(self, app: WinApp, port: int) -> list[str]:
        return [
            f"/u:{self.username}",
            f"/p:{self.password}",
            "/v:127.0.0.1",
            f"/port:{port}",
            "/cert:tofu",
            "+clipboard",
            "-wallpaper",
            "/sound:sys:pulse",
            f"/wm-class:{app.name}",
            _app_argument(app),
        ]

    def launch(self, app: WinApp) -> None:
        installation = self.ensure_installation()
        port = self.rdp_port()
        if port is None:
            raise RdpLaunchError("RDP port is not mapped to the host")

        args = self.build_args(app, port)
        redacted = [f"/p:{'*' * 8}" if arg.startswith("/p:") else arg for arg in args]
        logger.info("Launching %s: %s", app.name, installation.stringify_exec(redacted))

        try:
            result = installation.exec(args)
        except OSError as e:
            raise RdpLaunchError(f"Could not run {installation.file}: {e}") from e

        if result.returncode != 0:
            raise RdpLaunchError(
                f"RDP session for '{app.name}' exited with code {result.returncode}: {result.stderr.strip()}"
            )
