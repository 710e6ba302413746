"""Tests for FreeRDP discovery and the RDP app launcher."""

import subprocess
from unittest.mock import patch

import pytest

from guest_launch.models import WinApp
from guest_launch.rdp import FreeRDPInstallation, RdpLaunchError, RdpLauncher, find_freerdp


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def installation():
    return FreeRDPInstallation("xfreerdp3")


@pytest.fixture
def app():
    return WinApp(name="Notepad", path="C:\\Windows\\System32\\notepad.exe")


class TestFindFreeRDP:
    def test_first_version_3_installation_wins(self):
        candidates = [
            FreeRDPInstallation("xfreerdp3"),
            FreeRDPInstallation("xfreerdp"),
            FreeRDPInstallation("flatpak", ["run", "--command=xfreerdp", "com.freerdp.FreeRDP"]),
        ]
        outputs = [
            FileNotFoundError("xfreerdp3"),
            completed(stdout="This is FreeRDP version 2.11.2"),
            completed(stdout="This is FreeRDP version 3.5.1 (n/a)"),
        ]

        with patch("guest_launch.rdp.subprocess.run", side_effect=outputs) as run:
            assert find_freerdp(candidates) is candidates[2]

        assert run.call_args.args[0] == ["flatpak", "run", "--command=xfreerdp", "com.freerdp.FreeRDP", "--version"]

    def test_none_found(self):
        with patch("guest_launch.rdp.subprocess.run", side_effect=FileNotFoundError("missing")):
            assert find_freerdp([FreeRDPInstallation("xfreerdp3")]) is None


class TestInstallation:
    def test_stringify_quotes_arguments(self):
        installation = FreeRDPInstallation("flatpak", ["run"])

        assert installation.stringify_exec(["/app:program:C:\\Program Files\\x.exe"]) == (
            "flatpak run '/app:program:C:\\Program Files\\x.exe'"
        )


class TestRdpLauncher:
    def test_launch_runs_freerdp_with_app(self, installation, app):
        launcher = RdpLauncher(rdp_port=lambda: 47300, username="winboat", password="s3cret", installation=installation)

        with patch("guest_launch.rdp.subprocess.run", return_value=completed()) as run:
            launcher.launch(app)

        command = run.call_args.args[0]
        assert command[0] == "xfreerdp3"
        assert "/port:47300" in command
        assert "/v:127.0.0.1" in command
        assert "/u:winboat" in command
        assert "/p:s3cret" in command
        assert command[-1] == '/app:program:"C:\\Windows\\System32\\notepad.exe",name:"Notepad"'

    def test_password_is_not_logged(self, installation, app, caplog):
        launcher = RdpLauncher(rdp_port=lambda: 47300, username="winboat", password="s3cret", installation=installation)

        with caplog.at_level("INFO"), patch("guest_launch.rdp.subprocess.run", return_value=completed()):
            launcher.launch(app)

        assert "s3cret" not in caplog.text
        assert "Notepad" in caplog.text

    def test_nonzero_exit_raises(self, installation, app):
        launcher = RdpLauncher(rdp_port=lambda: 47300, username="u", password="p", installation=installation)

        with patch("guest_launch.rdp.subprocess.run", return_value=completed(131, stderr="ERRCONNECT")):
            with pytest.raises(RdpLaunchError, match="131"):
                launcher.launch(app)

    def test_unmapped_rdp_port(self, installation, app):
        launcher = RdpLauncher(rdp_port=lambda: None, username="u", password="p", installation=installation)

        with pytest.raises(RdpLaunchError, match="not mapped"):
            launcher.launch(app)

    def test_missing_freerdp(self, app):
        launcher = RdpLauncher(rdp_port=lambda: 47300, username="u", password="p")

        with patch("guest_launch.rdp.find_freerdp", return_value=None):
            with pytest.raises(RdpLaunchError, match="FreeRDP"):
                launcher.launch(app)

    def test_app_argument_strips_quotes_and_commas(self, installation):
        launcher = RdpLauncher(rdp_port=lambda: 1, username="u", password="p", installation=installation)
        app = WinApp(name='Word, "2016"', path='C:\\Office\\"winword".exe')

        assert launcher.build_args(app, 1)[-1] == '/app:program:"C:\\Office\\winword.exe",name:"Word 2016"'
