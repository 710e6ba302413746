import logging
import signal
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .app import Launcher
from .compose import ComposeFileError, ComposeStore
from .models import LaunchPhase, LaunchProgress, LaunchState, LaunchTarget, WinApp
from .ports import PortMapper
from .rdp import RdpLaunchError
from .runtime import RuntimeActionError
from .settings import get_settings

console = Console()

PHASE_LABELS = {
    LaunchPhase.STARTING_CONTAINER: "🚀 Starting container...",
    LaunchPhase.WAITING_ONLINE: "⏳ Waiting for Windows to come online...",
    LaunchPhase.LAUNCHING_APP: "🪟 Launching app...",
    LaunchPhase.COMPLETED: "✅ Window should be visible now",
}

EXIT_CODES = {
    LaunchState.COMPLETED: 0,
    LaunchState.FAILED: 1,
    LaunchState.CANCELLED: 130,
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def show_progress(progress: LaunchProgress) -> None:
    if progress.cancelled:
        console.print(f"[bold orange1]🛑 Launch of {progress.target_app_name} cancelled[/bold orange1]")
        return
    console.print(f"[blue]{PHASE_LABELS[progress.phase]}[/blue] [dim]({progress.target_app_name})[/dim]")


def show_session_error(app: WinApp, error: Exception) -> None:
    console.print(f"[bold red]❌ Session for {app.name} failed:[/bold red] {error}")


def _load_store() -> ComposeStore:
    settings = get_settings()
    store = ComposeStore(settings.COMPOSE_FILE)
    try:
        store.reload()
    except ComposeFileError as e:
        console.print(f"[bold red]Fatal: {e}[/]")
        sys.exit(1)
    return store


@click.group()
def cli():
    """Run Windows apps from the guest container as host windows."""
    configure_logging(get_settings().LOG_LEVEL)


@cli.command()
@click.option("--name", "app_name", help="App name as listed by the guest.")
@click.option("--path", "app_path", help="Executable path inside the guest.")
def launch(app_name: str | None, app_path: str | None):
    """Bring the guest up and open one app window."""
    if not app_name and not app_path:
        raise click.UsageError("Pass --name or --path")

    settings = get_settings()
    _load_store()  # surface malformed port declarations before anything starts

    try:
        launcher = Launcher(settings, on_progress=show_progress, on_session_error=show_session_error)
        launcher.rdp.ensure_installation()
    except (RuntimeActionError, RdpLaunchError) as e:
        console.print(f"[bold red]Fatal:[/bold red] {e}")
        sys.exit(1)

    orchestrator = launcher.orchestrator

    def handle_signal(signum, frame):
        console.print(f"\n[bold orange1]🛑 Signal {signum} received. Cancelling launch...[/bold orange1]")
        orchestrator.cancel()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    target = LaunchTarget(name=app_name, path=app_path)
    outcome = orchestrator.launch(target)

    if outcome.state == LaunchState.FAILED:
        console.print(f"[bold red]❌ Launch failed ({outcome.failure}):[/bold red] {outcome.reason}")
    elif outcome.succeeded and orchestrator.session_thread is not None:
        # The RDP session outlives the launch call; stay attached until it ends
        signal.signal(signal.SIGINT, signal.SIG_DFL)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)
        orchestrator.session_thread.join()

    sys.exit(EXIT_CODES[outcome.state])


@cli.command()
def status():
    """Show the guest container's power state."""
    settings = get_settings()
    try:
        launcher = Launcher(settings)
        current = launcher.runtime.status()
    except RuntimeActionError as e:
        console.print(f"[bold red]Fatal:[/bold red] {e}")
        sys.exit(1)

    api_port = launcher.orchestrator.api_host_port()
    console.print(
        Panel.fit(
            f"Container: [blue]{settings.CONTAINER_NAME}[/blue]\n"
            f"Status: [green]{current}[/green]\n"
            f"Guest API: [blue]{api_port if api_port else 'not mapped'}[/blue]",
            title="Guest",
        )
    )


@cli.group()
def ports():
    """Inspect and edit the guest's port mappings."""


@ports.command("list")
def list_ports():
    store = _load_store()
    mapper = store.mapper()

    table = Table(title=str(store.path))
    table.add_column("Host IP")
    table.add_column("Host")
    table.add_column("Guest")
    table.add_column("Protocol")
    table.add_column("Free", justify="center")

    for entry in mapper.entries:
        if isinstance(entry.host, int):
            free = "✅" if PortMapper.is_port_open(entry.host) else "❌"
        else:
            free = "[dim]-[/dim]"
        host = str(entry.host) if entry.host is not None else "[dim]dynamic[/dim]"
        table.add_row(entry.host_ip, host, str(entry.guest), entry.protocol, free)

    console.print(table)
    for long_entry in mapper.long_entries:
        console.print(f"[dim]long syntax: {long_entry.model_dump(exclude_none=True)}[/dim]")


@ports.command("set")
@click.argument("guest_port", type=click.IntRange(1, 65535))
@click.argument("host_port", type=click.IntRange(1, 65535))
@click.option("--protocol", type=click.Choice(["tcp", "udp"]), default="tcp", show_default=True)
@click.option("--host-ip", default="0.0.0.0", show_default=True)
def set_port(guest_port: int, host_port: int, protocol: str, host_ip: str):
    """Map GUEST_PORT to HOST_PORT, or the next free port after it."""
    store = _load_store()
    mapper = store.mapper()

    try:
        claimed = mapper.claim_host_port(guest_port, host_port, host_ip=host_ip, protocol=protocol)
    except ValueError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        sys.exit(1)

    if claimed is None:
        console.print(f"[bold red]❌ Port {host_port} blocked and no viable fallbacks.[/bold red]")
        sys.exit(1)

    if claimed != host_port:
        console.print(f"[bold orange1]⚠️  Port {host_port} busy. Using {claimed} instead.[/bold orange1]")

    store.save()
    console.print(f"[bold green]✅ {mapper.lookup(guest_port, protocol)}[/bold green]")


@ports.command("check")
@click.argument("port", type=click.IntRange(1, 65535))
def check_port(port: int):
    """Report whether a host port is free right now."""
    if PortMapper.is_port_open(port):
        console.print(f"[green]Port {port} is free[/green]")
    else:
        console.print(f"[red]Port {port} is in use[/red]")
        sys.exit(1)


if __name__ == "__main__":
    cli()
