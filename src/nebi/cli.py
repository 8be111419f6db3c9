"""nebi CLI: local server management.

Usage:
    nebi server start
    nebi server status
    nebi server stop
    nebi server logs [--lines N]
    nebi server env
    nebi version
"""

from __future__ import annotations

from collections import deque

import typer
from rich.console import Console

from nebi._types import ServerInfo

app = typer.Typer(
    name="nebi",
    help="Manage Pixi environments on a nebi server.",
    no_args_is_help=True,
)
server_app = typer.Typer(
    help="Manage the local nebi server (started automatically when needed).",
    no_args_is_help=True,
)
app.add_typer(server_app, name="server")

console = Console()


def _info(msg: str) -> None:
    console.print(f"[dim]>[/dim] {msg}")


def _success(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def _error(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")


def _format_duration(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def _ensure() -> ServerInfo:
    from nebi import LocalServerError, ensure_local_server

    try:
        return ensure_local_server()
    except LocalServerError as e:
        _error(f"{e.kind}: {e}")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Print the nebi version."""
    from nebi import __version__

    console.print(f"nebi {__version__}")


@server_app.command()
def start() -> None:
    """Start the local server if it is not already running."""
    info = _ensure()
    _success(f"Local server running at {info.url} (pid={info.pid})")


@server_app.command()
def status() -> None:
    """Show status of the local server."""
    from nebi import server_status

    info = server_status()
    if info.is_running:
        _success("Local server is running")
    else:
        _info(f"Local server is {info.status}.")
    console.print("  [bold]Server:[/bold]     local")
    console.print(f"  [bold]Status:[/bold]     {info.status}")
    if info.port:
        console.print(f"  [bold]Port:[/bold]       {info.port}")
    if info.pid:
        console.print(f"  [bold]PID:[/bold]        {info.pid}")
    if info.version:
        console.print(f"  [bold]Version:[/bold]    {info.version}")
    if info.uptime:
        console.print(f"  [bold]Uptime:[/bold]     {_format_duration(info.uptime)}")
    console.print(f"  [bold]Logs:[/bold]       {info.log_file}")
    console.print(f"  [bold]Database:[/bold]   {info.database}")


@server_app.command()
def stop() -> None:
    """Stop the local server."""
    from nebi import stop_server

    if stop_server():
        _success("Local server stopped.")
    else:
        _info("No running local server found.")


@server_app.command()
def logs(
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show."),
) -> None:
    """Show the tail of the local server log."""
    from nebi.paths import get_local_server_paths

    log_file = get_local_server_paths().log_file
    if not log_file.exists():
        _info(f"No log file at {log_file}")
        return
    with open(log_file, errors="replace") as f:
        tail = deque(f, maxlen=max(lines, 0))
    for line in tail:
        typer.echo(line.rstrip("\n"))


@server_app.command()
def env() -> None:
    """Print NEBI_URL and NEBI_TOKEN for the local server (starts it if needed)."""
    info = _ensure()
    typer.echo(f"NEBI_URL={info.url}")
    typer.echo(f"NEBI_TOKEN={info.token}")


if __name__ == "__main__":
    app()
