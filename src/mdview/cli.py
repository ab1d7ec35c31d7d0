"""mdview command-line interface.

Usage:
    mdview serve FILE [--no-open]
    mdview stop  FILE
    mdview list  [--json]
    mdview view  FILE [--no-open]
    mdview FILE                      (same as ``view``)
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

app = typer.Typer(
    name="mdview",
    help="A markdown viewer with live reload and GitHub styling.",
    no_args_is_help=True,
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

_COMMANDS = {"serve", "stop", "list", "view"}


def _info(msg: str) -> None:
    console.print(f"[dim]>[/dim] {msg}", soft_wrap=True)


def _success(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}", soft_wrap=True)


def _error(msg: str) -> None:
    err_console.print(f"[red]✗[/red] {msg}", soft_wrap=True)


def _version_callback(value: bool) -> None:
    if value:
        from mdview import __version__

        console.print(f"mdview {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """A markdown viewer with live reload and GitHub styling."""


def _validate(file: Path) -> Path:
    from mdview import validate_file

    try:
        return validate_file(file)
    except (OSError, ValueError) as e:
        _error(escape(str(e)))
        raise typer.Exit(1)


def _allocate_port() -> int:
    from mdview import find_available_port

    port = find_available_port()
    if port is None:
        _error("Could not find an available port")
        raise typer.Exit(1)
    return port


@app.command()
def serve(
    file: Path = typer.Argument(help="Path to the markdown file to view."),
    no_open: bool = typer.Option(False, "--no-open", help="Don't open browser."),
) -> None:
    """Start a viewer in the background."""
    from mdview import RegistryError, find_running
    from mdview.registry import get_log_path

    file_path = _validate(file)

    try:
        existing, stale = find_running(file_path)
    except RegistryError as e:
        _error(f"Error loading state: {escape(str(e))}")
        raise typer.Exit(1)

    for inst in stale:
        _info(f"Cleaned up stale instance for '{escape(str(inst.file_path))}'")

    if existing is not None:
        _info(
            f"Already serving '{escape(str(file_path))}' at {existing.url} "
            f"(pid={existing.pid})"
        )
        return

    port = _allocate_port()
    try:
        log_path = get_log_path(file_path, port)
    except RegistryError as e:
        _error(f"Error determining log path: {escape(str(e))}")
        raise typer.Exit(1)

    url = f"http://localhost:{port}"
    _info(f"Starting mdview daemon for '{escape(file_path.name)}'")
    console.print(f"  [bold]URL:[/bold]  {url}", soft_wrap=True)
    console.print(f"  [bold]Log:[/bold]  {escape(str(log_path))}", soft_wrap=True)

    _daemonize_and_run(file_path, port, log_path, no_open=no_open)


def _daemonize_and_run(file_path: Path, port: int, log_path: Path, no_open: bool) -> None:
    from mdview import DaemonError, DaemonizeResult, daemonize, open_browser, run_daemon

    try:
        result = daemonize(log_path)
    except DaemonError as e:
        _error(f"Error daemonizing: {escape(str(e))}")
        raise typer.Exit(1)

    if result is DaemonizeResult.PARENT:
        if not no_open:
            # Give the daemon a moment to bind
            time.sleep(0.2)
            open_browser(f"http://localhost:{port}")
        return

    try:
        run_daemon(file_path, port, log_path)
    except OSError as e:
        _error(f"Server error: {escape(str(e))}")
        raise typer.Exit(1)


@app.command()
def stop(
    file: Path = typer.Argument(help="Path to the markdown file."),
) -> None:
    """Stop a running background instance."""
    from mdview import RegistryError, StopOutcome, stop_instance

    try:
        file_path = file.resolve(strict=True)
    except OSError:
        # The file may have been deleted while its preview kept running
        file_path = file.absolute().resolve()

    try:
        instance, outcome = stop_instance(file_path)
    except LookupError as e:
        _error(escape(str(e)))
        raise typer.Exit(1)
    except RegistryError as e:
        _error(f"Error loading state: {escape(str(e))}")
        raise typer.Exit(1)

    if outcome is StopOutcome.STALE:
        _info(f"Process {instance.pid} not running (stale entry), cleaning up")
    elif outcome is StopOutcome.FAILED:
        _error(f"Failed to stop process {instance.pid}")
    else:
        _info(f"Sent stop signal to mdview (pid={instance.pid})")
    _success(f"Stopped serving '{escape(str(file_path))}'")


@app.command("list")
def list_(
    as_json: bool = typer.Option(False, "--json", help="Output in JSON format."),
) -> None:
    """List all running instances."""
    from mdview import RegistryError, Registry, list_instances

    try:
        instances = list_instances()
    except RegistryError as e:
        _error(f"Error loading state: {escape(str(e))}")
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps([inst.to_dict() for inst in instances], indent=2))
        return

    if not instances:
        _info("No running mdview instances")
        return

    console.print(f"[bold]{'PID':<8} {'PORT':<6} {'STARTED':<20} FILE[/bold]")
    console.print("-" * 70)
    for inst in instances:
        started = inst.started_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        status = "" if Registry.is_process_running(inst.pid) else " [yellow](stale)[/yellow]"
        console.print(
            f"{inst.pid:<8} {inst.port:<6} {started:<20} "
            f"{escape(str(inst.file_path))}{status}",
            soft_wrap=True,
        )


@app.command()
def view(
    file: Path = typer.Argument(help="Path to the markdown file to view."),
    no_open: bool = typer.Option(False, "--no-open", help="Don't open browser."),
) -> None:
    """Run a viewer in the foreground (Ctrl-C to stop)."""
    from mdview import configure_logging, run_foreground

    file_path = _validate(file)
    port = _allocate_port()

    configure_logging()
    _info(f"Serving '{escape(file_path.name)}' at http://localhost:{port}")
    _info("Press Ctrl+C to stop the server")
    try:
        run_foreground(file_path, port, open_in_browser=not no_open)
    except OSError as e:
        _error(f"Server error: {escape(str(e))}")
        raise typer.Exit(1)


def _route_legacy_args(args: list[str]) -> list[str]:
    """Turn ``mdview FILE`` into ``mdview view FILE``."""
    if args and args[0] not in _COMMANDS and not args[0].startswith("-"):
        return ["view", *args]
    return args


def main() -> None:
    app(args=_route_legacy_args(sys.argv[1:]), prog_name="mdview")


if __name__ == "__main__":
    main()
