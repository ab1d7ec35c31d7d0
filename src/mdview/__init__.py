"""mdview: live-reloading Markdown preview in the browser.

Renders a Markdown file to a GitHub-styled page and reloads the browser
tab whenever the file changes. Previews can run in the foreground or as
background daemons tracked in a per-user registry, so they can be listed
and stopped by file name.

Quick Start:
    mdview serve README.md      # background preview
    mdview list                 # show running previews
    mdview stop README.md       # stop it
    mdview README.md            # foreground preview (Ctrl-C to stop)
"""

from __future__ import annotations

import logging
import os
import signal
import time
import webbrowser
from datetime import datetime, timezone
from pathlib import Path

from mdview._types import DaemonizeResult, Instance, StopOutcome
from mdview._utils import find_available_port, is_pid_alive
from mdview.daemon import DaemonError, daemonize
from mdview.registry import Registry, RegistryError, get_log_path
from mdview.reload import ReloadBus
from mdview.server import PreviewServer
from mdview.shutdown import ShutdownCoordinator, deregister
from mdview.watcher import start_watcher

__version__ = "0.2.0"

__all__ = [
    "DaemonError",
    "DaemonizeResult",
    "Instance",
    "PreviewServer",
    "Registry",
    "RegistryError",
    "StopOutcome",
    "configure_logging",
    "daemonize",
    "find_available_port",
    "find_running",
    "get_log_path",
    "list_instances",
    "open_browser",
    "run_daemon",
    "run_foreground",
    "stop_instance",
    "validate_file",
]

logger = logging.getLogger(__name__)

_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
_STOP_WAIT_SECONDS = 3.0


def configure_logging(level: int = logging.INFO) -> None:
    """Send log records to stderr (the instance log file once daemonized)."""
    logging.basicConfig(level=level, format=_LOG_FORMAT, datefmt=_LOG_DATEFMT, force=True)


def validate_file(file: Path | str) -> Path:
    """Return the canonical path of an existing regular file.

    Raises FileNotFoundError if it does not exist and ValueError if it is
    not a regular file.
    """
    path = Path(file)
    if not path.exists():
        raise FileNotFoundError(f"File '{file}' not found")
    if not path.is_file():
        raise ValueError(f"'{file}' is not a file")
    return path.resolve(strict=True)


# ---------------------------------------------------------------------------
# Registry-backed operations
# ---------------------------------------------------------------------------


def find_running(
    file_path: Path, data_dir: Path | None = None
) -> tuple[Instance | None, list[Instance]]:
    """Look up a live instance for ``file_path`` after dropping stale entries.

    Returns ``(instance_or_None, stale_entries_removed)``. The registry is
    saved only if something was removed.
    """
    registry = Registry.load(data_dir)
    stale = registry.cleanup_stale()
    existing = registry.get(file_path)
    if stale:
        registry.save()
    return existing, stale


def list_instances(data_dir: Path | None = None) -> list[Instance]:
    """Return registered instances, cleaning stale ones out first."""
    registry = Registry.load(data_dir)
    stale = registry.cleanup_stale()
    if stale:
        try:
            registry.save()
        except RegistryError as e:
            logger.warning(f"Could not save state: {e}")
    return sorted(registry.instances(), key=lambda inst: inst.started_at)


def _wait_for_exit(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_pid_alive(pid):
            return True
        time.sleep(0.1)
    return not is_pid_alive(pid)


def stop_instance(
    file_path: Path,
    data_dir: Path | None = None,
    wait: float = _STOP_WAIT_SECONDS,
) -> tuple[Instance, StopOutcome]:
    """Send SIGTERM to the instance serving ``file_path`` and deregister it.

    Raises LookupError if no instance is registered for the path.
    """
    registry = Registry.load(data_dir)
    instance = registry.get(file_path)
    if instance is None:
        raise LookupError(f"No running instance found for '{file_path}'")

    if instance.pid <= 0:
        # Never signal a process group
        outcome = StopOutcome.STALE
    else:
        try:
            os.kill(instance.pid, signal.SIGTERM)
        except ProcessLookupError:
            outcome = StopOutcome.STALE
        except OSError as e:
            logger.warning(f"Failed to stop process {instance.pid}: {e}")
            outcome = StopOutcome.FAILED
        else:
            exited = wait > 0 and _wait_for_exit(instance.pid, wait)
            outcome = StopOutcome.STOPPED if exited else StopOutcome.SIGNALLED

    # Reload: the daemon may have deregistered itself meanwhile
    registry = Registry.load(data_dir)
    if registry.remove(file_path) is not None:
        registry.save()
    return instance, outcome


# ---------------------------------------------------------------------------
# Serving
# ---------------------------------------------------------------------------


def _start_preview(file_path: Path, port: int) -> tuple[PreviewServer, ReloadBus]:
    bus = ReloadBus()
    server = PreviewServer(file_path, bus=bus, port=port)
    server.start()
    start_watcher(file_path, bus)
    return server, bus


def open_browser(url: str) -> None:
    try:
        if not webbrowser.open(url):
            logger.warning(f"Could not open browser. Please open {url} manually")
    except webbrowser.Error as e:
        logger.warning(f"Could not open browser ({e}). Please open {url} manually")


def run_foreground(file_path: Path, port: int, open_in_browser: bool = True) -> None:
    """Serve ``file_path`` in this process until SIGINT/SIGTERM.

    No registry interaction.
    """
    coordinator = ShutdownCoordinator()
    coordinator.install()
    try:
        server, _ = _start_preview(file_path, port)
        logger.info(f"Serving '{file_path.name}' at {server.url}")
        if open_in_browser:
            open_browser(server.url)
        coordinator.wait()
        logger.info("Shutting down server...")
        server.stop()
    finally:
        coordinator.restore()


def run_daemon(
    file_path: Path,
    port: int,
    log_path: Path,
    data_dir: Path | None = None,
) -> None:
    """Body of a daemonized instance: register, serve, deregister on signal."""
    configure_logging()
    coordinator = ShutdownCoordinator()
    coordinator.install()

    instance = Instance(
        pid=os.getpid(),
        port=port,
        file_path=file_path,
        started_at=datetime.now(timezone.utc),
        log_file=log_path,
    )
    try:
        registry = Registry.load(data_dir)
        registry.add(instance)
        registry.save()
    except RegistryError as e:
        logger.warning(f"Could not save state: {e}")

    logger.info(f"mdview daemon started for '{file_path}' (pid={instance.pid}, port={port})")

    try:
        server, _ = _start_preview(file_path, port)
    except Exception:
        logger.exception("Server failed to start")
        deregister(file_path, data_dir)
        raise

    logger.info(f"Server running on {server.url}")
    coordinator.wait()
    logger.info(f"Received shutdown signal ({coordinator.received})")
    deregister(file_path, data_dir)
    server.stop()
    coordinator.restore()
