"""Watch the previewed file and publish reloads when its content changes."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import watchfiles
from watchfiles import Change

from mdview.reload import ReloadBus

logger = logging.getLogger(__name__)

# Editors often write a file in several chunks; group them into one reload
_DEBOUNCE_MS = 300


def watch_file(
    path: Path,
    bus: ReloadBus,
    stop_event: threading.Event | None = None,
) -> None:
    """Block, publishing one reload per batch that modifies ``path``.

    Only content modifications count; additions, deletions and renames
    are ignored. Returns when ``stop_event`` is set. Errors from the
    underlying notifier propagate to the caller.
    """
    logger.info(f"Watching {path} for changes...")
    for changes in watchfiles.watch(
        path,
        watch_filter=None,
        debounce=_DEBOUNCE_MS,
        stop_event=stop_event,
        recursive=False,
        raise_interrupt=False,
    ):
        if any(change == Change.modified for change, _ in changes):
            reached = bus.publish()
            logger.info(f"Refreshed: {path.name} ({reached} client(s) notified)")


def start_watcher(
    path: Path,
    bus: ReloadBus,
    stop_event: threading.Event | None = None,
) -> threading.Thread:
    """Run :func:`watch_file` on a daemon thread.

    A watcher failure ends only this thread; the server keeps serving
    pages without live reload.
    """

    def _run() -> None:
        try:
            watch_file(path, bus, stop_event)
        except Exception:
            logger.exception(f"File watcher error for {path}; live reload disabled")

    thread = threading.Thread(target=_run, name="mdview-watcher", daemon=True)
    thread.start()
    return thread
