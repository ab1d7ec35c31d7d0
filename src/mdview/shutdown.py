"""Graceful shutdown on SIGINT/SIGTERM.

Signal handlers only set an event; the main thread waits on it and then
removes the instance from the registry before the process exits.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from mdview.registry import Registry, RegistryError

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class ShutdownCoordinator:
    """Turns termination signals into a single shutdown event.

    Args:
        signals: Signals to intercept (default: SIGINT and SIGTERM).
    """

    def __init__(
        self,
        signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        self.signals = tuple(signals)
        self.received: int | None = None
        self._event = threading.Event()
        self._previous: dict[signal.Signals, Any] = {}

    def install(self) -> None:
        """Register the handlers. Must run on the main thread."""
        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handle)

    def restore(self) -> None:
        """Put back whatever handlers were active before ``install()``."""
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()

    def _handle(self, signum: int, frame: Any) -> None:
        self.received = signum
        self._event.set()

    def trigger(self) -> None:
        """Request shutdown without a signal."""
        self._event.set()

    @property
    def triggered(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until shutdown is requested or ``timeout`` expires.

        Waits in short slices so signal handlers get a chance to run on
        the main thread.
        """
        remaining = timeout
        while not self._event.wait(_POLL_INTERVAL):
            if remaining is not None:
                remaining -= _POLL_INTERVAL
                if remaining <= 0:
                    return False
        return True


def deregister(file_path: Path, data_dir: Path | None = None) -> bool:
    """Remove ``file_path``'s entry from the registry.

    Reloads the registry first so entries written by other processes
    survive. Failures are logged, not retried. Returns True if an entry
    was removed and saved.
    """
    try:
        registry = Registry.load(data_dir)
    except RegistryError as e:
        logger.warning(f"Could not load registry during shutdown: {e}")
        return False
    if registry.remove(file_path) is None:
        return False
    try:
        registry.save()
    except RegistryError as e:
        logger.warning(f"Could not save registry during shutdown: {e}")
        return False
    return True
