"""Detach the current process into a background daemon.

Uses the classic double fork:

1. fork -- the original process returns ``PARENT`` and is free to exit
2. setsid -- the child becomes a session leader without a terminal
3. fork -- the session leader exits so the daemon can never reacquire one
4. umask, redirect stdout/stderr to the log file, close stdin
5. the grandchild returns ``DAEMON`` and keeps running the service
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from mdview._types import DaemonErrorKind, DaemonizeResult

_DAEMON_UMASK = 0o027


class DaemonError(Exception):
    """A step of the daemonize sequence failed. ``kind`` names the step."""

    def __init__(self, kind: DaemonErrorKind, cause: OSError) -> None:
        super().__init__(f"{kind.value} failed: {cause}")
        self.kind = kind
        self.cause = cause


def _fork() -> int:
    try:
        return os.fork()
    except OSError as e:
        raise DaemonError(DaemonErrorKind.FORK, e) from e


def daemonize(log_path: Path) -> DaemonizeResult:
    """Double-fork into a daemon whose stdout/stderr go to ``log_path``.

    Returns ``DaemonizeResult.PARENT`` in the invoking process and
    ``DaemonizeResult.DAEMON`` in the detached grandchild. The intermediate
    session leader never returns.
    """
    # Anything still buffered would otherwise be written once per process
    sys.stdout.flush()
    sys.stderr.flush()

    if _fork() > 0:
        return DaemonizeResult.PARENT

    try:
        os.setsid()
    except OSError as e:
        raise DaemonError(DaemonErrorKind.SETSID, e) from e

    if _fork() > 0:
        os._exit(0)

    os.umask(_DAEMON_UMASK)

    try:
        log_fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o640)
    except OSError as e:
        raise DaemonError(DaemonErrorKind.IO, e) from e

    try:
        os.dup2(log_fd, 1)
        os.dup2(log_fd, 2)
    except OSError as e:
        raise DaemonError(DaemonErrorKind.DUP, e) from e
    if log_fd > 2:
        os.close(log_fd)

    try:
        os.close(0)
    except OSError as e:
        raise DaemonError(DaemonErrorKind.CLOSE, e) from e

    # fd 1 is no longer a terminal; keep log lines ordered
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if reconfigure is not None:
            reconfigure(line_buffering=True)

    return DaemonizeResult.DAEMON
