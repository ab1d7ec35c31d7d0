"""Shared utilities for the mdview package.

Deduplicates common patterns used across multiple modules:
port probing, PID checks, file locking, data directory resolution,
and file-type constants.
"""

from __future__ import annotations

import fcntl
import os
import socket
from pathlib import Path
from typing import Any

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6914
PORT_ATTEMPTS = 100

# ---------------------------------------------------------------------------
# Port allocation
# ---------------------------------------------------------------------------


def find_available_port(
    start: int = DEFAULT_PORT,
    max_attempts: int = PORT_ATTEMPTS,
    host: str = DEFAULT_HOST,
) -> int | None:
    """Return the first port in ``[start, start + max_attempts)`` that binds.

    The probe socket is closed immediately, so the port is only *likely*
    to be free when the caller binds it.
    """
    for port in range(start, min(start + max_attempts, 65536)):
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind((host, port))
                return port
        except OSError:
            continue
    return None


# ---------------------------------------------------------------------------
# PID check
# ---------------------------------------------------------------------------


def is_pid_alive(pid: int) -> bool:
    """Check if a process with the given PID exists.

    Signal 0 performs the permission and existence checks without
    delivering anything. EPERM means the process exists but belongs to
    another user.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OSError, OverflowError):
        return False
    return True


# ---------------------------------------------------------------------------
# Advisory file locking
# ---------------------------------------------------------------------------


def lock_file(fd: Any, exclusive: bool = True, blocking: bool = True) -> None:
    """Acquire an advisory ``flock`` on an open file."""
    op = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
    if not blocking:
        op |= fcntl.LOCK_NB
    fcntl.flock(fd, op)


def unlock_file(fd: Any) -> None:
    """Release an advisory ``flock``."""
    fcntl.flock(fd, fcntl.LOCK_UN)


# ---------------------------------------------------------------------------
# Data directory resolution
# ---------------------------------------------------------------------------


def get_data_dir() -> Path | None:
    """Resolve the per-user mdview data directory.

    Resolution order:
    1. ``MDVIEW_DATA_DIR`` environment variable (explicit override)
    2. ``platformdirs.user_data_dir("mdview")``

    Returns None when no directory can be determined.
    """
    env = os.getenv("MDVIEW_DATA_DIR")
    if env:
        return Path(env).expanduser()
    import platformdirs

    try:
        data_dir = platformdirs.user_data_dir("mdview", appauthor=False)
    except (KeyError, RuntimeError, OSError):
        return None
    return Path(data_dir) if data_dir else None


# ---------------------------------------------------------------------------
# File-type constants
# ---------------------------------------------------------------------------

IMAGE_MIME_TYPES: dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".ico": "image/x-icon",
}
