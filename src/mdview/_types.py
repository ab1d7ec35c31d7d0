"""Type definitions for mdview.

Defines the core data structures shared by the registry, the daemon
supervisor and the CLI: the persisted instance record, the daemonize
outcome, and the error-kind enums.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

# pid_t is a signed 32-bit integer on every supported platform
_PID_MIN = -(2**31)
_PID_MAX = 2**31 - 1


class DaemonizeResult(str, Enum):
    """Outcome of :func:`mdview.daemon.daemonize` in the calling process."""

    PARENT = "parent"
    DAEMON = "daemon"


class RegistryErrorKind(str, Enum):
    """Failure classes for instance registry operations."""

    NO_DATA_DIR = "no_data_dir"
    IO = "io"
    PARSE = "parse"
    LOCK_FAILED = "lock_failed"


class DaemonErrorKind(str, Enum):
    """Failure classes for the double-fork sequence, one per syscall family."""

    FORK = "fork"
    SETSID = "setsid"
    DUP = "dup"
    CLOSE = "close"
    IO = "io"


class StopOutcome(str, Enum):
    """What happened when stopping an instance."""

    STOPPED = "stopped"  # signalled and exited
    SIGNALLED = "signalled"  # signalled, still shutting down
    STALE = "stale"  # process was already gone
    FAILED = "failed"  # signal could not be delivered


@dataclass(frozen=True)
class Instance:
    """One running background preview.

    Keyed in the registry by ``file_path``, the canonical path of the
    watched file.
    """

    pid: int
    port: int
    file_path: Path
    started_at: datetime
    log_file: Path

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "port": self.port,
            "file_path": str(self.file_path),
            "started_at": self.started_at.isoformat(),
            "log_file": str(self.log_file),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Instance:
        """Build an Instance from its JSON form.

        Raises KeyError, TypeError or ValueError for malformed entries.
        """
        pid = data["pid"]
        port = data["port"]
        if type(pid) is not int or type(port) is not int:
            raise TypeError("pid and port must be integers")
        if not _PID_MIN <= pid <= _PID_MAX:
            raise ValueError(f"pid {pid} out of range")
        if not 0 <= port <= 65535:
            raise ValueError(f"port {port} out of range")
        started_at = datetime.fromisoformat(
            str(data["started_at"]).replace("Z", "+00:00")
        )
        return cls(
            pid=pid,
            port=port,
            file_path=Path(data["file_path"]),
            started_at=started_at,
            log_file=Path(data["log_file"]),
        )
