"""Cross-process registry of running background instances.

The registry is a small JSON file under the per-user data directory::

    {
      "version": 1,
      "instances": {
        "/abs/path/README.md": {"pid": ..., "port": ..., "file_path": ...,
                                "started_at": ..., "log_file": ...}
      }
    }

Every CLI invocation and every daemon touches it through an explicit
load / mutate / save cycle. Reads take a shared ``flock`` and writes an
exclusive one, so a ``list`` racing with a daemon's startup write never
sees a half-written file. ``save()`` replays a view's own additions and
removals onto whatever is on disk at that moment, so concurrent writers
keep each other's entries. Nothing is cached between operations.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from mdview._types import Instance, RegistryErrorKind
from mdview._utils import get_data_dir, is_pid_alive, lock_file, unlock_file

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1
_STATE_FILENAME = "instances.json"
_LOGS_DIRNAME = "logs"
_MAX_STEM_CHARS = 50
_UNSAFE_CHAR_RE = re.compile(r"[^\w-]")


class RegistryError(Exception):
    """A registry operation failed. ``kind`` tells which way."""

    def __init__(self, kind: RegistryErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def _resolve_data_dir(data_dir: Path | None) -> Path:
    if data_dir is not None:
        return Path(data_dir)
    resolved = get_data_dir()
    if resolved is None:
        raise RegistryError(
            RegistryErrorKind.NO_DATA_DIR, "Could not determine data directory"
        )
    return resolved


def get_logs_dir(data_dir: Path | None = None) -> Path:
    """Return the directory holding per-instance log files."""
    return _resolve_data_dir(data_dir) / _LOGS_DIRNAME


def generate_log_filename(file_path: Path | str, port: int) -> str:
    """Derive a filesystem-safe log name from the watched file's stem.

    ``README.md`` on port 6914 becomes ``README-6914.log``.
    """
    stem = Path(file_path).stem or "unknown"
    # \w also matches "_" and non-ASCII letters/digits
    sanitized = _UNSAFE_CHAR_RE.sub("_", stem)[:_MAX_STEM_CHARS]
    return f"{sanitized}-{port}.log"


def get_log_path(file_path: Path | str, port: int, data_dir: Path | None = None) -> Path:
    """Return the log file path for an instance serving ``file_path``."""
    return get_logs_dir(data_dir) / generate_log_filename(file_path, port)


def _parse_state(contents: str) -> tuple[int, dict[Path, Instance]]:
    """Parse state-file JSON. Raises ValueError, KeyError or TypeError."""
    data = json.loads(contents)
    if not isinstance(data, dict):
        raise ValueError("state file root must be an object")
    version = data.get("version", REGISTRY_VERSION)
    raw = data.get("instances") or {}
    if not isinstance(raw, dict):
        raise ValueError("'instances' must be an object")
    instances: dict[Path, Instance] = {}
    for entry in raw.values():
        if not isinstance(entry, dict):
            raise ValueError("instance entries must be objects")
        inst = Instance.from_dict(entry)
        instances[inst.file_path] = inst
    return version, instances


def _state_dict(version: int, instances: dict[Path, Instance]) -> dict[str, Any]:
    return {
        "version": version,
        "instances": {str(key): inst.to_dict() for key, inst in instances.items()},
    }


class Registry:
    """In-memory view of the instance registry file.

    Args:
        path: Location of the state file.
        instances: Canonical file path -> Instance.
        version: On-disk format version.
    """

    def __init__(
        self,
        path: Path,
        instances: dict[Path, Instance] | None = None,
        version: int = REGISTRY_VERSION,
    ) -> None:
        self.path = path
        self.version = version
        self._instances: dict[Path, Instance] = dict(instances or {})
        # Changes since load, replayed onto the on-disk state by save()
        self._added: dict[Path, Instance] = {}
        self._removed: dict[Path, Instance] = {}

    # --- Persistence ---

    @classmethod
    def load(cls, data_dir: Path | None = None) -> Registry:
        """Load the registry, creating the data and logs directories if needed.

        A corrupt state file is moved aside to ``instances.json.bak`` and an
        empty registry is returned in its place.
        """
        root = _resolve_data_dir(data_dir)
        path = root / _STATE_FILENAME
        try:
            (root / _LOGS_DIRNAME).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RegistryError(
                RegistryErrorKind.IO, f"Could not create {root}: {e}"
            ) from e

        if not path.exists():
            return cls(path)

        try:
            with open(path, encoding="utf-8") as f:
                try:
                    lock_file(f, exclusive=False)
                except OSError as e:
                    raise RegistryError(
                        RegistryErrorKind.LOCK_FAILED,
                        f"Failed to acquire lock on {path}: {e}",
                    ) from e
                try:
                    contents = f.read()
                finally:
                    unlock_file(f)
        except FileNotFoundError:
            # Removed between the exists() check and open()
            return cls(path)
        except UnicodeDecodeError:
            contents = None
        except OSError as e:
            raise RegistryError(
                RegistryErrorKind.IO, f"Could not read {path}: {e}"
            ) from e

        try:
            if contents is None:
                raise ValueError("state file is not valid UTF-8")
            return cls._parse(path, contents)
        except (ValueError, KeyError, TypeError) as e:
            backup = path.with_name(path.name + ".bak")
            try:
                path.replace(backup)
            except OSError:
                logger.warning(f"Could not back up corrupted state file {path}")
            logger.warning(
                f"State file was corrupted ({e}). Backed up to {backup}"
            )
            return cls(path)

    @classmethod
    def _parse(cls, path: Path, contents: str) -> Registry:
        version, instances = _parse_state(contents)
        return cls(path, instances, version=version)

    def to_dict(self) -> dict[str, Any]:
        return _state_dict(self.version, self._instances)

    def save(self) -> None:
        """Write the registry under an exclusive lock.

        The file is re-read once the lock is held and only this view's own
        additions and removals are applied to it, so concurrent writers
        (two daemons registering at once) do not drop each other's entries.
        A removal only applies while the on-disk entry is the one that was
        removed. The file is opened without truncation so that readers
        holding the shared lock never observe an empty file.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a+", encoding="utf-8", errors="replace") as f:
                try:
                    lock_file(f, exclusive=True)
                except OSError as e:
                    raise RegistryError(
                        RegistryErrorKind.LOCK_FAILED,
                        f"Failed to acquire lock on {self.path}: {e}",
                    ) from e
                try:
                    f.seek(0)
                    merged = self._merge(f.read())
                    f.seek(0)
                    f.truncate()
                    f.write(json.dumps(_state_dict(self.version, merged), indent=2))
                    f.flush()
                finally:
                    unlock_file(f)
        except OSError as e:
            raise RegistryError(
                RegistryErrorKind.IO, f"Could not write {self.path}: {e}"
            ) from e
        self._instances = merged
        self._added.clear()
        self._removed.clear()

    def _merge(self, contents: str) -> dict[Path, Instance]:
        current: dict[Path, Instance] = {}
        if contents.strip():
            try:
                _, current = _parse_state(contents)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Overwriting unreadable state file {self.path} ({e})")
        for path, inst in self._removed.items():
            if current.get(path) == inst:
                del current[path]
        current.update(self._added)
        return current

    # --- In-memory operations ---

    def add(self, instance: Instance) -> None:
        key = instance.file_path
        previous = self._instances.get(key)
        if previous is not None and key not in self._added:
            self._removed.setdefault(key, previous)
        self._instances[key] = instance
        self._added[key] = instance

    def remove(self, file_path: Path) -> Instance | None:
        key = Path(file_path)
        instance = self._instances.pop(key, None)
        if instance is not None and self._added.pop(key, None) is None:
            self._removed.setdefault(key, instance)
        return instance

    def get(self, file_path: Path) -> Instance | None:
        return self._instances.get(Path(file_path))

    def instances(self) -> list[Instance]:
        return list(self._instances.values())

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, file_path: object) -> bool:
        return isinstance(file_path, (str, Path)) and Path(file_path) in self._instances

    @staticmethod
    def is_process_running(pid: int) -> bool:
        """Return True if ``pid`` names a live process (possibly another user's)."""
        return is_pid_alive(pid)

    def cleanup_stale(self) -> list[Instance]:
        """Drop entries whose process is gone and return them.

        Only the in-memory view changes; call ``save()`` to persist.
        """
        stale = [
            inst
            for inst in self._instances.values()
            if not self.is_process_running(inst.pid)
        ]
        for inst in stale:
            self.remove(inst.file_path)
        return stale
