"""Persistent session state shared by every taskloop process.

State lives in a single JSON file::

    {"sessions": {"<name>": {"name": "<name>", "status": "running", ...}}}

Every operation takes the state lock, reads the file, optionally mutates it
and writes it back with an atomic replace, so readers never observe a
partially written file.
"""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from loop_config import StateConfig
from state_lock import StateLock, is_pid_alive

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644


class SessionStatus(str, Enum):
    RUNNING = "running"
    STALE = "stale"
    STOPPED = "stopped"
    COMPLETE = "complete"
    FAILED = "failed"
    MAX_ITERATIONS = "max_iterations"


TERMINAL_STATUSES = frozenset({
    SessionStatus.STALE,
    SessionStatus.STOPPED,
    SessionStatus.COMPLETE,
    SessionStatus.FAILED,
    SessionStatus.MAX_ITERATIONS,
})

# Terminal states an explicit resume may move back to running
RESUMABLE_STATUSES = frozenset({SessionStatus.STALE, SessionStatus.STOPPED})


class CleanupMode(str, Enum):
    MARK = "mark"
    REMOVE = "remove"


class SessionNotFoundError(KeyError):
    """Raised when a named session does not exist in the state file."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Session not found: {self.name}"


class SessionRecord(BaseModel):
    """One named loop session. Unknown fields are kept as extras."""

    model_config = ConfigDict(extra="allow")

    name: str
    status: str = SessionStatus.RUNNING.value
    pid: int = 0
    dir: str = ""
    task_file: str = ""
    iteration: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=1, gt=0)
    completion_marker: str = ""
    last_task_count: int = Field(default=-1, ge=-1)

    @property
    def task_path(self) -> Optional[Path]:
        if not self.dir or not self.task_file:
            return None
        return Path(self.dir) / self.task_file

    def extra(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _to_record(name: str, fields: Mapping[str, Any]) -> SessionRecord:
    data = dict(fields)
    data["name"] = name
    try:
        return SessionRecord.model_validate(data)
    except ValueError:
        # Hand-edited or foreign records: keep what validates, drop the rest
        logger.warning("Session %s has invalid fields; using defaults where needed", name)
        cleaned = {k: v for k, v in data.items() if k not in SessionRecord.model_fields}
        for key in SessionRecord.model_fields:
            if key in data:
                try:
                    SessionRecord.model_validate({"name": name, key: data[key]})
                except ValueError:
                    continue
                cleaned[key] = data[key]
        cleaned["name"] = name
        return SessionRecord.model_validate(cleaned)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    return value


def write_json_atomic(path: Path, payload: Mapping[str, Any]) -> None:
    """Replace ``path`` with the JSON serialization of ``payload``.

    The data is written to a temp file in the same directory, synced and
    renamed over the target; the rename is the only visible transition.
    """
    data = json.dumps(payload, indent=2, default=_jsonable) + "\n"
    if not data.strip():
        raise ValueError("Refusing to write empty state")

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = DEFAULT_FILE_MODE

    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.tmp.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    fsync_directory(path.parent)


def fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a completed rename survives a crash."""
    try:
        dir_fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        # Directories cannot be opened on Windows
        return
    try:
        os.fsync(dir_fd)
    except OSError as e:
        logger.debug("fsync of %s failed: %s", directory, e)
    finally:
        os.close(dir_fd)


class SessionStore:
    """Manages the shared session state file under the cross-process lock."""

    def __init__(
        self,
        config: StateConfig,
        lock: Optional[StateLock] = None,
        is_alive: Callable[[int], bool] = is_pid_alive,
    ) -> None:
        self.config = config
        self.state_path = Path(config.state_file)
        self.is_alive = is_alive
        self.lock = lock or StateLock.from_config(config, is_alive=is_alive)

    # -- unlocked helpers (caller holds the lock) --

    def _init_unlocked(self) -> None:
        Path(self.config.state_dir).mkdir(parents=True, exist_ok=True)
        if not self.state_path.exists():
            logger.info("Creating state file %s", self.state_path)
            self._write_unlocked({})
            return
        try:
            self._read_unlocked()
        except ValueError as e:
            logger.warning("Corrupt state file %s (%s); reinitializing", self.state_path, e)
            self._write_unlocked({})

    def _read_unlocked(self) -> dict[str, dict[str, Any]]:
        try:
            raw = json.loads(self.state_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON: {e}") from e
        except UnicodeDecodeError as e:
            raise ValueError(f"invalid encoding: {e}") from e

        if not isinstance(raw, dict):
            raise ValueError("root is not an object")
        sessions = raw.get("sessions")
        if sessions is None:
            return {}
        if not isinstance(sessions, dict):
            raise ValueError("'sessions' is not an object")
        return {
            name: dict(fields) if isinstance(fields, dict) else {}
            for name, fields in sessions.items()
        }

    def _write_unlocked(self, sessions: Mapping[str, Mapping[str, Any]]) -> None:
        write_json_atomic(self.state_path, {"sessions": sessions})

    def _load_unlocked(self) -> dict[str, dict[str, Any]]:
        self._init_unlocked()
        return self._read_unlocked()

    @staticmethod
    def _require_name(name: str) -> None:
        if not name or not name.strip():
            raise ValueError("session name is required")

    # -- public operations --

    def init(self) -> None:
        """Ensure the state directory and a well-formed state file exist."""
        with self.lock.hold():
            self._init_unlocked()

    def get(self, name: str) -> Optional[SessionRecord]:
        self._require_name(name)
        with self.lock.hold():
            sessions = self._load_unlocked()
        fields = sessions.get(name)
        if fields is None:
            return None
        return _to_record(name, fields)

    def set(self, name: str, fields: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> SessionRecord:
        """Upsert a session, merging the given fields into the stored record."""
        self._require_name(name)
        updates = {**(fields or {}), **kwargs}
        with self.lock.hold():
            sessions = self._load_unlocked()
            record = sessions.get(name, {})
            record.update({k: _jsonable(v) for k, v in updates.items()})
            record["name"] = name
            record["updated_at"] = _now()
            sessions[name] = record
            self._write_unlocked(sessions)
        return _to_record(name, record)

    def list(self) -> list[SessionRecord]:
        with self.lock.hold():
            sessions = self._load_unlocked()
        return [_to_record(name, fields) for name, fields in sessions.items()]

    def delete(self, name: str) -> None:
        self._require_name(name)
        with self.lock.hold():
            sessions = self._load_unlocked()
            if name not in sessions:
                raise SessionNotFoundError(name)
            del sessions[name]
            self._write_unlocked(sessions)
        logger.info("Deleted session %s", name)

    def cleanup_stale(self, mode: CleanupMode | str = CleanupMode.MARK) -> list[str]:
        """Mark or remove running sessions whose recorded pid is dead.

        Returns the names that were changed.
        """
        try:
            mode = CleanupMode(mode)
        except ValueError:
            raise ValueError(f"invalid cleanup mode {mode!r}") from None

        cleaned: list[str] = []
        with self.lock.hold():
            sessions = self._load_unlocked()
            for name, fields in list(sessions.items()):
                if fields.get("status") != SessionStatus.RUNNING.value:
                    continue
                pid = _as_int(fields.get("pid"))
                if not pid or pid <= 0:
                    continue
                if self.is_alive(pid):
                    continue

                cleaned.append(name)
                if mode is CleanupMode.REMOVE:
                    del sessions[name]
                else:
                    fields["name"] = name
                    fields["status"] = SessionStatus.STALE.value
                    fields["updated_at"] = _now()

            if cleaned:
                self._write_unlocked(sessions)

        if cleaned:
            logger.info("Cleaned stale sessions (%s): %s", mode.value, ", ".join(cleaned))
        return cleaned
