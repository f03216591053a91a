"""Cross-process lock guarding the shared session state file.

Primary strategy is an exclusive ``flock()`` on a dedicated lock file. Hosts
where advisory locks are structurally unavailable (no ``fcntl`` module,
filesystems answering ENOSYS/ENOTSUP/ENOLCK) fall back to an exclusively
created lock directory holding a ``pid`` marker. The strategy is chosen at the
first acquisition and kept for the lifetime of the lock object.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

try:
    import fcntl
except ImportError:  # Windows: no advisory locks, directory strategy only
    fcntl = None

logger = logging.getLogger(__name__)

PRIMARY = "primary"
FALLBACK = "fallback"

PID_MARKER = "pid"

_UNSUPPORTED_ERRNOS = {
    errno.ENOSYS,
    errno.EOPNOTSUPP,
    errno.ENOTSUP,
    errno.ENOLCK,
}


class LockTimeout(Exception):
    """Raised when the state lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for state lock {path}. "
            "Another taskloop process may be holding it."
        )
        self.path = path
        self.timeout = timeout


class LockUnsupported(Exception):
    """The primary strategy cannot work on this host."""


def is_pid_alive(pid: int) -> bool:
    """Return True if a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except (OSError, SystemError):
        return False
    return True


class LockHandle:
    """Ownership token for one acquisition of the state lock."""

    def __init__(self, method: str, fd=None, lock_dir: Optional[Path] = None) -> None:
        self.method = method
        self._fd = fd
        self._lock_dir = lock_dir
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Release the lock. Calling this more than once is a no-op."""
        if self._released:
            return
        self._released = True

        if self.method == PRIMARY and self._fd is not None:
            try:
                fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
            except OSError as e:
                logger.debug("flock unlock failed: %s", e)
            self._fd.close()
            self._fd = None
        elif self.method == FALLBACK and self._lock_dir is not None:
            shutil.rmtree(self._lock_dir, ignore_errors=True)
            self._lock_dir = None

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *args) -> None:
        self.release()


class StateLock:
    """Named mutual-exclusion resource shared by every taskloop process."""

    def __init__(
        self,
        lock_file: str | Path,
        lock_dir: str | Path,
        timeout: float = 10.0,
        poll_interval: float = 0.1,
        is_alive: Callable[[int], bool] = is_pid_alive,
        use_primary: Optional[bool] = None,
    ) -> None:
        self.lock_file = Path(lock_file)
        self.lock_dir = Path(lock_dir)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._is_alive = is_alive
        # None = not probed yet; False = directory strategy for good
        self._use_primary = use_primary
        if fcntl is None:
            self._use_primary = False

    @classmethod
    def from_config(cls, state_config, is_alive: Callable[[int], bool] = is_pid_alive) -> StateLock:
        return cls(
            lock_file=state_config.lock_file,
            lock_dir=state_config.lock_dir,
            timeout=state_config.lock_timeout_seconds,
            poll_interval=state_config.poll_interval_seconds,
            is_alive=is_alive,
        )

    @property
    def strategy(self) -> Optional[str]:
        if self._use_primary is None:
            return None
        return PRIMARY if self._use_primary else FALLBACK

    def acquire(self) -> LockHandle:
        """Block until the lock is held or raise LockTimeout."""
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        if self._use_primary is not False:
            try:
                handle = self._acquire_flock()
            except LockUnsupported as e:
                logger.warning(
                    "Advisory file locks unavailable (%s); using lock directory %s",
                    e, self.lock_dir,
                )
                self._use_primary = False
            else:
                self._use_primary = True
                return handle

        return self._acquire_dir()

    @contextmanager
    def hold(self) -> Iterator[LockHandle]:
        """Run the enclosed block while holding the lock."""
        handle = self.acquire()
        try:
            yield handle
        finally:
            handle.release()

    def _acquire_flock(self) -> LockHandle:
        try:
            fd = open(self.lock_file, "a+", encoding="utf-8")
        except OSError as e:
            raise LockUnsupported(f"cannot open {self.lock_file}: {e}") from e

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return LockHandle(PRIMARY, fd=fd)
            except BlockingIOError:
                pass
            except OSError as e:
                fd.close()
                if e.errno in _UNSUPPORTED_ERRNOS:
                    raise LockUnsupported(str(e)) from e
                raise

            if time.monotonic() >= deadline:
                fd.close()
                raise LockTimeout(self.lock_file, self.timeout)
            time.sleep(self.poll_interval)

    def _acquire_dir(self) -> LockHandle:
        self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                os.mkdir(self.lock_dir)
            except FileExistsError:
                self._clear_dead_owner()
            else:
                (self.lock_dir / PID_MARKER).write_text(str(os.getpid()), encoding="utf-8")
                return LockHandle(FALLBACK, lock_dir=self.lock_dir)

            if time.monotonic() >= deadline:
                raise LockTimeout(self.lock_dir, self.timeout)
            time.sleep(self.poll_interval)

    def _read_owner(self) -> Optional[int]:
        """Pid in the lock marker, 0 for an old markerless lock, None to keep waiting."""
        try:
            return int((self.lock_dir / PID_MARKER).read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            # Owner may be between mkdir and writing its marker
            try:
                age = time.time() - self.lock_dir.stat().st_mtime
            except OSError:
                return None
            return 0 if age >= self.timeout else None

    def _clear_dead_owner(self) -> None:
        """Take over the lock directory if the pid that created it is gone.

        The stale directory is renamed to a unique tombstone before removal.
        Only one waiter can win that rename, and a lock that another waiter
        re-created in the meantime is left alone.
        """
        pid = self._read_owner()
        if pid is None or (pid and self._is_alive(pid)):
            return
        if self._read_owner() != pid:
            return

        tombstone = self.lock_dir.with_name(
            f"{self.lock_dir.name}.stale.{os.getpid()}.{time.monotonic_ns()}"
        )
        try:
            os.rename(self.lock_dir, tombstone)
        except OSError:
            return

        try:
            moved_pid = int((tombstone / PID_MARKER).read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            moved_pid = 0
        if moved_pid != pid:
            # Lost a race with a new owner; hand its directory back
            logger.debug("Lock %s changed owner during takeover; restoring", self.lock_dir)
            try:
                os.rename(tombstone, self.lock_dir)
            except OSError as e:
                logger.warning("Could not restore state lock %s from %s: %s", self.lock_dir, tombstone, e)
            return

        logger.warning("Removing stale state lock %s (owner pid %s gone)", self.lock_dir, pid or "unknown")
        shutil.rmtree(tombstone, ignore_errors=True)
