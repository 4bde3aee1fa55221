"""Cross-process file lock for environment records.

The lock is a ``<file>.lock`` sibling created with exclusive-create
semantics and holding the owner's PID. A lock whose owner process no longer
exists is stale and is reclaimed: it is renamed aside first, and only
deleted if the renamed file still names the dead owner.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import suppress
from pathlib import Path
from types import TracebackType

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0
RETRY_INTERVAL = 0.1


class LockTimeoutError(TimeoutError):
    """Raised when the lock is not acquired before the timeout elapses."""

    def __init__(self, lock_path: Path, holder_pid: int | None) -> None:
        self.lock_path = lock_path
        self.holder_pid = holder_pid
        super().__init__(f"Timed out waiting for lock {lock_path}")


def _pid_is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The process exists but belongs to another user.
        return True
    return True


def _read_holder(lock_path: Path) -> int | None:
    try:
        text = lock_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(text)
    except ValueError:
        return None


class FileLock:
    """Exclusive lock guarding one file across processes.

    Parameters
    ----------
    target
        File to protect; the lock file is ``<target>.lock``.
    timeout
        Seconds to keep retrying before giving up.
    """

    def __init__(self, target: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self.lock_path = target.with_name(target.name + ".lock")
        self.timeout = timeout
        self._held = False

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(os.getpid()))
        return True

    def _reclaim_if_stale(self) -> int | None:
        """Remove the lock when its holder is gone; return the live holder PID."""

        holder = _read_holder(self.lock_path)
        if holder is None:
            # Missing, or still being written by its owner.
            return None
        if _pid_is_alive(holder):
            return holder
        aside = self.lock_path.with_name(f"{self.lock_path.name}.{os.getpid()}.stale")
        try:
            self.lock_path.rename(aside)
        except FileNotFoundError:
            return None
        moved = _read_holder(aside)
        if moved == holder:
            logger.warning("Removed stale lock %s held by PID %s", self.lock_path, holder)
            aside.unlink()
            return None
        # The lock changed hands after it was read; put the new one back.
        try:
            os.link(aside, self.lock_path)
        except FileExistsError:
            logger.warning(
                "Lock %s was re-created while moved aside from PID %s", self.lock_path, moved
            )
        aside.unlink()
        return moved

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        holder: int | None = None
        while True:
            if self._try_create():
                self._held = True
                return
            holder = self._reclaim_if_stale()
            if time.monotonic() >= deadline:
                raise LockTimeoutError(self.lock_path, holder)
            time.sleep(RETRY_INTERVAL)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        with suppress(FileNotFoundError):
            self.lock_path.unlink()

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["DEFAULT_LOCK_TIMEOUT", "FileLock", "LockTimeoutError"]
