"""File-based workspace locks using filelock."""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from ralph.core.errors import LockHeldError

logger = logging.getLogger(__name__)


class BaseFileLock:
    """Exclusive inter-process lock on a file under .ralph/.

    Unlike a best-effort lock, failing to acquire raises LockHeldError so the
    caller never runs unprotected.
    """

    LOCK_TIMEOUT: float = 0
    LOCK_FILENAME: str = ".lock"

    def __init__(self, root: Path, timeout: float | None = None):
        self.root = Path(root).resolve()
        self.timeout = self.LOCK_TIMEOUT if timeout is None else timeout
        self.lock_path = self.root / ".ralph" / self.LOCK_FILENAME
        self._filelock: FileLock | None = None
        self.acquired = False

    def __enter__(self) -> BaseFileLock:
        ralph_dir = self.lock_path.parent
        if ralph_dir.is_symlink() or self.lock_path.is_symlink():
            raise LockHeldError(f"Refusing to lock through a symlink: {self.lock_path}")
        ralph_dir.mkdir(parents=True, exist_ok=True)

        self._filelock = FileLock(str(self.lock_path), timeout=self.timeout)
        try:
            self._filelock.acquire()
        except FileLockTimeout as e:
            raise LockHeldError(
                f"{self.__class__.__name__} is held by another process ({self.lock_path})"
            ) from e
        self.acquired = True
        logger.debug(f"Acquired {self.__class__.__name__} at {self.lock_path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._filelock is not None and self.acquired:
            with contextlib.suppress(OSError):
                self._filelock.release()
            self.acquired = False
        return False


class WatchdogLock(BaseFileLock):
    """Only one continuous watchdog may run per workspace."""

    LOCK_FILENAME = ".watchdog_lock"
