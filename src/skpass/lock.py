"""
Advisory store lock with stale detection.

One writer at a time. The lock is a file created with O_EXCL holding
the owner's pid and start time; a lock older than ``stale_after``
seconds is treated as abandoned (crashed cron run) and reclaimed.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from pathlib import Path
from typing import Optional

from .errors import LockHeld

logger = logging.getLogger("skpass.lock")

DEFAULT_STALE_AFTER = 3600


class StoreLock:
    """Exclusive advisory lock, usable as a context manager.

    Args:
        path: Lock file location.
        stale_after: Seconds after which an existing lock is reclaimed.
    """

    def __init__(self, path: Path, stale_after: int = DEFAULT_STALE_AFTER) -> None:
        self.path = path
        self.stale_after = stale_after
        self._held = False

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            LockHeld: If a live (non-stale) lock exists.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                age = self.age()
                if age is not None and age > self.stale_after:
                    logger.warning(
                        "Reclaiming stale lock %s (age %ds, holder %s)",
                        self.path, age, self.holder(),
                    )
                    self.path.unlink(missing_ok=True)
                    continue
                raise LockHeld(
                    f"Store is locked by {self.holder() or 'another process'} "
                    f"({self.path}, age {age or 0}s)"
                ) from None
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({
                    "pid": os.getpid(),
                    "host": socket.gethostname(),
                    "acquired_at": time.time(),
                }, f)
            self._held = True
            logger.debug("Acquired lock %s", self.path)
            return
        raise LockHeld(f"Could not acquire {self.path} after reclaiming a stale lock")

    def release(self) -> None:
        """Drop the lock if this instance holds it."""
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False
            logger.debug("Released lock %s", self.path)

    def age(self) -> Optional[int]:
        """Seconds since the lock file was last modified, or None if absent."""
        try:
            return int(time.time() - self.path.stat().st_mtime)
        except FileNotFoundError:
            return None

    def holder(self) -> Optional[str]:
        """``pid@host`` of the current holder, if readable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return f"{data.get('pid')}@{data.get('host')}"
        except (OSError, json.JSONDecodeError):
            return None

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> StoreLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
