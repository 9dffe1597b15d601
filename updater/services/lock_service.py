"""Exclusive per-project update lock."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from updater.datetime_service import now_utc
from updater.exceptions import LockHeldError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_lock_owner(lock_path: Path) -> dict[str, object] | None:
    """Return the lock owner payload, or None when unlocked or unreadable."""
    try:
        data = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


@dataclass
class ProjectLock:
    """Lock file created with ``O_CREAT | O_EXCL``; never waits."""

    lock_path: Path
    acquired: bool = False

    def acquire(self) -> ProjectLock:
        """Take the lock or raise LockHeldError immediately."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            owner = read_lock_owner(self.lock_path) or {}
            raise LockHeldError(
                f"Another update holds the project lock (pid {owner.get('pid', 'unknown')})",
                path=str(self.lock_path),
            ) from exc
        payload = {"pid": os.getpid(), "acquired_at": now_utc().isoformat()}
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload) + "\n")
        self.acquired = True
        logger.debug("Acquired project lock %s", self.lock_path)
        return self

    def release(self) -> None:
        """Drop the lock if this instance holds it."""
        if not self.acquired:
            return
        self.lock_path.unlink(missing_ok=True)
        self.acquired = False
        logger.debug("Released project lock %s", self.lock_path)

    def __enter__(self) -> ProjectLock:
        return self.acquire()

    def __exit__(self, *args: object) -> None:
        self.release()


def break_stale_lock(lock_path: Path) -> bool:
    """Remove a lock whose owning process is gone. Returns True if removed."""
    if not lock_path.exists():
        return False
    owner = read_lock_owner(lock_path)
    pid = owner.get("pid") if owner else None
    if isinstance(pid, int) and _pid_alive(pid):
        return False
    lock_path.unlink(missing_ok=True)
    logger.warning("Removed stale project lock %s (pid %s)", lock_path, pid)
    return True
