"""Single-instance guard for the approval bot.

Two bots polling the same token would steal each other's updates, so the bot
records its pid in a lock file. A lock whose pid is no longer alive is stale
and taken over.
"""

import os
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)


def pid_alive(pid: int) -> bool:
    """Check whether a process exists (signal 0 probes without delivering)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return True


class InstanceLock:
    """Pid lock file with take-over of stale locks.

    Usage:
        lock = InstanceLock(settings.lock_path)
        if not lock.acquire():
            return  # another bot is running
        try:
            ...
        finally:
            lock.release()
    """

    def __init__(self, path: Path | str, pid: int | None = None):
        self.path = Path(path)
        self.pid = pid or os.getpid()
        self.owner_pid: int | None = None
        self._held = False

    def read_owner(self) -> int | None:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def acquire(self) -> bool:
        """Take the lock unless a live foreign process holds it.

        A lock file that cannot be written does not stop the bot; the failure
        is logged and the bot runs unguarded.
        """
        owner = self.read_owner()
        if owner and owner != self.pid and pid_alive(owner):
            self.owner_pid = owner
            logger.info("instance_lock_held", owner_pid=owner, lock=str(self.path))
            return False
        if owner and owner != self.pid:
            logger.info("instance_lock_stale", stale_pid=owner, lock=str(self.path))

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(str(self.pid), encoding="utf-8")
        except OSError as e:
            logger.warning("instance_lock_write_failed", lock=str(self.path), error=str(e))
            return True
        self.owner_pid = self.pid
        self._held = True
        return True

    def release(self) -> None:
        """Remove the lock file if it still records this process."""
        if not self._held:
            return
        self._held = False
        if self.read_owner() != self.pid:
            return
        try:
            self.path.unlink()
        except OSError as e:
            logger.warning("instance_lock_release_failed", lock=str(self.path), error=str(e))

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, *_exc: object) -> None:
        self.release()
