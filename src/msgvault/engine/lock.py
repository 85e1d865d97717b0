"""PID-file run-lock preventing overlapping sync cycles for one device."""

import logging
import os
import time
from pathlib import Path

from msgvault.errors import CycleInProgress

logger = logging.getLogger(__name__)

# A reclaim guard older than this was left by a process that died mid-reclaim
STALE_GUARD_SECONDS = 60


def _pid_alive(pid: int) -> bool:
    """Check if a process exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class RunLock:
    """Exclusive lock held for the duration of a sync cycle.

    The lock file holds the owner's PID and appears with its content in
    place (written aside, then hard-linked). A file left behind by a
    process that no longer exists is stale and gets reclaimed; removal
    happens under a separate guard file after re-checking the holder, so
    two processes reclaiming at once cannot remove each other's new lock.

    Example:
        with RunLock(Path("cycle.lock")):
            ...  # only one cycle gets here
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.guard_path = self.path.with_name(f"{self.path.name}.reclaim")
        self._held = False

    def holder(self) -> int | None:
        """PID of the live process holding the lock, if any."""
        try:
            pid = int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None
        return pid if _pid_alive(pid) else None

    def _create(self) -> bool:
        """Atomically create the lock file with our PID. False if it exists."""
        pid = os.getpid()
        tmp = self.path.with_name(f"{self.path.name}.{pid}")
        tmp.write_text(str(pid))
        try:
            os.link(tmp, self.path)
        except FileExistsError:
            return False
        finally:
            tmp.unlink(missing_ok=True)
        return True

    def _reclaim_stale(self) -> bool:
        """Remove the lock file if its holder is gone.

        Returns:
            False if another process is reclaiming it right now
        """
        try:
            fd = os.open(self.guard_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            try:
                age = time.time() - self.guard_path.stat().st_mtime
            except FileNotFoundError:
                return True
            if age > STALE_GUARD_SECONDS:
                logger.warning("Removing abandoned reclaim guard: path=%s", self.guard_path)
                self.guard_path.unlink(missing_ok=True)
                return True
            return False
        os.close(fd)

        try:
            # Someone may have reclaimed it between our check and the guard
            if self.holder() is None:
                logger.warning("Removing stale run-lock: path=%s", self.path)
                self.path.unlink(missing_ok=True)
        finally:
            self.guard_path.unlink(missing_ok=True)
        return True

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            CycleInProgress: another live process holds it
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(3):
            if self._create():
                self._held = True
                return

            pid = self.holder()
            if pid is not None:
                raise CycleInProgress(f"Sync cycle already running (PID: {pid})")
            if not self._reclaim_stale():
                raise CycleInProgress(f"Run-lock {self.path} is being reclaimed by another process")

        raise CycleInProgress(f"Could not acquire run-lock {self.path}")

    def release(self) -> None:
        """Drop the lock if this process holds it."""
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
