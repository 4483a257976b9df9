"""
Single Instance Lock

The cursor file and the price extremes file are single-writer documents with
no cross-process locking of their own. A PID file taken at startup makes sure
only one engine process owns them.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    PID-file lock.

    Usage:
        lock = SingleInstanceLock("signal-trader", lock_dir="data")
        if not lock.acquire():
            raise RuntimeError("Another instance is running")
        ...
        lock.release()  # also released at interpreter exit
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def _reclaim_stale(self) -> bool:
        """Remove a lock left by a dead process. Returns False if the owner is alive."""
        try:
            existing_pid = int(self.lock_file.read_text().strip())
        except (ValueError, OSError) as e:
            logger.warning(f"Invalid lock file {self.lock_file}, removing: {e}")
            self.lock_file.unlink(missing_ok=True)
            return True

        if existing_pid != os.getpid() and self._is_process_running(existing_pid):
            logger.error(
                f"Another instance is running (PID={existing_pid}). Lock file: {self.lock_file}"
            )
            return False

        logger.warning(f"Found stale lock file (PID={existing_pid} not running), removing")
        self.lock_file.unlink(missing_ok=True)
        return True

    def acquire(self) -> bool:
        if self.acquired:
            return True

        if self.lock_file.exists() and not self._reclaim_stale():
            return False

        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            # Lost a race with another starting process
            logger.error(f"Lock file {self.lock_file} appeared while acquiring")
            return False
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.lock_file.unlink(missing_ok=True)
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "signal-trader",
                          lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Acquire the lock, or return None if another instance holds it."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None
