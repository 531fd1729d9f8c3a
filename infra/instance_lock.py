"""
Single Instance Lock

PID-file lock held by the scheduler daemon so two bots never reconcile the
same cycle store at once. Released on clean exit; a lock left behind by a
dead process is detected and replaced.
"""

import atexit
import os
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        with SingleInstanceLock("cyclebot"):
            run_scheduler()
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
            # signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def _existing_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (ValueError, OSError) as e:
            logger.warning(f"Invalid lock file {self.lock_file}, removing: {e}")
            return None

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if acquired, False if another live instance holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            existing_pid = self._existing_pid()
            if existing_pid is not None and existing_pid != os.getpid() \
                    and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). "
                    f"Lock file: {self.lock_file}"
                )
                return False
            if existing_pid is not None:
                logger.warning(f"Found stale lock file (PID={existing_pid} not running), removing")
            self.lock_file.unlink(missing_ok=True)

        try:
            self.lock_file.write_text(str(os.getpid()))
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False
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


def check_single_instance(name: str = "cyclebot", lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Acquire the lock, or return None if another instance is running."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None
