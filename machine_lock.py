#!/usr/bin/env python3
"""
Machine Lock - machine-wide mutual exclusion for the shared test cluster

Every scenario touching the provisioned cluster or host network state runs
while this lock is held, so separate test runs on the same machine never
interleave.
"""

import fcntl
import json
import logging
import os
import socket
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TypeVar

from harness_config import HarnessConfig
from scenario_report import LockError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MachineLock:
    """
    Exclusive ownership of the test cluster for the whole run.

    Acquisition blocks until the current holder (in this or any other
    process) releases. Holding the lock twice from the same thread is an
    error rather than a deadlock.
    """

    def __init__(self, lock_file: Path):
        self.lock_file = Path(lock_file)
        self._lock_fd = None
        self._thread_lock = threading.Lock()
        self._owner: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._owner is not None

    def _flock(self) -> None:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file.touch(exist_ok=True)

        fd = open(self.lock_file, 'r+')
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX)
        except BaseException:
            fd.close()
            raise
        self._lock_fd = fd

    def _unflock(self) -> None:
        fd, self._lock_fd = self._lock_fd, None
        if fd:
            try:
                fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
            finally:
                fd.close()

    def acquire(self) -> None:
        if self._owner == threading.get_ident():
            raise LockError(f"{self.lock_file} is already held by this thread")

        self._thread_lock.acquire()
        try:
            holder = self.read_holder()
            if holder:
                logger.info(f"Waiting for machine lock {self.lock_file} (last holder: {holder})")
            self._flock()
        except BaseException:
            self._thread_lock.release()
            raise

        self._owner = threading.get_ident()
        self._write_holder()
        logger.info(f"Acquired machine lock {self.lock_file}")

    def release(self) -> None:
        if self._owner is None:
            raise LockError(f"{self.lock_file} is not held")
        try:
            self._unflock()
        finally:
            self._owner = None
            self._thread_lock.release()
        logger.info(f"Released machine lock {self.lock_file}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def with_exclusive_access(self, body: Callable[[], T]) -> T:
        """
        Run body while holding the lock.

        The lock is released before SystemExit or KeyboardInterrupt raised
        by body propagates, so a run that exits from inside still frees
        the cluster for the next one.
        """
        with self:
            return body()

    def _write_holder(self) -> None:
        fd = self._lock_fd
        info = {
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": datetime.now().isoformat(),
        }
        try:
            fd.seek(0)
            fd.truncate()
            fd.write(json.dumps(info))
            fd.flush()
        except OSError as e:
            logger.warning(f"Could not record lock holder in {self.lock_file}: {e}")

    def read_holder(self) -> Optional[dict]:
        """Return the metadata the last holder left in the lock file, if any."""
        try:
            content = self.lock_file.read_text()
        except OSError:
            return None
        if not content.strip():
            return None
        try:
            return json.loads(content)
        except ValueError:
            return None


class NullLock:
    """Lock with the MachineLock interface that never blocks. For unit tests."""

    held = False

    def acquire(self) -> None:
        self.held = True

    def release(self) -> None:
        self.held = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def with_exclusive_access(self, body: Callable[[], T]) -> T:
        with self:
            return body()


# Global singleton instance
_machine_lock: Optional[MachineLock] = None


def get_machine_lock(config: Optional[HarnessConfig] = None) -> MachineLock:
    """Get the global MachineLock singleton instance."""
    global _machine_lock
    if _machine_lock is None:
        config = config or HarnessConfig.from_env()
        _machine_lock = MachineLock(Path(config.lock_file))
    return _machine_lock
