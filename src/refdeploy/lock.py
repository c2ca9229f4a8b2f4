"""Installation-wide exclusive lock backed by ``fcntl.flock``.

Usage:
    with InstallationLock(base / "lock", timeout=30.0):
        ...  # mutate pointers and deploy directories

The lock may be released early with ``release()``; leaving the ``with`` block
afterwards is a no-op.
"""

import fcntl
import logging
import time
from pathlib import Path

from .cancellable import Cancellable
from .cancellable import check_cancelled
from .exceptions import BusyError

logger = logging.getLogger(__name__)


class InstallationLock:
    """Exclusive lock on an installation location with bounded wait."""

    def __init__(
        self,
        lock_path: Path,
        timeout: float = 30.0,
        poll_interval: float = 0.1,
        cancellable: Cancellable | None = None,
    ):
        self.lock_path = lock_path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.cancellable = cancellable
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """Take the lock, polling until timeout.

        Raises:
            BusyError: If another holder keeps the lock beyond the timeout
            OperationCancelledError: If cancelled while waiting
        """
        if self._handle is not None:
            return

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+")
        deadline = time.monotonic() + self.timeout

        try:
            while True:
                check_cancelled(self.cancellable)
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise BusyError(
                            f"Installation is locked by another process: {self.lock_path}",
                            context={"lock_path": str(self.lock_path), "timeout": self.timeout},
                        ) from None
                    time.sleep(self.poll_interval)
        except BaseException:
            handle.close()
            raise

        self._handle = handle
        logger.debug(f"Acquired lock on {self.lock_path}")

    def release(self) -> None:
        if self._handle is None:
            return

        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug(f"Released lock on {self.lock_path}")

    def __enter__(self) -> "InstallationLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
