"""Host-wide advisory lock serializing route mutations."""

import fcntl
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .common.exceptions import LockTimeout
from .common.logging import get_logger

logger = get_logger(__name__)

POLL_INTERVAL = 0.1


class HostLock:
    """Exclusive ``flock`` on a well-known path.

    Each :meth:`hold` opens its own file descriptor, so a single instance
    can be shared by threads; the kernel releases the lock when the
    holding process exits.
    """

    def __init__(self, path: str | Path, timeout: float = 30.0):
        """Initialize HostLock.

        Args:
            path: Lock file path
            timeout: Seconds to wait for a busy lock before giving up
        """
        if timeout < 0:
            raise ValueError("Lock timeout must be zero or positive")
        self.path = Path(path)
        self.timeout = timeout

    def _open(self) -> int:
        return os.open(self.path, os.O_RDWR | os.O_CREAT, 0o666)

    @staticmethod
    def _holder(fd: int) -> str:
        try:
            pid = os.pread(fd, 32, 0).decode(errors="replace").strip()
        except OSError:
            return ""
        return f" (pid {pid})" if pid.isdigit() else ""

    def acquire(self) -> int:
        """Take the lock and return its file descriptor.

        Raises:
            LockTimeout: If the lock stays busy for longer than the timeout
        """
        fd = self._open()
        deadline = time.monotonic() + self.timeout
        waited = False
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if not waited:
                        logger.info("Waiting for host lock", path=str(self.path))
                        waited = True
                    if time.monotonic() >= deadline:
                        raise LockTimeout(
                            f"Another orb command{self._holder(fd)} holds {self.path}; "
                            f"gave up after {self.timeout:.0f}s. Wait for it to finish; "
                            "the lock is released when that process exits."
                        ) from None
                    time.sleep(POLL_INTERVAL)
        except BaseException:
            os.close(fd)
            raise

        try:
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
        except OSError:
            # Holder pid is informational only.
            pass
        logger.debug("Host lock acquired", path=str(self.path))
        return fd

    def release(self, fd: int) -> None:
        """Release a lock taken with :meth:`acquire`."""
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Host lock released", path=str(self.path))

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the lock for the duration of a with-block."""
        fd = self.acquire()
        try:
            yield
        finally:
            self.release(fd)
