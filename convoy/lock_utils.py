"""Single-daemon lock for a .convoy workspace, built on fcntl.flock."""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .config import get_daemon_lock_path


class DaemonLock:
    """Exclusive, non-blocking lock held for the life of one daemon.

    The holder's pid is written into the lock file so a second instance can
    say who is running.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path else get_daemon_lock_path()
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """Try to take the lock. Returns False if another process holds it."""
        if self._fd is not None:
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            return False

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def holder_pid(self) -> int | None:
        """Pid recorded by the current (or last) holder, if readable."""
        try:
            text = self.path.read_text().strip()
        except OSError:
            return None
        return int(text) if text.isdigit() else None


@contextmanager
def daemon_lock_or_skip(path: Path | str | None = None) -> Generator[bool, None, None]:
    """Hold the daemon lock for the duration of the block.

    Yields:
        True if the lock was acquired, False if another daemon holds it

    Example:
        with daemon_lock_or_skip() as acquired:
            if not acquired:
                return
            run_daemon()
    """
    lock = DaemonLock(path)
    acquired = lock.acquire()
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()
