from __future__ import annotations

import fcntl
import os
import time
from pathlib import Path

from .errors import AlreadyRunning


def read_lock_pid(lock_path: Path) -> int | None:
    try:
        raw = Path(lock_path).read_text().strip()
    except FileNotFoundError:
        return None
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def lock_is_held(lock_path: Path) -> bool:
    """Whether a live process holds the instance lock; checked without taking it."""
    try:
        fd = os.open(str(lock_path), os.O_RDWR)
    except FileNotFoundError:
        return False
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return True
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
        return False
    finally:
        os.close(fd)


class InstanceLock:
    """Exclusive non-blocking flock naming its holder's pid.

    The kernel drops the lock when the holder dies, so a stale file never
    blocks a new daemon; the pid inside is only informational.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise AlreadyRunning(str(self.lock_path), read_lock_pid(self.lock_path)) from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        os.fsync(fd)
        self._fd = fd

    def release(self) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def __enter__(self) -> InstanceLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class TickLock:
    """Blocking flock serializing ticks and restores across processes."""

    def __init__(self, lock_path: Path, *, timeout_s: float | None = None):
        self.lock_path = Path(lock_path)
        self.timeout_s = timeout_s
        self._fd: int | None = None

    def __enter__(self) -> TickLock:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR, 0o600)
        try:
            if self.timeout_s is None:
                fcntl.flock(fd, fcntl.LOCK_EX)
            else:
                start = time.monotonic()
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() - start >= self.timeout_s:
                            raise TimeoutError(
                                f"another sync or restore holds {self.lock_path}"
                            ) from None
                        time.sleep(0.1)
        except BaseException:
            os.close(fd)
            raise
        self._fd = fd
        return self

    def __exit__(self, *exc_info: object) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
