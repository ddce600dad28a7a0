from __future__ import annotations

import fcntl
import logging
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .config import Settings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class LockError(RuntimeError):
    """Raised when a named lock cannot be acquired."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(f"Lock {name!r}: {message}")


class NamedLock:
    """Exclusive locks keyed by an opaque name.

    ``acquire`` is a context manager; the lock is released when the block
    exits, normally or through an exception.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout

    @contextmanager
    def acquire(self, name: str) -> Iterator[str]:
        self._acquire(name)
        logger.debug("Acquired lock %s", name)
        try:
            yield name
        finally:
            self._release(name)
            logger.debug("Released lock %s", name)

    def _acquire(self, name: str) -> None:
        raise NotImplementedError

    def _release(self, name: str) -> None:
        raise NotImplementedError


class InProcessLock(NamedLock):
    """Per-name ``threading.Lock``; only excludes callers in this process.

    An entry lives only while some thread holds or waits for its name.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        super().__init__(timeout)
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    def _checkout(self, name: str) -> threading.Lock:
        with self._guard:
            self._users[name] = self._users.get(name, 0) + 1
            return self._locks.setdefault(name, threading.Lock())

    def _checkin(self, name: str) -> None:
        with self._guard:
            self._users[name] -= 1
            if not self._users[name]:
                del self._users[name]
                del self._locks[name]

    def _acquire(self, name: str) -> None:
        self.acquire_until(name, None if self.timeout is None else time.monotonic() + self.timeout)

    def acquire_until(self, name: str, deadline: Optional[float]) -> None:
        lock = self._checkout(name)
        if deadline is None:
            acquired = lock.acquire()
        else:
            acquired = lock.acquire(timeout=max(0.0, deadline - time.monotonic()))
        if not acquired:
            self._checkin(name)
            raise LockError(name, f"not acquired within {self.timeout}s")

    def _release(self, name: str) -> None:
        with self._guard:
            lock = self._locks[name]
        lock.release()
        self._checkin(name)

    def locked(self, name: str) -> bool:
        with self._guard:
            lock = self._locks.get(name)
        return lock is not None and lock.locked()

    def names(self) -> List[str]:
        with self._guard:
            return list(self._locks)


class FileLock(NamedLock):
    """``flock`` on ``<lock_dir>/<name>.lock``; excludes other processes too."""

    poll_interval = 0.1

    def __init__(self, lock_dir: str | Path, timeout: Optional[float] = None) -> None:
        super().__init__(timeout)
        self.lock_dir = Path(lock_dir)
        self._handles: Dict[str, object] = {}
        # flock is per open file description, so threads share a guard per name.
        self._thread_locks = InProcessLock(timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileLock":
        return cls(settings.lock_dir, timeout=settings.lock_timeout_s)

    def path_for(self, name: str) -> Path:
        return self.lock_dir / f"{_UNSAFE_CHARS.sub('_', name)}.lock"

    def _acquire(self, name: str) -> None:
        # One deadline covers both the thread guard and the flock wait.
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        self._thread_locks.acquire_until(name, deadline)
        try:
            self._handles[name] = self._flock(name, deadline)
        except BaseException:
            self._thread_locks._release(name)
            raise

    def _flock(self, name: str, deadline: Optional[float]):
        path = self.path_for(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(path, "a+")
        except OSError as exc:
            raise LockError(name, f"cannot open {path}: {exc}") from exc

        try:
            while True:
                try:
                    if deadline is None:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                    else:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return handle
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockError(name, f"not acquired within {self.timeout}s at {path}")
                    time.sleep(min(self.poll_interval, max(0.0, deadline - time.monotonic())))
                except OSError as exc:
                    raise LockError(name, f"flock failed at {path}: {exc}") from exc
        except BaseException:
            handle.close()
            raise

    def _release(self, name: str) -> None:
        handle = self._handles.pop(name)
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
            self._thread_locks._release(name)
