"""Mutual exclusion keyed by (pkg_id, profile), plus the cross-process lock file."""

import asyncio
import fcntl
import logging
import os
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One asyncio.Lock per key, created on demand.

    ``hold`` takes several keys at once in sorted order, so two operations
    over overlapping key sets cannot deadlock.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: tuple[str, str]) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, keys: Iterable[tuple[str, str]]) -> AsyncIterator[None]:
        ordered = sorted(set(keys))
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._lock(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class OperationLock:
    """``flock`` on a file under the data directory.

    Install, upgrade and remove hold it shared, so any number of them run
    side by side. Reconcile holds it exclusively while it deletes staged
    downloads, backups and unrecorded install directories, which therefore
    never happens while another operation has placed files it has not
    committed yet. Each ``hold`` opens its own descriptor, so two holders in
    one process exclude each other the same way two processes do.

    With no *path* the lock is a no-op.
    """

    def __init__(self, path: Path | None, poll_interval: float = 0.05) -> None:
        self.path = path
        self.poll_interval = poll_interval

    def shared(self):
        return self._hold(fcntl.LOCK_SH)

    def exclusive(self):
        return self._hold(fcntl.LOCK_EX)

    @asynccontextmanager
    async def _hold(self, mode: int) -> AsyncIterator[None]:
        if self.path is None:
            yield
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            waited = False
            while True:
                try:
                    fcntl.flock(fd, mode | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if not waited:
                        logger.info("Waiting for another hoard operation to release %s", self.path)
                        waited = True
                    await asyncio.sleep(self.poll_interval)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
