"""Advisory file lock guarding the terraform resource directory.

POSIX ``fcntl.flock`` on ``<dir>/tf-apply.lck``. Every acquisition opens its
own file descriptor, so two holders in the same process exclude each other
just like two processes do. The lock is released by the kernel if the
process dies.
"""

from __future__ import annotations

import asyncio
import fcntl
import os

import structlog

from tfinstance.domain.ports.services import StoreLock


logger = structlog.get_logger(__name__)

LOCK_FILE_NAME = "tf-apply.lck"


class FileStoreLock(StoreLock):
    """Non-reentrant cross-process lock on a file in the store directory."""

    def __init__(self, directory: str, retry_interval: float = 0.5) -> None:
        self._path = os.path.join(directory, LOCK_FILE_NAME)
        self._retry_interval = retry_interval
        self._fd: int | None = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def held(self) -> bool:
        return self._fd is not None

    async def try_acquire(self) -> bool:
        if self._fd is not None:
            # Held by another task of this process
            return False
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        self._fd = fd
        logger.debug("store_lock_acquired", path=self._path)
        return True

    async def acquire(self) -> None:
        while not await self.try_acquire():
            logger.debug("store_lock_busy", path=self._path)
            await asyncio.sleep(self._retry_interval)

    async def release(self) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("store_lock_released", path=self._path)
