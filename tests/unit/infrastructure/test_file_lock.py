"""Unit tests for the advisory store lock."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from tfinstance.infrastructure.locking.file_lock import FileStoreLock, LOCK_FILE_NAME


class TestFileStoreLock:
    @pytest.mark.asyncio
    async def test_acquire_creates_lock_file(self, tf_dir: Path) -> None:
        lock = FileStoreLock(str(tf_dir))
        assert await lock.try_acquire() is True
        assert lock.held
        assert os.path.exists(tf_dir / LOCK_FILE_NAME)
        await lock.release()
        assert not lock.held

    @pytest.mark.asyncio
    async def test_second_holder_excluded(self, tf_dir: Path) -> None:
        first = FileStoreLock(str(tf_dir))
        second = FileStoreLock(str(tf_dir))
        assert await first.try_acquire() is True
        assert await second.try_acquire() is False
        await first.release()
        assert await second.try_acquire() is True
        await second.release()

    @pytest.mark.asyncio
    async def test_not_reentrant(self, tf_dir: Path) -> None:
        lock = FileStoreLock(str(tf_dir))
        assert await lock.try_acquire() is True
        assert await lock.try_acquire() is False
        await lock.release()

    @pytest.mark.asyncio
    async def test_acquire_waits_for_release(self, tf_dir: Path) -> None:
        holder = FileStoreLock(str(tf_dir), retry_interval=0.01)
        waiter = FileStoreLock(str(tf_dir), retry_interval=0.01)
        await holder.acquire()

        task = asyncio.create_task(waiter.acquire())
        await asyncio.sleep(0.05)
        assert not task.done()

        await holder.release()
        await asyncio.wait_for(task, timeout=1)
        assert waiter.held
        await waiter.release()

    @pytest.mark.asyncio
    async def test_hold_context_manager_releases_on_error(self, tf_dir: Path) -> None:
        lock = FileStoreLock(str(tf_dir))
        with pytest.raises(RuntimeError):
            async with lock.hold():
                assert lock.held
                raise RuntimeError("boom")
        assert not lock.held
        assert await lock.try_acquire() is True
        await lock.release()

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self, tf_dir: Path) -> None:
        lock = FileStoreLock(str(tf_dir))
        await lock.release()
        assert not lock.held
