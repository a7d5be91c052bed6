"""Background terraform apply coordination."""

from __future__ import annotations

import asyncio

import structlog

from tfinstance.domain.models.resource import find_vm
from tfinstance.domain.ports.repositories import ResourceStore
from tfinstance.domain.ports.services import (
    ApplyScheduler,
    LeadershipCheck,
    StoreLock,
    TerraformExecutor,
)


logger = structlog.get_logger(__name__)


class ApplyCoordinator(ApplyScheduler):
    """Runs ``terraform apply`` in a single background loop.

    ``trigger()`` starts the loop when idle; while it runs, a trigger sets a
    single-slot interrupt so the loop starts its next cycle early. Triggers
    arriving while the interrupt is already pending are dropped, so a burst
    of provisions produces one extra apply rather than one per call.

    A cycle first checks leadership and exits the loop when this replica is
    not the leader. The first cycle after a start or an interrupt waits for
    the resource files to settle, then takes the store lock without waiting,
    optionally prunes files of instances deleted out-of-band, and applies.
    """

    def __init__(
        self,
        executor: TerraformExecutor,
        store: ResourceStore,
        lock: StoreLock,
        leadership: LeadershipCheck | None = None,
        poll_interval: float = 30.0,
        settle_window: float = 5.0,
        delta_window: float = 3.0,
        max_settle_checks: int = 30,
        settle_check_interval: float = 1.0,
        prune_orphans: bool = True,
    ) -> None:
        self._executor = executor
        self._store = store
        self._lock = lock
        self._leadership = leadership
        self._poll_interval = poll_interval
        self._settle_window = settle_window
        self._delta_window = delta_window
        self._max_settle_checks = max_settle_checks
        self._settle_check_interval = settle_check_interval
        self._prune_orphans = prune_orphans
        self._running = False
        self._interrupt = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._apply_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def apply_count(self) -> int:
        return self._apply_count

    def trigger(self) -> None:
        """Request an apply; never blocks."""
        if self._running:
            if self._interrupt.is_set():
                logger.debug("apply_interrupt_already_pending")
            else:
                logger.info("apply_interrupt_requested")
                self._interrupt.set()
            return

        self._running = True
        self._interrupt.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("apply_loop_starting")

    async def stop(self) -> None:
        """Cancel the loop, waiting for it to unwind."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._running = False
        logger.info("apply_loop_stopped")

    async def should_apply(self) -> bool:
        """Return True if this replica may run terraform apply."""
        if self._leadership is None:
            return True
        try:
            leader = await self._leadership.is_leader()
        except Exception as e:
            logger.error("leadership_check_failed", error=str(e))
            return False
        if not leader:
            logger.info("apply_skipped_not_leader")
        return leader

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        settle = True
        try:
            while True:
                if not await self.should_apply():
                    # No await between the check and the flag so a concurrent
                    # trigger() either interrupts this loop or starts a new one
                    self._running = False
                    logger.info("apply_loop_exited")
                    return

                try:
                    if settle:
                        settle = False
                        await self._settle()
                    await self._apply_once()
                except Exception as e:
                    logger.exception("apply_cycle_failed", error=str(e))

                if await self._wait_for_interrupt():
                    logger.info("apply_loop_interrupted")
                    settle = True
        except Exception as e:
            logger.exception("apply_loop_crashed", error=str(e))
        finally:
            if self._task is asyncio.current_task():
                self._running = False

    async def _settle(self) -> None:
        """Wait until no resource file has changed recently."""
        if self._settle_window > 0:
            await asyncio.sleep(self._settle_window)
        for _ in range(self._max_settle_checks):
            if not self._store.recent_delta(self._delta_window):
                return
            await asyncio.sleep(self._settle_check_interval)
        logger.warning("apply_settle_gave_up", checks=self._max_settle_checks)

    async def _apply_once(self) -> None:
        if not await self._lock.try_acquire():
            logger.info("apply_skipped_lock_busy")
            return
        try:
            if self._prune_orphans:
                await self._prune()
            await self._executor.apply()
            self._apply_count += 1
            logger.info("apply_completed", count=self._apply_count)
        except Exception as e:
            logger.exception("apply_failed", error=str(e))
        finally:
            await self._lock.release()

    async def _prune(self) -> None:
        """Remove instance files whose VM was deleted outside terraform.

        A VM in state before ``terraform refresh`` but gone after it no longer
        exists in the cloud. VMs never seen in state have not been applied yet
        and are kept.
        """
        before = await self._executor.state_list()
        await self._executor.refresh()
        after = await self._executor.state_list()

        for filename, document in self._store.scan_instance_files().items():
            vm = find_vm(document)
            if vm is None:
                continue
            vm_type, vm_name, _ = vm
            if vm_name in before.get(vm_type, set()) and vm_name not in after.get(vm_type, set()):
                logger.warning(
                    "instance_pruned",
                    file=filename,
                    resource_type=vm_type,
                    resource_name=vm_name,
                )
                self._store.remove(filename)

    async def _wait_for_interrupt(self) -> bool:
        """Wait for the poll interval; return True if interrupted first."""
        try:
            await asyncio.wait_for(self._interrupt.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            return False
        self._interrupt.clear()
        return True
