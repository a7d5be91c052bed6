"""Application entrypoint."""

from __future__ import annotations

import asyncio
import os
import signal
import sys

import structlog

from tfinstance.config import get_settings, Settings
from tfinstance.domain.ports.services import LeadershipCheck
from tfinstance.domain.services.instance_service import InstanceService
from tfinstance.domain.services.tag_codec import TagCodec
from tfinstance.infrastructure.locking.file_lock import FileStoreLock
from tfinstance.infrastructure.observability.logging import setup_logging
from tfinstance.infrastructure.persistence.resource_store import ResourceFileStore
from tfinstance.infrastructure.terraform.executor import TerraformCliExecutor
from tfinstance.workers.apply_worker import ApplyCoordinator


logger = structlog.get_logger(__name__)


def build_service(
    settings: Settings, leadership: LeadershipCheck | None = None
) -> tuple[InstanceService, ApplyCoordinator]:
    """Compose the instance service and its apply coordinator."""
    tf = settings.terraform
    tag_codec = TagCodec()
    lock = FileStoreLock(tf.dir, retry_interval=tf.lock_retry_interval)
    store = ResourceFileStore(tf.dir, tag_codec=tag_codec)
    executor = TerraformCliExecutor(
        tf.dir,
        envs=tf.envs,
        auto_approve=tf.auto_approve,
        binary=tf.binary,
    )
    coordinator = ApplyCoordinator(
        executor,
        store,
        lock,
        leadership=None if tf.standalone else leadership,
        poll_interval=tf.poll_interval,
        settle_window=tf.settle_window,
        delta_window=tf.delta_window,
        max_settle_checks=tf.max_settle_checks,
        prune_orphans=tf.prune_orphans,
    )
    service = InstanceService(store, executor, lock, scheduler=coordinator, tag_codec=tag_codec)
    return service, coordinator


async def serve(settings: Settings) -> None:
    """Run the apply loop until SIGINT or SIGTERM."""
    os.makedirs(settings.terraform.dir, exist_ok=True)
    _, coordinator = build_service(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("tfinstance_started", dir=settings.terraform.dir)
    coordinator.trigger()
    await stop.wait()
    await coordinator.stop()
    logger.info("tfinstance_stopped")


def main() -> None:
    """Run the application."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.observability.service_name)

    executor = TerraformCliExecutor(settings.terraform.dir, binary=settings.terraform.binary)
    if not executor.is_installed():
        logger.error("terraform_not_installed", binary=settings.terraform.binary)
        sys.exit(1)

    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
