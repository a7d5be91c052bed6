"""Service port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

from tfinstance.domain.models.values import FlatValue


ShowResult = dict[str, dict[str, dict[str, FlatValue]]]


class TerraformExecutor(ABC):
    """Port for invoking the terraform binary in the resource directory."""

    @abstractmethod
    async def apply(self) -> str:
        """Run terraform apply without refreshing state."""

    @abstractmethod
    async def refresh(self) -> str:
        """Run terraform refresh."""

    @abstractmethod
    async def show_resources(
        self,
        resource_types: list[str] | None = None,
        property_filter: list[str] | None = None,
    ) -> ShowResult:
        """Run terraform show and decode it into type -> name -> properties."""

    @abstractmethod
    async def state_show(self, address: str) -> dict[str, FlatValue]:
        """Run terraform state show for a single ``type.name`` address."""

    @abstractmethod
    async def state_list(self) -> dict[str, set[str]]:
        """Run terraform state list, returning names grouped by type."""

    @abstractmethod
    async def import_resource(
        self, resource_type: str, resource_name: str, resource_id: str
    ) -> None:
        """Import an existing cloud resource as ``type.name``."""

    @abstractmethod
    async def state_rm(self, resource_type: str, resource_name: str) -> None:
        """Remove ``type.name`` from terraform state."""


class StoreLock(ABC):
    """Port for the advisory lock guarding the resource directory."""

    @abstractmethod
    async def try_acquire(self) -> bool:
        """Attempt to take the lock without waiting."""

    @abstractmethod
    async def acquire(self) -> None:
        """Take the lock, retrying until it is available."""

    @abstractmethod
    async def release(self) -> None:
        """Release a held lock."""

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Hold the lock for the duration of a ``with`` block."""
        await self.acquire()
        try:
            yield
        finally:
            await self.release()


class LeadershipCheck(ABC):
    """Port for asking whether this replica may run terraform apply."""

    @abstractmethod
    async def is_leader(self) -> bool:
        """Return True if this replica currently holds leadership."""


class ApplyScheduler(ABC):
    """Port for requesting a background terraform apply."""

    @abstractmethod
    def trigger(self) -> None:
        """Request an apply without waiting for it."""


class TerraformExecutionError(Exception):
    """Raised when Terraform execution fails."""
