"""Repository port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod

from tfinstance.domain.models.resource import (
    ResourceDocument,
    ResourceName,
    ResourceProperties,
    ResourceType,
)


class ResourceStore(ABC):
    """Port for persisting resource documents as terraform files.

    Filenames are given without the ``.tf.json`` suffix.
    """

    @abstractmethod
    def decompose(
        self,
        instance_id: str,
        document: ResourceDocument,
        vm_type: ResourceType,
        vm_properties: ResourceProperties,
    ) -> dict[str, ResourceDocument]:
        """Split a spec document into per-file documents by scope."""

    @abstractmethod
    def write(
        self,
        instance_id: str,
        document: ResourceDocument,
        vm_type: ResourceType,
        vm_properties: ResourceProperties,
        logical_id: str | None = None,
    ) -> list[str]:
        """Decompose, apply platform fixups and write every file."""

    @abstractmethod
    def write_files(self, file_map: dict[str, ResourceDocument]) -> list[str]:
        """Write already-decomposed documents, returning the paths written."""

    @abstractmethod
    def read(self, filename: str) -> ResourceDocument:
        """Read and decode a single file."""

    @abstractmethod
    def exists(self, filename: str) -> bool:
        """Check whether a file exists."""

    @abstractmethod
    def remove(self, filename: str) -> None:
        """Delete a file."""

    @abstractmethod
    def scan_instance_files(self) -> dict[str, ResourceDocument]:
        """Decode every instance VM file, keyed by filename."""

    @abstractmethod
    def scan_all(self) -> dict[ResourceType, dict[ResourceName, ResourceProperties]]:
        """Merge the VM resource of every instance file."""

    @abstractmethod
    def unique_instance_id(self, now: float | None = None) -> str:
        """Return an unused timestamp based instance ID."""

    @abstractmethod
    def recent_delta(self, window: float) -> bool:
        """Return True if any file changed within ``window`` seconds."""
