"""Shared test fixtures."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from tfinstance.config import Settings, TerraformSettings
from tfinstance.domain.models.values import FlatValue
from tfinstance.domain.ports.services import (
    ApplyScheduler,
    LeadershipCheck,
    ShowResult,
    TerraformExecutor,
)
from tfinstance.domain.services.instance_service import InstanceService
from tfinstance.domain.services.tag_codec import TagCodec
from tfinstance.infrastructure.locking.file_lock import FileStoreLock
from tfinstance.infrastructure.persistence.resource_store import ResourceFileStore
from tfinstance.infrastructure.terraform.executor import TerraformExecutionError


class FakeTerraformExecutor(TerraformExecutor):
    """Records terraform calls and returns canned results."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.show_result: ShowResult = {}
        self.state_show_results: dict[str, dict[str, FlatValue]] = {}
        self.state_lists: list[dict[str, set[str]]] = []
        self.fail_on: set[str] = set()

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise TerraformExecutionError(f"terraform {name} failed")

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    async def apply(self) -> str:
        self._record("apply")
        return ""

    async def refresh(self) -> str:
        self._record("refresh")
        return ""

    async def show_resources(
        self,
        resource_types: list[str] | None = None,
        property_filter: list[str] | None = None,
    ) -> ShowResult:
        self._record("show", resource_types, property_filter)
        return {
            resource_type: named
            for resource_type, named in self.show_result.items()
            if resource_types is None or resource_type in resource_types
        }

    async def state_show(self, address: str) -> dict[str, FlatValue]:
        self._record("state_show", address)
        return self.state_show_results.get(address, {})

    async def state_list(self) -> dict[str, set[str]]:
        self._record("state_list")
        if self.state_lists:
            return self.state_lists.pop(0)
        return {}

    async def import_resource(
        self, resource_type: str, resource_name: str, resource_id: str
    ) -> None:
        self._record("import", resource_type, resource_name, resource_id)

    async def state_rm(self, resource_type: str, resource_name: str) -> None:
        self._record("state_rm", resource_type, resource_name)


class RecordingScheduler(ApplyScheduler):
    def __init__(self) -> None:
        self.triggers = 0

    def trigger(self) -> None:
        self.triggers += 1


class StaticLeadership(LeadershipCheck):
    def __init__(self, leader: bool = True, error: Exception | None = None) -> None:
        self.leader = leader
        self.error = error
        self.checks = 0

    async def is_leader(self) -> bool:
        self.checks += 1
        if self.error is not None:
            raise self.error
        return self.leader


def write_tf(directory: Path, filename: str, document: dict[str, Any]) -> Path:
    """Write a ``*.tf.json`` file the way the store lays it out."""
    path = directory / f"{filename}.tf.json"
    path.write_text(json.dumps({"resource": document}, indent=2))
    return path


def read_tf(directory: Path, filename: str) -> dict[str, Any]:
    return json.loads((directory / f"{filename}.tf.json").read_text())["resource"]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        debug=True,
        terraform=TerraformSettings(dir=str(tmp_path)),
    )


@pytest.fixture
def tf_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def tag_codec() -> TagCodec:
    return TagCodec()


@pytest.fixture
def store(tf_dir: Path, tag_codec: TagCodec) -> ResourceFileStore:
    return ResourceFileStore(str(tf_dir), tag_codec=tag_codec)


@pytest.fixture
def store_lock(tf_dir: Path) -> FileStoreLock:
    return FileStoreLock(str(tf_dir), retry_interval=0.01)


@pytest.fixture
def terraform() -> FakeTerraformExecutor:
    return FakeTerraformExecutor()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def instance_service(
    store: ResourceFileStore,
    terraform: FakeTerraformExecutor,
    store_lock: FileStoreLock,
    scheduler: RecordingScheduler,
    tag_codec: TagCodec,
) -> InstanceService:
    return InstanceService(store, terraform, store_lock, scheduler=scheduler, tag_codec=tag_codec)


@pytest.fixture
def aws_spec_properties() -> dict[str, Any]:
    return {
        "resource": {
            "aws_instance": {
                "host": {
                    "ami": "ami-123",
                    "instance_type": "t2.micro",
                    "tags": {"team": "x"},
                }
            }
        }
    }
