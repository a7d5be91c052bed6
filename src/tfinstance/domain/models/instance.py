"""Instance domain models."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import Field

from tfinstance.domain.models.base import ValueObject


# Comma separated list of the files (without suffix) an instance depends on
ATTACH_TAG = "infrakit.attach"
NAME_TAG = "Name"
LOGICAL_ID_TAG = "LogicalID"

INSTANCE_ID_PREFIX = "instance-"
INSTANCE_ID_REGEX = re.compile(r"^instance-[0-9]+$")


class DestroyContext(str, Enum):
    """Why an instance is being destroyed."""

    TERMINATE = "terminate"
    # The instance is replaced right away; keep its attached resources
    ROLLING_UPDATE = "rolling_update"


class Attachment(ValueObject):
    """Reference to something attached to an instance."""

    id: str
    type: str = ""


class InstanceSpec(ValueObject):
    """Request to provision an instance.

    ``properties`` holds a resource document (JSON text, bytes or mapping)
    with exactly one VM-class resource plus any auxiliary resources.
    """

    properties: Any = None
    tags: dict[str, str] = Field(default_factory=dict)
    init: str = ""
    logical_id: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)


class InstanceDescription(ValueObject):
    """A provisioned instance as seen through the resource files."""

    id: str
    tags: dict[str, str] = Field(default_factory=dict)
    logical_id: str | None = None
    properties: dict[str, Any] | None = None


class ImportResource(ValueObject):
    """An existing cloud resource to bring under terraform management."""

    resource_type: str
    resource_id: str
    # Resource name in the instance spec; optional when the type is unique
    resource_name: str | None = None
    exclude_properties: list[str] = Field(default_factory=list)
