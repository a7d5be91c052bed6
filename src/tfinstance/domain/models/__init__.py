"""Domain models package."""

from tfinstance.domain.models.base import ValueObject
from tfinstance.domain.models.instance import (
    ATTACH_TAG,
    Attachment,
    DestroyContext,
    ImportResource,
    InstanceDescription,
    InstanceSpec,
    LOGICAL_ID_TAG,
    NAME_TAG,
)
from tfinstance.domain.models.resource import (
    find_vm,
    is_vm_type,
    ResourceDocument,
    ResourceName,
    ResourceProperties,
    ResourceType,
    VM_TYPES,
    VMType,
)
from tfinstance.domain.models.values import (
    FlatValue,
    ListValue,
    MapValue,
    ScalarValue,
)


__all__ = [
    "ATTACH_TAG",
    "Attachment",
    "DestroyContext",
    "FlatValue",
    "ImportResource",
    "InstanceDescription",
    "InstanceSpec",
    "LOGICAL_ID_TAG",
    "ListValue",
    "MapValue",
    "NAME_TAG",
    "ResourceDocument",
    "ResourceName",
    "ResourceProperties",
    "ResourceType",
    "ScalarValue",
    "VMType",
    "VM_TYPES",
    "ValueObject",
    "find_vm",
    "is_vm_type",
]
