"""Terraform resource document models.

A resource document is the content of the ``resource`` section of a
``*.tf.json`` file::

    {
      "resource": {
        "aws_instance": {
          "instance-1499827079": {
            "ami": "${lookup(var.aws_amis, var.aws_region)}",
            "instance_type": "m1.small",
            "tags": {"Name": "instance-1499827079"}
          }
        }
      }
    }

The same structure is embedded in the ``properties`` of an instance spec,
where auxiliary resources may carry the reserved ``@scope`` property and the
VM may carry ``@hostname_prefix``.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any


ResourceType = str
ResourceName = str
ResourceProperties = dict[str, Any]
ResourceDocument = dict[ResourceType, dict[ResourceName, ResourceProperties]]


class VMType(str, Enum):
    """Resource types that represent the provisioned compute instance."""

    AWS = "aws_instance"
    AZURE = "azurerm_virtual_machine"
    DIGITALOCEAN = "digitalocean_droplet"
    GOOGLE = "google_compute_instance"
    SOFTLAYER = "softlayer_virtual_guest"
    IBMCLOUD = "ibm_compute_vm_instance"


VM_TYPES: frozenset[str] = frozenset(vm.value for vm in VMType)

# Platforms whose tags are a JSON object
MAP_TAG_TYPES: frozenset[str] = frozenset(
    {VMType.AWS.value, VMType.AZURE.value, VMType.DIGITALOCEAN.value, VMType.GOOGLE.value}
)

# Platforms whose tags are a list of "key:value" strings
LIST_TAG_TYPES: frozenset[str] = frozenset({VMType.SOFTLAYER.value, VMType.IBMCLOUD.value})

PROP_SCOPE = "@scope"
PROP_HOSTNAME_PREFIX = "@hostname_prefix"

SCOPE_DEFAULT = "@default"
SCOPE_DEDICATED = "@dedicated"

TF_SUFFIX = ".tf.json"


def is_vm_type(resource_type: str) -> bool:
    return resource_type in VM_TYPES


def find_vm(
    document: ResourceDocument,
) -> tuple[ResourceType, ResourceName, ResourceProperties] | None:
    """Return the first VM-class resource of a document, if any."""
    for resource_type, resources in document.items():
        if not is_vm_type(resource_type) or not resources:
            continue
        name, properties = next(iter(resources.items()))
        return resource_type, name, properties
    return None


def count_vms(document: ResourceDocument) -> int:
    return sum(
        len(resources)
        for resource_type, resources in document.items()
        if is_vm_type(resource_type)
    )


def decode_document(raw: Any) -> ResourceDocument:
    """Decode spec properties (JSON text, bytes or a mapping) to a document.

    Raises ``ValueError`` when the payload is not a resource document.
    """
    if raw is None:
        raise ValueError("no properties")
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        raw = json.loads(raw)
    else:
        # Deep copy so rendering and tag merging never touch the caller's data
        raw = json.loads(json.dumps(raw))
    if not isinstance(raw, dict):
        raise ValueError("properties must be an object")

    resources = raw.get("resource", {})
    if not isinstance(resources, dict):
        raise ValueError("resource section must be an object")
    for resource_type, named in resources.items():
        if not isinstance(named, dict):
            raise ValueError(f"resource type {resource_type} must map names to properties")
        for name, properties in named.items():
            if not isinstance(properties, dict):
                raise ValueError(f"resource {resource_type}.{name} must be an object")
    return resources


def encode_document(document: ResourceDocument) -> str:
    """Serialize a document in the on-disk ``*.tf.json`` format."""
    return json.dumps({"resource": document}, indent=2)
