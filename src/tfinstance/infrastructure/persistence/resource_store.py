"""Resource document persistence as ``*.tf.json`` files.

Each provisioned instance owns ``instance-<ts>.tf.json`` holding its VM and
every ``@default`` scoped resource, plus ``instance-<ts>-dedicated.tf.json``
when a resource is ``@dedicated``. A resource scoped with any other label
``S`` lands in ``scope-S.tf.json``, shared by every instance that names it.
The VM records the other files it depends on in its ``infrakit.attach``
tag; destroy uses that tag to reference count shared files.
"""

from __future__ import annotations

import base64
import json
import os
import re
import tempfile
import time
from pathlib import Path

import structlog

from tfinstance.domain.models.instance import ATTACH_TAG, INSTANCE_ID_PREFIX
from tfinstance.domain.models.resource import (
    decode_document,
    encode_document,
    find_vm,
    is_vm_type,
    PROP_HOSTNAME_PREFIX,
    PROP_SCOPE,
    ResourceDocument,
    ResourceName,
    ResourceProperties,
    ResourceType,
    SCOPE_DEDICATED,
    SCOPE_DEFAULT,
    TF_SUFFIX,
    VMType,
)
from tfinstance.domain.ports.repositories import ResourceStore
from tfinstance.domain.services.tag_codec import TagCodec


logger = structlog.get_logger(__name__)

# Files that contain an instance VM definition
INSTANCE_FILE_REGEX = re.compile(r"^(instance-[0-9]+)\.tf\.json$")

SCOPE_LABEL_REGEX = re.compile(r"^[A-Za-z0-9_.-]+$")

DEDICATED_SUFFIX = "-dedicated"
SCOPE_FILE_PREFIX = "scope-"

# Value of the AWS "private_ip" property replaced by the logical ID
PRIVATE_IP_LOGICAL_ID = "INSTANCE_LOGICAL_ID"

# File timestamps further in the future than this are clock skew
FUTURE_MTIME_TOLERANCE = 30.0


def scope_filename(instance_id: str, scope: str) -> str:
    """Return the file (without suffix) a resource with ``scope`` is written to."""
    if scope == SCOPE_DEFAULT:
        return instance_id
    if scope == SCOPE_DEDICATED:
        return f"{instance_id}{DEDICATED_SUFFIX}"
    return f"{SCOPE_FILE_PREFIX}{scope}"


class ResourceFileStore(ResourceStore):
    """Reads and writes resource documents in the terraform directory."""

    def __init__(self, directory: str, tag_codec: TagCodec | None = None) -> None:
        self._directory = directory
        self._tags = tag_codec or TagCodec()

    @property
    def directory(self) -> str:
        return self._directory

    def path(self, filename: str) -> str:
        return os.path.join(self._directory, filename + TF_SUFFIX)

    def unique_instance_id(self, now: float | None = None) -> str:
        """Return a timestamp based instance ID whose file does not exist yet."""
        stamp = int(now if now is not None else time.time())
        while self.exists(f"{INSTANCE_ID_PREFIX}{stamp}"):
            stamp += 1
        return f"{INSTANCE_ID_PREFIX}{stamp}"

    # ------------------------------------------------------------------
    # Decomposition
    # ------------------------------------------------------------------

    def decompose(
        self,
        instance_id: str,
        document: ResourceDocument,
        vm_type: ResourceType,
        vm_properties: ResourceProperties,
    ) -> dict[str, ResourceDocument]:
        file_map: dict[str, ResourceDocument] = {}

        for resource_type, resources in document.items():
            vm_resource = is_vm_type(resource_type)
            for resource_name, properties in resources.items():
                if vm_resource:
                    properties = vm_properties
                scope = properties.pop(PROP_SCOPE, SCOPE_DEFAULT)
                if not isinstance(scope, str) or not scope:
                    raise ValueError(
                        f"Invalid {PROP_SCOPE} value on {resource_type}.{resource_name}: {scope!r}"
                    )

                if vm_resource:
                    if scope != SCOPE_DEFAULT:
                        logger.warning(
                            "vm_scope_ignored",
                            resource_type=resource_type,
                            scope=scope,
                        )
                    filename = instance_id
                    new_name = instance_id
                elif scope in (SCOPE_DEFAULT, SCOPE_DEDICATED):
                    filename = scope_filename(instance_id, scope)
                    new_name = f"{instance_id}-{resource_name}"
                else:
                    if not SCOPE_LABEL_REGEX.match(scope):
                        raise ValueError(
                            f"Invalid {PROP_SCOPE} label on {resource_type}.{resource_name}: {scope!r}"
                        )
                    filename = scope_filename(instance_id, scope)
                    new_name = f"{scope}-{resource_name}"

                file_doc = file_map.setdefault(filename, {})
                file_doc.setdefault(resource_type, {})[new_name] = properties

        attach = sorted(filename for filename in file_map if filename != instance_id)
        if attach:
            self._tags.merge(vm_type, vm_properties, {ATTACH_TAG: ",".join(attach)})

        logger.debug(
            "resources_decomposed",
            instance_id=instance_id,
            files=sorted(file_map),
        )
        return file_map

    @staticmethod
    def apply_platform_fixups(
        vm_type: ResourceType,
        name: str,
        logical_id: str | None,
        properties: ResourceProperties,
    ) -> None:
        """Apply the provider specific property rewrites before writing."""
        hostname_prefix = properties.pop(PROP_HOSTNAME_PREFIX, None)

        if vm_type in (VMType.SOFTLAYER.value, VMType.IBMCLOUD.value):
            hostname = logical_id or name
            if isinstance(hostname_prefix, str) and hostname_prefix.strip():
                hostname = f"{hostname_prefix.strip()}-{hostname.replace(INSTANCE_ID_PREFIX, '')}"
            properties["hostname"] = hostname
            logger.debug("hostname_set", vm_type=vm_type, hostname=hostname)

        if vm_type == VMType.AWS.value and properties.get("private_ip") == PRIVATE_IP_LOGICAL_ID:
            if logical_id:
                properties["private_ip"] = logical_id
            else:
                del properties["private_ip"]

        if vm_type in (VMType.AWS.value, VMType.DIGITALOCEAN.value) and "user_data" in properties:
            data = str(properties["user_data"]).encode("utf-8")
            properties["user_data"] = base64.b64encode(data).decode("ascii")

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def write(
        self,
        instance_id: str,
        document: ResourceDocument,
        vm_type: ResourceType,
        vm_properties: ResourceProperties,
        logical_id: str | None = None,
    ) -> list[str]:
        file_map = self.decompose(instance_id, document, vm_type, vm_properties)
        self.apply_platform_fixups(vm_type, instance_id, logical_id, vm_properties)
        return self.write_files(file_map)

    def write_files(self, file_map: dict[str, ResourceDocument]) -> list[str]:
        """Write every document, each one atomically.

        All documents are serialized before the first write. The files are
        not written as one transaction: an I/O error part way leaves the
        earlier files replaced.
        """
        payloads = {filename: encode_document(doc) for filename, doc in file_map.items()}

        paths: list[str] = []
        for filename, payload in payloads.items():
            path = self.path(filename)
            self._write_atomic(filename, path, payload)
            logger.info("resource_file_written", file=path)
            paths.append(path)
        return paths

    def read(self, filename: str) -> ResourceDocument:
        return self._load(Path(self.path(filename)))

    def exists(self, filename: str) -> bool:
        return os.path.exists(self.path(filename))

    def remove(self, filename: str) -> None:
        os.remove(self.path(filename))
        logger.info("resource_file_removed", file=self.path(filename))

    def scan_instance_files(self) -> dict[str, ResourceDocument]:
        result: dict[str, ResourceDocument] = {}
        for path in sorted(Path(self._directory).glob(f"{INSTANCE_ID_PREFIX}*{TF_SUFFIX}")):
            match = INSTANCE_FILE_REGEX.match(path.name)
            if not match:
                continue
            try:
                result[match.group(1)] = self._load(path)
            except FileNotFoundError:
                # Removed between the listing and the read
                logger.debug("resource_file_vanished", file=str(path))
        return result

    def scan_all(self) -> dict[ResourceType, dict[ResourceName, ResourceProperties]]:
        merged: dict[ResourceType, dict[ResourceName, ResourceProperties]] = {}
        for path in sorted(Path(self._directory).glob(f"{INSTANCE_ID_PREFIX}*{TF_SUFFIX}")):
            if not INSTANCE_FILE_REGEX.match(path.name):
                continue
            try:
                document = self._load(path)
            except FileNotFoundError:
                continue
            except ResourceFileError as e:
                logger.warning("resource_file_skipped", file=str(path), error=str(e))
                continue

            vm = find_vm(document)
            if vm is None:
                logger.debug("resource_file_without_vm", file=str(path))
                continue
            vm_type, vm_name, vm_properties = vm
            merged.setdefault(vm_type, {})[vm_name] = vm_properties
        return merged

    def recent_delta(self, window: float) -> bool:
        now = time.time()
        newest: float | None = None
        for path in Path(self._directory).glob(f"*{TF_SUFFIX}"):
            try:
                modified = path.stat().st_mtime
            except FileNotFoundError:
                continue
            if modified > now + FUTURE_MTIME_TOLERANCE:
                logger.error(
                    "resource_file_in_future",
                    file=path.name,
                    delta=modified - now,
                )
                continue
            if newest is None or modified > newest:
                newest = modified

        if newest is None:
            return False
        recent = newest > now - window
        logger.info("resource_file_delta", window=window, delta=now - newest, recent=recent)
        return recent

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _load(self, path: Path) -> ResourceDocument:
        text = path.read_text()
        try:
            return decode_document(text)
        except (json.JSONDecodeError, ValueError) as e:
            raise ResourceFileError(f"Cannot decode {path.name}: {e}") from e

    def _write_atomic(self, filename: str, path: str, payload: str) -> None:
        # The staging name must not end in .tf.json or terraform would load it
        fd, staging = tempfile.mkstemp(prefix=f".{filename}.", suffix=".tmp", dir=self._directory)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.chmod(staging, 0o644)
            os.replace(staging, path)
        except BaseException:
            try:
                os.remove(staging)
            except FileNotFoundError:
                pass
            raise


class ResourceFileError(Exception):
    """Raised when a resource file cannot be decoded."""
