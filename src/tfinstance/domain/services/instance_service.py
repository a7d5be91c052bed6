"""Domain service for the instance lifecycle."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, Field

from tfinstance.domain.models.instance import (
    ATTACH_TAG,
    DestroyContext,
    ImportResource,
    InstanceDescription,
    InstanceSpec,
    INSTANCE_ID_REGEX,
    LOGICAL_ID_TAG,
    NAME_TAG,
)
from tfinstance.domain.models.resource import (
    count_vms,
    decode_document,
    find_vm,
    is_vm_type,
    PROP_HOSTNAME_PREFIX,
    PROP_SCOPE,
    ResourceDocument,
    ResourceProperties,
    ResourceType,
    VMType,
)
from tfinstance.domain.models.values import properties_to_python
from tfinstance.domain.ports.repositories import ResourceStore
from tfinstance.domain.ports.services import (
    ApplyScheduler,
    StoreLock,
    TerraformExecutionError,
    TerraformExecutor,
)
from tfinstance.domain.services.tag_codec import TAGS_PROPERTY, TagCodec
from tfinstance.domain.services.templating import (
    instance_variables,
    render_document,
    render_text,
    TemplateRenderError,
)


logger = structlog.get_logger(__name__)

# Property receiving the init script, per VM type
USER_DATA_PROPERTIES: dict[str, str] = {
    VMType.AWS.value: "user_data",
    VMType.DIGITALOCEAN.value: "user_data",
    VMType.SOFTLAYER.value: "user_metadata",
    VMType.IBMCLOUD.value: "user_metadata",
    VMType.GOOGLE.value: "metadata_startup_script",
}

AZURE_OS_PROFILE = "os_profile"
AZURE_CUSTOM_DATA = "custom_data"


def _append_user_data(properties: dict[str, Any], key: str, init: str) -> None:
    if key in properties:
        properties[key] = f"{properties[key]}\n{init}"
    else:
        properties[key] = init


def merge_init_script(vm_type: ResourceType, properties: ResourceProperties, init: str) -> None:
    """Merge the instance init script into the platform's user data property."""
    if not init:
        return
    if vm_type in USER_DATA_PROPERTIES:
        _append_user_data(properties, USER_DATA_PROPERTIES[vm_type], init)
    elif vm_type == VMType.AZURE.value:
        profile = properties.get(AZURE_OS_PROFILE)
        if profile is None:
            properties[AZURE_OS_PROFILE] = {AZURE_CUSTOM_DATA: init}
        elif isinstance(profile, dict):
            _append_user_data(profile, AZURE_CUSTOM_DATA, init)
        else:
            logger.warning("init_script_not_merged", vm_type=vm_type, reason="invalid os_profile")


def merge_property(source: dict[str, Any], dest: dict[str, Any], key: str) -> None:
    """Make ``source[key]`` win over ``dest[key]``, merging lists and maps.

    List ``tags`` entries replace destination entries with the same
    ``key:`` prefix; other list elements are appended when missing.
    """
    if key not in source:
        return
    value = source[key]
    if key not in dest:
        dest[key] = value
        return

    current = dest[key]
    if isinstance(value, list):
        if not isinstance(current, list):
            logger.error("property_merge_type_mismatch", key=key, expected="list")
            dest[key] = value
            return
        merged = list(current)
        for element in value:
            prefix = None
            if key == TAGS_PROPERTY and isinstance(element, str):
                prefix = element.split(":", 1)[0] + ":"
            for i, existing in enumerate(merged):
                if prefix is not None:
                    if isinstance(existing, str) and existing.startswith(prefix):
                        merged[i] = element
                        break
                elif existing == element:
                    break
            else:
                merged.append(element)
        dest[key] = merged
    elif isinstance(value, dict):
        if not isinstance(current, dict):
            logger.error("property_merge_type_mismatch", key=key, expected="map")
            dest[key] = value
            return
        current.update(value)
    else:
        dest[key] = value


class ImportTarget(BaseModel):
    """Working state for one resource being imported."""

    resource: ImportResource
    filename: str = ""
    name: str = ""
    spec_properties: dict[str, Any] = Field(default_factory=dict)
    live_properties: dict[str, Any] = Field(default_factory=dict)
    already_imported: bool = False
    imported: bool = False

    @property
    def resource_type(self) -> str:
        return self.resource.resource_type

    @property
    def address(self) -> str:
        return f"{self.resource.resource_type}.{self.name}"

    def final_properties(self) -> dict[str, Any]:
        """Spec property keys with the live values terraform reports."""
        final: dict[str, Any] = {}
        for key, spec_value in self.spec_properties.items():
            if key == PROP_SCOPE:
                continue
            if key == PROP_HOSTNAME_PREFIX:
                key = "hostname"
            if key in self.resource.exclude_properties:
                logger.info("import_property_excluded", resource_type=self.resource_type, key=key)
                continue
            if key in self.live_properties:
                final[key] = self.live_properties[key]
            else:
                logger.warning(
                    "import_property_missing",
                    address=self.address,
                    key=key,
                )
                final[key] = spec_value
        if TAGS_PROPERTY not in final and TAGS_PROPERTY in self.live_properties:
            final[TAGS_PROPERTY] = self.live_properties[TAGS_PROPERTY]
        return final


class InstanceService:
    """Provisions, labels, describes and destroys terraform backed instances.

    Every operation holds the store lock while it reads or writes resource
    files; operations that change files then trigger a background apply.
    """

    def __init__(
        self,
        store: ResourceStore,
        executor: TerraformExecutor,
        lock: StoreLock,
        scheduler: ApplyScheduler | None = None,
        tag_codec: TagCodec | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._lock = lock
        self._scheduler = scheduler
        self._tags = tag_codec or TagCodec()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _trigger_apply(self) -> None:
        if self._scheduler is not None:
            self._scheduler.trigger()

    @staticmethod
    def _decode(properties: Any) -> ResourceDocument:
        try:
            return decode_document(properties)
        except (ValueError, TypeError) as e:
            raise InvalidSpecError(f"Invalid instance properties: {e}") from e

    def _read_instance(self, instance_id: str) -> ResourceDocument:
        try:
            return self._store.read(instance_id)
        except FileNotFoundError as e:
            raise InstanceNotFoundError(f"Instance {instance_id} not found") from e

    def _attach_set(self, document: ResourceDocument) -> list[str]:
        vm = find_vm(document)
        if vm is None:
            return []
        vm_type, _, vm_properties = vm
        value = self._tags.parse(vm_type, vm_properties).get(ATTACH_TAG, "")
        return [entry for entry in value.split(",") if entry]

    @staticmethod
    def _managed_tags(spec: InstanceSpec, instance_id: str) -> dict[str, str]:
        tags = dict(spec.tags)
        if NAME_TAG not in tags and NAME_TAG.lower() not in tags:
            tags[NAME_TAG] = instance_id
        if spec.logical_id:
            tags[LOGICAL_ID_TAG] = spec.logical_id
        return tags

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def validate(self, properties: Any) -> None:
        """Check that spec properties form a document with at most one VM."""
        document = self._decode(properties)
        vms = count_vms(document)
        if vms > 1:
            raise InvalidSpecError(f"Spec defines {vms} VM resources, at most one is allowed")
        logger.debug("instance_spec_valid", resource_types=sorted(document))

    async def provision(self, spec: InstanceSpec) -> str:
        """Write the resource files for a new instance and return its ID."""
        async with self._lock.hold():
            instance_id = self._store.unique_instance_id()
            document = self._decode(spec.properties)
            if count_vms(document) > 1:
                raise InvalidSpecError("Spec defines more than one VM resource")

            variables = instance_variables(instance_id, spec.logical_id)
            try:
                document = render_document(document, variables)
                init = render_text(spec.init, variables)
            except TemplateRenderError as e:
                raise InvalidSpecError(str(e)) from e

            vm = find_vm(document)
            if vm is None:
                raise InvalidSpecError("Spec defines no VM resource")
            vm_type, _, vm_properties = vm

            self._tags.merge(vm_type, vm_properties, self._managed_tags(spec, instance_id))
            merge_init_script(vm_type, vm_properties, init)

            try:
                self._store.write(instance_id, document, vm_type, vm_properties, spec.logical_id)
            except ValueError as e:
                raise InvalidSpecError(str(e)) from e

            logger.info(
                "instance_provisioned",
                instance_id=instance_id,
                vm_type=vm_type,
                logical_id=spec.logical_id,
            )

        self._trigger_apply()
        return instance_id

    async def destroy(
        self, instance_id: str, context: DestroyContext = DestroyContext.TERMINATE
    ) -> None:
        """Remove an instance file and the attached files nobody else uses."""
        async with self._lock.hold():
            document = self._read_instance(instance_id)
            if context != DestroyContext.ROLLING_UPDATE:
                self._remove_unreferenced_attachments(instance_id, document)
            self._store.remove(instance_id)
            logger.info("instance_destroyed", instance_id=instance_id, context=context.value)

        self._trigger_apply()

    def _remove_unreferenced_attachments(
        self, instance_id: str, document: ResourceDocument
    ) -> None:
        remaining = set(self._attach_set(document))
        if not remaining:
            return

        for filename, other in self._store.scan_instance_files().items():
            if filename == instance_id:
                continue
            for entry in self._attach_set(other):
                if entry in remaining:
                    logger.info("attached_file_still_referenced", file=entry, referenced_by=filename)
                    remaining.discard(entry)

        for entry in sorted(remaining):
            try:
                self._store.remove(entry)
            except FileNotFoundError:
                logger.warning("attached_file_missing", instance_id=instance_id, file=entry)

    async def label(self, instance_id: str, labels: dict[str, str]) -> None:
        """Merge labels into the tags of an existing instance."""
        async with self._lock.hold():
            document = self._read_instance(instance_id)
            vm = find_vm(document)
            if vm is None or vm[1] != instance_id:
                raise InstanceNotFoundError(f"Instance {instance_id} not found")
            vm_type, _, vm_properties = vm
            self._tags.merge(vm_type, vm_properties, labels)
            self._store.write_files({instance_id: document})
            logger.info("instance_labeled", instance_id=instance_id, labels=sorted(labels))

        self._trigger_apply()

    async def describe_instances(
        self, tags: dict[str, str] | None = None, properties: bool = False
    ) -> list[InstanceDescription]:
        """List instances whose tags contain every given tag."""
        async with self._lock.hold():
            vms = self._store.scan_all()
            live: dict[str, dict[str, Any]] = {}
            if properties and vms:
                try:
                    live = await self._executor.show_resources(sorted(vms))
                except (TerraformExecutionError, OSError) as e:
                    logger.warning("terraform_show_failed", error=str(e))

        result: list[InstanceDescription] = []
        for vm_type, named in vms.items():
            for name, vm_properties in named.items():
                if not INSTANCE_ID_REGEX.match(name):
                    continue
                instance_tags = self._tags.parse(vm_type, vm_properties)
                if tags and any(instance_tags.get(k) != v for k, v in tags.items()):
                    continue

                described: dict[str, Any] | None = None
                if properties:
                    shown = live.get(vm_type, {}).get(name)
                    described = properties_to_python(shown) if shown is not None else vm_properties

                result.append(
                    InstanceDescription(
                        id=name,
                        tags=instance_tags,
                        logical_id=self._tags.logical_id(vm_type, vm_properties),
                        properties=described,
                    )
                )

        result.sort(key=lambda d: d.id)
        logger.debug("instances_described", count=len(result), tags=tags)
        return result

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def import_resources(
        self, spec: InstanceSpec, resources: list[ImportResource]
    ) -> str:
        """Bring existing cloud resources under management as a new instance.

        Each resource is matched to a resource of the spec, imported into
        terraform state, and written with the spec's property keys holding
        the live values. A failure removes what was imported and written.
        """
        if not resources:
            raise InvalidSpecError("No resources to import")

        async with self._lock.hold():
            instance_id = self._store.unique_instance_id()
            document = self._decode(spec.properties)
            vm = find_vm(document)
            if vm is None:
                raise InvalidSpecError("Spec defines no VM resource")
            vm_type, _, vm_properties = vm

            try:
                file_map = self._store.decompose(instance_id, document, vm_type, vm_properties)
            except ValueError as e:
                raise InvalidSpecError(str(e)) from e

            targets = self._match_import_targets(resources, file_map)
            instance_id = await self._find_already_imported(targets, instance_id)

            if all(t.already_imported for t in targets) and all(
                self._store.exists(t.filename) for t in targets
            ):
                logger.info("import_already_complete", instance_id=instance_id)
                return instance_id

            await self._import_targets(spec, targets, instance_id)

        self._trigger_apply()
        return instance_id

    @staticmethod
    def _match_import_targets(
        resources: list[ImportResource], file_map: dict[str, ResourceDocument]
    ) -> list[ImportTarget]:
        targets = [ImportTarget(resource=r) for r in resources]

        unnamed: dict[str, ImportTarget] = {}
        named: dict[str, dict[str, ImportTarget]] = {}
        for target in targets:
            resource = target.resource
            if resource.resource_name is None:
                if resource.resource_type in unnamed:
                    raise InvalidSpecError(
                        f"More than one unnamed import resource of type {resource.resource_type}"
                    )
                unnamed[resource.resource_type] = target
            else:
                by_name = named.setdefault(resource.resource_type, {})
                if resource.resource_name in by_name:
                    raise InvalidSpecError(
                        f"Duplicate import resource {resource.resource_type}:{resource.resource_name}"
                    )
                by_name[resource.resource_name] = target

        def assign(target: ImportTarget, filename: str, name: str, props: dict[str, Any]) -> None:
            if target.name:
                raise InvalidSpecError(
                    f"Ambiguous import resource {target.resource_type}:{target.resource.resource_id}"
                )
            target.filename = filename
            target.name = name
            target.spec_properties = props

        for filename, document in file_map.items():
            for resource_type, resources_by_name in document.items():
                for name, props in resources_by_name.items():
                    match = next(
                        (
                            t
                            for spec_name, t in named.get(resource_type, {}).items()
                            if name.endswith(spec_name)
                        ),
                        None,
                    )
                    if match is None:
                        match = unnamed.get(resource_type)
                    if match is not None:
                        assign(match, filename, name, props)

        for target in targets:
            if not target.name:
                label = target.resource_type
                if target.resource.resource_name is not None:
                    label = f"{label}:{target.resource.resource_name}"
                raise InvalidSpecError(f"No resource in spec matches import resource {label}")
        return targets

    async def _find_already_imported(self, targets: list[ImportTarget], instance_id: str) -> str:
        """Mark targets terraform already manages; return the adopted instance ID."""
        resource_types = sorted({t.resource_type for t in targets})
        existing = await self._executor.show_resources(resource_types, ["id"])

        adopted_id = instance_id
        for target in targets:
            for name, props in existing.get(target.resource_type, {}).items():
                id_value = props.get("id")
                if id_value is None:
                    logger.warning("managed_resource_without_id", resource_type=target.resource_type, name=name)
                    continue
                if str(id_value.to_python()) != target.resource.resource_id:
                    continue
                logger.info(
                    "resource_already_managed",
                    resource_type=target.resource_type,
                    name=name,
                    resource_id=target.resource.resource_id,
                )
                target.already_imported = True
                if is_vm_type(target.resource_type) and target.name == instance_id:
                    adopted_id = name

        if adopted_id != instance_id:
            for target in targets:
                if target.name == instance_id:
                    target.name = adopted_id
                if target.filename == instance_id:
                    target.filename = adopted_id
        return adopted_id

    async def _import_targets(
        self, spec: InstanceSpec, targets: list[ImportTarget], instance_id: str
    ) -> None:
        written: list[str] = []
        try:
            for target in targets:
                if target.already_imported:
                    continue
                logger.info(
                    "resource_importing",
                    address=target.address,
                    resource_id=target.resource.resource_id,
                )
                await self._executor.import_resource(
                    target.resource_type, target.name, target.resource.resource_id
                )
                target.imported = True

            for target in targets:
                shown = await self._executor.state_show(target.address)
                target.live_properties = properties_to_python(shown)

            for target in targets:
                if target.name == instance_id and is_vm_type(target.resource_type):
                    self._tags.merge(target.resource_type, target.live_properties, spec.tags)
                    merge_property(target.spec_properties, target.live_properties, TAGS_PROPERTY)

            file_map: dict[str, ResourceDocument] = {}
            for target in targets:
                file_map.setdefault(target.filename, {}).setdefault(target.resource_type, {})[
                    target.name
                ] = target.final_properties()
            for filename, document in file_map.items():
                self._store.write_files({filename: document})
                written.append(filename)

        except Exception:
            logger.exception("import_failed", instance_id=instance_id)
            await self._rollback_import(targets, written)
            raise

        logger.info("resources_imported", instance_id=instance_id, count=len(targets))

    async def _rollback_import(self, targets: list[ImportTarget], written: list[str]) -> None:
        for target in targets:
            if not target.imported:
                continue
            try:
                await self._executor.state_rm(target.resource_type, target.name)
            except Exception as e:
                logger.error("import_rollback_state_rm_failed", address=target.address, error=str(e))
        for filename in written:
            try:
                self._store.remove(filename)
            except FileNotFoundError:
                pass


class InvalidSpecError(Exception):
    """Raised when an instance spec cannot be provisioned."""


class InstanceNotFoundError(Exception):
    """Raised when an instance file does not exist."""
