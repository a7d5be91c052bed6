"""Platform specific encoding of instance tags in VM resource properties."""

from __future__ import annotations

from typing import Any

import structlog

from tfinstance.domain.models.instance import ATTACH_TAG
from tfinstance.domain.models.resource import (
    LIST_TAG_TYPES,
    MAP_TAG_TYPES,
    ResourceProperties,
    ResourceType,
)


logger = structlog.get_logger(__name__)

TAGS_PROPERTY = "tags"


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


class TagCodec:
    """Merges and parses tags for both tag styles terraform providers use.

    Map-style platforms store ``"tags": {"key": "value"}``. List-style
    platforms store ``"tags": ["key:value", "bare"]``; on those, keys are
    lower-cased and the commas of the attach tag are written as spaces since
    the provider treats commas as separators.
    """

    def merge(
        self,
        vm_type: ResourceType,
        properties: ResourceProperties,
        tags: dict[str, str],
    ) -> ResourceProperties:
        """Merge ``tags`` into the VM properties in place; new values win."""
        if vm_type in MAP_TAG_TYPES:
            self._merge_map(vm_type, properties, tags)
        elif vm_type in LIST_TAG_TYPES:
            self._merge_list(vm_type, properties, tags)
        else:
            logger.warning("tag_merge_unsupported_type", vm_type=vm_type)
        return properties

    def parse(self, vm_type: ResourceType, properties: ResourceProperties) -> dict[str, str]:
        """Read the VM tags into a flat string map."""
        raw = properties.get(TAGS_PROPERTY)
        if raw is None:
            return {}

        if vm_type in MAP_TAG_TYPES:
            if not isinstance(raw, dict):
                logger.error(
                    "invalid_tags_value",
                    vm_type=vm_type,
                    value_type=type(raw).__name__,
                )
                return {}
            return {str(key): _stringify(value) for key, value in raw.items()}

        if vm_type in LIST_TAG_TYPES:
            if not isinstance(raw, list):
                logger.error(
                    "invalid_tags_value",
                    vm_type=vm_type,
                    value_type=type(raw).__name__,
                )
                return {}
            return self._parse_entries(raw)

        logger.warning("tag_parse_unsupported_type", vm_type=vm_type)
        return {}

    def logical_id(self, vm_type: ResourceType, properties: ResourceProperties) -> str | None:
        """Return the value of the ``logicalid`` tag, matched case-insensitively."""
        for key, value in self.parse(vm_type, properties).items():
            if key.lower() == "logicalid":
                return value
        return None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_map(
        vm_type: ResourceType, properties: ResourceProperties, tags: dict[str, str]
    ) -> None:
        current = properties.get(TAGS_PROPERTY)
        if current is None:
            properties[TAGS_PROPERTY] = dict(tags)
        elif isinstance(current, dict):
            current.update(tags)
        else:
            logger.error(
                "invalid_tags_value",
                vm_type=vm_type,
                value_type=type(current).__name__,
            )

    def _merge_list(
        self, vm_type: ResourceType, properties: ResourceProperties, tags: dict[str, str]
    ) -> None:
        current = properties.get(TAGS_PROPERTY)
        if current is None:
            current = []
        if not isinstance(current, list):
            logger.error(
                "invalid_tags_value",
                vm_type=vm_type,
                value_type=type(current).__name__,
            )
            return

        merged = {key.lower(): value for key, value in self._parse_entries(current).items()}
        for key, value in tags.items():
            merged[key.lower()] = value
        properties[TAGS_PROPERTY] = [
            self._encode_entry(key, value) for key, value in sorted(merged.items())
        ]

    @staticmethod
    def _encode_entry(key: str, value: str) -> str:
        if key == ATTACH_TAG:
            value = value.replace(",", " ")
        if value == "":
            return key
        return f"{key}:{value}"

    @staticmethod
    def _parse_entries(entries: list[Any]) -> dict[str, str]:
        tags: dict[str, str] = {}
        for entry in entries:
            text = _stringify(entry)
            if ":" not in text:
                tags[text] = ""
                continue
            # Only the first colon separates key from value
            key, value = text.split(":", 1)
            if key.lower() == ATTACH_TAG:
                value = value.replace(" ", ",")
            tags[key] = value
        return tags
