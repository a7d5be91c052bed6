"""Decoder for terraform's flattened text state dump.

``terraform show`` (pre-0.12 text format) prints every resource as a header
followed by indented ``key = value`` lines, with nested values flattened
into dotted keys::

    aws_security_group.default:
      id = sg-1403ab7f
      egress.# = 1
      egress.482069346.cidr_blocks.# = 1
      egress.482069346.cidr_blocks.0 = 0.0.0.0/0
      egress.482069346.from_port = 0
      tags.% = 1
      tags.provisioner = infrakit-terraform-demo

A ``.%`` key gives the size of a map and a ``.#`` key the size of a list.
List elements are keyed by opaque hash-like numbers, so the decoded element
order carries no meaning. ``terraform state show <address>`` prints the same
lines for a single resource without the header or indentation.

The output is advisory: malformed lines are skipped, never raised.
"""

from __future__ import annotations

import math
import re
from typing import Iterable

import structlog

from tfinstance.domain.models.values import (
    FlatValue,
    ListValue,
    MapValue,
    ScalarValue,
)


logger = structlog.get_logger(__name__)

# Matches a line like: "aws_security_group.default:"
HEADER_REGEX = re.compile(r"^([^\s.]+)\.(\S+):$")

# Matches a line like: "  id = igw-c5fcffac"
PROPERTY_REGEX = re.compile(r"^\s+(\S.*?) =(?: (.*))?$")

# Matches a line like: "id = igw-c5fcffac"
INSTANCE_PROPERTY_REGEX = re.compile(r"^(\S.*?) =(?: (.*))?$")

INT_REGEX = re.compile(r"^[+-]?[0-9]+$")
FLOAT_REGEX = re.compile(r"^[+-]?([0-9]+\.[0-9]*|\.[0-9]+|[0-9]+)([eE][+-]?[0-9]+)?$")

MAP_MARKER = "%"
LIST_MARKER = "#"


def decode_scalar(raw: str) -> ScalarValue:
    """Convert a leaf string to an int, float, bool or string value."""
    if raw == "":
        return ScalarValue(value="")
    if INT_REGEX.match(raw):
        return ScalarValue(value=int(raw))
    if FLOAT_REGEX.match(raw):
        number = float(raw)
        if math.isfinite(number):
            return ScalarValue(value=number)
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return ScalarValue(value=lowered == "true")
    return ScalarValue(value=raw)


def _is_count(raw: str | None) -> bool:
    return raw is not None and INT_REGEX.match(raw.strip()) is not None


def _group(flat: dict[str, str]) -> tuple[dict[str, str], dict[str, dict[str, str]]]:
    """Split keys into leaves and groups keyed by their first path segment."""
    leaves: dict[str, str] = {}
    groups: dict[str, dict[str, str]] = {}
    for key, raw in flat.items():
        head, sep, rest = key.partition(".")
        if sep and rest:
            groups.setdefault(head, {})[rest] = raw
        else:
            leaves[key] = raw
    return leaves, groups


def _sort_key(segment: str) -> tuple[int, int | str]:
    if INT_REGEX.match(segment):
        return (0, int(segment))
    return (1, segment)


def expand(flat: dict[str, str]) -> dict[str, FlatValue]:
    """Reconstruct nested values from dotted keys of one object."""
    leaves, groups = _group(flat)
    result: dict[str, FlatValue] = {}
    for key, raw in leaves.items():
        result[key] = decode_scalar(raw)
    for head, children in groups.items():
        result[head] = _collection(children)
    return result


def _collection(children: dict[str, str]) -> FlatValue:
    if _is_count(children.get(LIST_MARKER)):
        return _list(children)
    if _is_count(children.get(MAP_MARKER)):
        return _map(children)
    # A nested block without a size marker decodes as an object
    return MapValue(entries=expand(children))


def _element(children: dict[str, str]) -> FlatValue:
    if LIST_MARKER in children or MAP_MARKER in children:
        return _collection(children)
    return MapValue(entries=expand(children))


def _list(children: dict[str, str]) -> ListValue:
    leaves: dict[str, str] = {}
    nested: dict[str, dict[str, str]] = {}
    for key, raw in children.items():
        if key == LIST_MARKER:
            continue
        segment, sep, rest = key.partition(".")
        if sep and rest:
            nested.setdefault(segment, {})[rest] = raw
        else:
            leaves[segment] = raw

    elements: dict[str, FlatValue] = {}
    for segment, raw in leaves.items():
        elements[segment] = decode_scalar(raw)
    for segment, grandchildren in nested.items():
        elements[segment] = _element(grandchildren)
    ordered = sorted(elements, key=_sort_key)
    return ListValue(items=tuple(elements[segment] for segment in ordered))


def _map(children: dict[str, str]) -> MapValue:
    # Entries holding their own collection announce it with "<entry>.%" or
    # "<entry>.#"; every other key is a map key, dots included.
    collections = {
        key.partition(".")[0]
        for key in children
        if key.partition(".")[2] in (MAP_MARKER, LIST_MARKER)
    }
    nested: dict[str, dict[str, str]] = {}
    entries: dict[str, FlatValue] = {}
    for key, raw in children.items():
        if key == MAP_MARKER:
            continue
        head, sep, rest = key.partition(".")
        if sep and head in collections:
            nested.setdefault(head, {})[rest] = raw
        else:
            entries[key] = decode_scalar(raw)
    for head, grandchildren in nested.items():
        entries[head] = _collection(grandchildren)
    return MapValue(entries=entries)


class FlatMapDecoder:
    """Decodes ``terraform show`` and ``terraform state show`` text."""

    def decode_show(
        self,
        text: str,
        resource_types: Iterable[str] | None = None,
        property_filter: Iterable[str] | None = None,
    ) -> dict[str, dict[str, dict[str, FlatValue]]]:
        """Decode the multi-resource dump into type -> name -> properties.

        Only resources of ``resource_types`` are kept when given; only the
        top-level properties named in ``property_filter`` are kept when given.
        """
        type_filter = set(resource_types) if resource_types is not None else None
        raw_results: dict[str, dict[str, dict[str, str]]] = {}
        current: dict[str, str] | None = None
        last_key: str | None = None

        for line in text.splitlines():
            header = HEADER_REGEX.match(line)
            if header:
                resource_type, resource_name = header.group(1), header.group(2)
                last_key = None
                if type_filter is not None and resource_type not in type_filter:
                    current = None
                    continue
                current = {}
                raw_results.setdefault(resource_type, {})[resource_name] = current
                continue
            if current is None:
                continue
            last_key = self._consume(line, PROPERTY_REGEX, current, last_key)

        props_filter = set(property_filter) if property_filter else None
        results: dict[str, dict[str, dict[str, FlatValue]]] = {}
        for resource_type, named in raw_results.items():
            results[resource_type] = {}
            for resource_name, flat in named.items():
                properties = expand(flat)
                if props_filter is not None:
                    properties = {k: v for k, v in properties.items() if k in props_filter}
                results[resource_type][resource_name] = properties
        return results

    def decode_state_show(self, text: str) -> dict[str, FlatValue]:
        """Decode the single-resource dump into properties."""
        flat: dict[str, str] = {}
        last_key: str | None = None
        for line in text.splitlines():
            last_key = self._consume(line, INSTANCE_PROPERTY_REGEX, flat, last_key)
        return expand(flat)

    @staticmethod
    def _consume(
        line: str, regex: re.Pattern[str], flat: dict[str, str], last_key: str | None
    ) -> str | None:
        """Record a property line, or continue the previous multi-line value."""
        match = regex.match(line.rstrip())
        if match:
            key = match.group(1)
            flat[key] = (match.group(2) or "").strip()
            return key
        if last_key is None:
            if line.strip():
                logger.debug("flatmap_line_skipped", line=line)
            return None
        flat[last_key] = f"{flat[last_key]}\n{line}"
        return last_key
