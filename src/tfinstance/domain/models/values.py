"""Tagged-union values decoded from terraform's flattened state dump.

A property value reconstructed from ``key = value`` lines is either a
scalar, a list or a map. Consumers call :meth:`to_python` on any of the
three instead of checking which one they hold.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import Field

from tfinstance.domain.models.base import ValueObject


Scalar = Union[bool, int, float, str]


class ScalarValue(ValueObject):
    """A leaf value: number, boolean or string."""

    kind: Literal["scalar"] = "scalar"
    value: Scalar = ""

    def to_python(self) -> Any:
        return self.value


class ListValue(ValueObject):
    """A ``.#`` collection.

    Element order comes from terraform's opaque element keys and carries no
    meaning; compare lists as multisets.
    """

    kind: Literal["list"] = "list"
    items: tuple[FlatValue, ...] = ()

    def to_python(self) -> list[Any]:
        return [item.to_python() for item in self.items]


class MapValue(ValueObject):
    """A ``.%`` collection, or a nested block without a size marker."""

    kind: Literal["map"] = "map"
    entries: dict[str, FlatValue] = Field(default_factory=dict)

    def to_python(self) -> dict[str, Any]:
        return {key: value.to_python() for key, value in self.entries.items()}


FlatValue = Annotated[
    Union[ScalarValue, ListValue, MapValue],
    Field(discriminator="kind"),
]

ListValue.model_rebuild()
MapValue.model_rebuild()


def properties_to_python(properties: dict[str, FlatValue]) -> dict[str, Any]:
    """Convert a decoded property map to plain JSON-like values."""
    return {key: value.to_python() for key, value in properties.items()}
