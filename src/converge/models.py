"""Pydantic models for the declared-state document.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Parsing of symbolic references into explicit Reference values
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import date
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .config import MAX_RESOURCES_PER_DOCUMENT

VALID_LOGICAL_ID_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]{0,127}$"

# A reference must be the whole string value: ${<logical_id>.<attr>[.<nested>...]}
REFERENCE_PATTERN = re.compile(
    r"\$\{([A-Za-z][A-Za-z0-9_-]{0,127})\.([A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*)\}"
)
REFERENCE_MARKER = "${"

# Reserved output attribute that resolves to the provider handle
HANDLE_ATTRIBUTE = "id"


@dataclass(frozen=True)
class Reference:
    """Symbolic reference to another resource's output attribute."""

    target: str
    path: tuple[str, ...]

    @property
    def attribute(self) -> str:
        """Top-level attribute name of the referenced output."""
        return self.path[0]

    def __str__(self) -> str:
        return "${" + self.target + "." + ".".join(self.path) + "}"


def to_json_value(value: Any, path: str = "") -> Any:
    """Return value with YAML-only scalars turned into JSON-compatible ones.

    Attributes are persisted as JSON, so anything that would not survive the
    round trip unchanged must be converted or rejected here. Dates and
    timestamps become ISO 8601 strings.

    Raises:
        ValueError: For non-string mapping keys, non-finite floats and types
            JSON cannot represent (sets, binary).
    """
    where = path or "<root>"
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite number at {where}: {value!r}")
        return value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        converted = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"Mapping keys must be strings, got {key!r} at {where}")
            converted[key] = to_json_value(item, f"{path}.{key}" if path else key)
        return converted
    if isinstance(value, list):
        return [to_json_value(item, f"{where}[{index}]") for index, item in enumerate(value)]
    raise ValueError(f"Unsupported value of type {type(value).__name__} at {where}")


def parse_references(value: Any) -> Any:
    """Return a copy of value with reference strings replaced by Reference.

    Raises:
        ValueError: If a string embeds a reference inside other text.
    """
    if isinstance(value, str):
        match = REFERENCE_PATTERN.fullmatch(value)
        if match:
            return Reference(target=match.group(1), path=tuple(match.group(2).split(".")))
        if REFERENCE_MARKER in value:
            raise ValueError(
                f"References must be the whole value, string interpolation is not supported: "
                f"{value!r}"
            )
        return value
    if isinstance(value, dict):
        return {key: parse_references(item) for key, item in value.items()}
    if isinstance(value, list):
        return [parse_references(item) for item in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference found in a parsed attribute value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)


def resolve_references(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every Reference in value with lookup(reference)."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, dict):
        return {key: resolve_references(item, lookup) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_references(item, lookup) for item in value]
    return value


# =============================================================================
# Document Models
# =============================================================================


class ResourceSpec(BaseModel):
    """A single resource declaration."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: Annotated[str, Field(min_length=1, max_length=256)]
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Explicit ordering on top of the edges inferred from references
    # Example: dependsOn: ["network", "workspace"]
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("attributes")
    @classmethod
    def validate_attributes(cls, v: dict[str, Any]) -> dict[str, Any]:
        v = to_json_value(v)
        parse_references(v)
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for dep in v:
            if not re.match(VALID_LOGICAL_ID_PATTERN, dep):
                raise ValueError(f"dependsOn entry is not a valid logical id: {dep!r}")
        if len(set(v)) != len(v):
            raise ValueError("dependsOn entries must be unique")
        return v


class Document(BaseModel):
    """Declared-state document: logical id to resource declaration."""

    model_config = {"extra": "forbid"}

    resources: dict[str, ResourceSpec] = Field(default_factory=dict)

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: dict[str, ResourceSpec]) -> dict[str, ResourceSpec]:
        if len(v) > MAX_RESOURCES_PER_DOCUMENT:
            raise ValueError(
                f"Document declares {len(v)} resources, exceeding limit of "
                f"{MAX_RESOURCES_PER_DOCUMENT}"
            )
        for logical_id in v:
            if not re.match(VALID_LOGICAL_ID_PATTERN, logical_id):
                raise ValueError(
                    f"Logical id must match {VALID_LOGICAL_ID_PATTERN}: {logical_id!r}"
                )
        return v
