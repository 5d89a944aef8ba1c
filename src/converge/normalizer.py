"""Attribute normalization for drift detection.

Providers rarely echo attributes back exactly as they were sent. This module
decides when an observed value is semantically the same as the applied one.

COMMON FALSE POSITIVES HANDLED:
1. Provider-filled defaults: keys present in observed but never applied
2. Empty array [] vs null vs missing property
3. String "true" vs boolean true
4. Case differences in enums (e.g., "Standard" vs "standard")
5. Whitespace differences in multi-line strings
6. Array ordering for unordered collections
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Marker:
    """Named sentinel that only equals itself."""

    def __init__(self, label: str) -> None:
        self._label = label

    def __repr__(self) -> str:
        return self._label


# Attribute not present on one side of a comparison
ABSENT = Marker("(absent)")


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Whitespace normalization for multi-line strings
    WHITESPACE_NORMALIZE = "whitespace_normalize"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match (supports wildcards)
        path_pattern: Attribute path pattern, dotted (supports * and **)
        normalization_type: Type of normalization to apply
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        if self.kind != "*" and not _glob_match(kind.lower(), self.kind.lower()):
            return False
        return self.path_pattern == "*" or _glob_match(path.lower(), self.path_pattern.lower())


def _glob_match(value: str, pattern: str) -> bool:
    """Glob matching where * stays within one dotted segment and ** spans segments."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i:i + 3] == "**.":
            regex_pattern += "(?:.*\\.)?"
            i += 3
        elif pattern[i:i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"

    return bool(re.match(regex_pattern, value))


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        path_pattern="tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tags object equals null/missing",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enabled flags may be string or bool",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Locations are case-insensitive",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.sku.name",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.sku.tier",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU tiers may have case variations",
    ),
    NormalizationRule(
        kind="Microsoft.Network/networkSecurityGroups",
        path_pattern="properties.securityRules",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="NSG rules are ordered by priority, not array index",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.addressPrefixes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Address prefix lists are sets",
    ),
]


@dataclass(frozen=True)
class AttributeDelta:
    """One top-level attribute whose observed value diverges from last-applied."""

    attribute: str
    applied: Any
    observed: Any


class AttributeNormalizer:
    """Compares applied and observed attributes modulo semantic equivalence.

    Dictionaries use subset semantics: keys the provider added on its own are
    ignored, keys that were applied must still be present and equivalent.
    """

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    @property
    def rules(self) -> list[NormalizationRule]:
        return list(self._rules)

    def _types_for(self, kind: str, path: str) -> set[NormalizationType]:
        return {rule.normalization_type for rule in self._rules if rule.matches(kind, path)}

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize a scalar or collection according to the rules at path."""
        types = self._types_for(kind, path)
        normalized = value

        if NormalizationType.EMPTY_EQUIVALENCE in types:
            normalized = _normalize_empty(normalized)
        if NormalizationType.BOOLEAN_NORMALIZE in types:
            normalized = _normalize_boolean(normalized)
        if NormalizationType.NUMERIC_STRING in types:
            normalized = _normalize_numeric_string(normalized)
        if NormalizationType.CASE_INSENSITIVE in types and isinstance(normalized, str):
            normalized = normalized.lower()
        if NormalizationType.WHITESPACE_NORMALIZE in types:
            normalized = _normalize_whitespace(normalized)
        if NormalizationType.ARRAY_UNORDERED in types and isinstance(normalized, list):
            normalized = sorted(normalized, key=lambda x: json.dumps(x, sort_keys=True, default=str))

        return normalized

    def equivalent(self, applied: Any, observed: Any, kind: str, path: str) -> bool:
        """Check whether observed still satisfies applied at path."""
        if observed is ABSENT:
            observed = None
        applied = self.normalize_value(applied, kind, path)
        observed = self.normalize_value(observed, kind, path)

        if isinstance(applied, dict):
            if not isinstance(observed, dict):
                return False
            return all(
                key in observed and self.equivalent(value, observed[key], kind, f"{path}.{key}")
                for key, value in applied.items()
            )

        if isinstance(applied, list):
            if not isinstance(observed, list) or len(applied) != len(observed):
                return False
            return all(
                self.equivalent(a, o, kind, path)
                for a, o in zip(applied, observed, strict=True)
            )

        # bool is an int subclass; True must not equal 1 here
        if isinstance(applied, bool) != isinstance(observed, bool):
            return False

        return applied == observed

    def compare(
        self, kind: str, applied: dict[str, Any], observed: dict[str, Any]
    ) -> list[AttributeDelta]:
        """Return the applied attributes whose observed value has drifted."""
        deltas = []
        for attribute in sorted(applied):
            observed_value = observed.get(attribute, ABSENT)
            if not self.equivalent(applied[attribute], observed_value, kind, attribute):
                deltas.append(
                    AttributeDelta(
                        attribute=attribute,
                        applied=applied[attribute],
                        observed=observed_value,
                    )
                )
        return deltas


def _normalize_empty(value: Any) -> Any:
    """[], {}, "", null all become None for comparison."""
    if value in ("", [], {}):
        return None
    return value


def _normalize_boolean(value: Any) -> Any:
    """Normalize boolean-like values to actual booleans."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.lower() in ("true", "yes", "1", "on"):
            return True
        if value.lower() in ("false", "no", "0", "off"):
            return False
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
    return value


def _normalize_numeric_string(value: Any) -> Any:
    """Convert numeric strings such as 100 or 3.14 to numbers."""
    if isinstance(value, str):
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass
    return value


def _normalize_whitespace(value: Any) -> Any:
    if isinstance(value, str):
        value = value.replace("\r\n", "\n").replace("\r", "\n")
        lines = [" ".join(line.split()) for line in value.split("\n")]
        value = "\n".join(lines).strip()
    return value


@dataclass
class NormalizationConfig:
    """Configuration for drift normalization."""

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            CONVERGE_DEFAULT_NORMALIZATION_RULES: If "false", disable defaults
        """
        return cls(
            enable_default_rules=os.environ.get(
                "CONVERGE_DEFAULT_NORMALIZATION_RULES", "true"
            ).lower() in ("true", "1", "yes"),
        )

    def build(self) -> AttributeNormalizer:
        return AttributeNormalizer(rules=self.rules, enable_default_rules=self.enable_default_rules)
