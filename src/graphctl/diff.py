"""Attribute diffing with semantic normalization.

This module decides whether a resource's desired attributes differ from its
recorded attributes, and whether the live remote object has drifted from
what was recorded.

DESIGN PHILOSOPHY:
- Semantic equivalence: empty object ≡ null ≡ missing for some attributes
- Type coercion: "100" vs 100, true vs "True"
- Case differences in enums and locations ("West Europe" vs "westeurope")
- Drift is a subset check: the remote object may carry extra attributes the
  provider fills in, but every recorded attribute must still be present

Changes are reported per top-level attribute, which is the granularity the
Planner uses for replacement decisions.
"""

from __future__ import annotations

import functools
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .policies import glob_to_regex
from .references import UNKNOWN, contains_unknown

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: {}, [], "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Location names: "West Europe" == "westeurope"
    LOCATION_NAME = "location_name"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"


@functools.lru_cache(maxsize=256)
def _path_regex(pattern: str) -> re.Pattern[str]:
    # "**" spans segments, "*" stays within one dotted segment
    pieces = [
        "[^.]*".join(re.escape(part) for part in piece.split("*"))
        for piece in pattern.split("**")
    ]
    return re.compile("^" + ".*".join(pieces) + "$")


@dataclass(frozen=True)
class NormalizationRule:
    """Normalization applied to matching attribute paths.

    Attributes:
        resource_type: Resource type glob, "*" for every type
        path_pattern: Dotted attribute path; "*" matches one segment, "**" any depth
        normalization_type: Type of normalization to apply
        reason: Human-readable explanation
    """

    resource_type: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, resource_type: str, path: str) -> bool:
        """Check if this rule applies to a resource type and attribute path."""
        if self.resource_type != "*" and not re.match(
            glob_to_regex(self.resource_type.lower()), resource_type.lower()
        ):
            return False
        if self.path_pattern == "*":
            return True
        return _path_regex(self.path_pattern.lower()).match(path.lower()) is not None


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        resource_type="*",
        path_pattern="tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tags object equals null/missing",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="location",
        normalization_type=NormalizationType.LOCATION_NAME,
        reason="Providers report display and short location names",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enabled flags may be string or bool",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="sku.name",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="sku.tier",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU tiers may have case variations",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="kind",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Kind values may have case variations",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.port",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Ports may be string or number",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.allowedOrigins",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="CORS origins are a set, providers return them in any order",
    ),
]


@dataclass(frozen=True)
class AttributeChange:
    """A change to one top-level attribute.

    before is None when the attribute is being added, after is None when it
    is being removed, and after is UNKNOWN when it depends on a value only
    known after apply.
    """

    path: str
    before: Any = None
    after: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "before": _displayable(self.before),
            "after": _displayable(self.after),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttributeChange:
        return cls(path=data["path"], before=data.get("before"), after=data.get("after"))


@dataclass
class AttributeDiffer:
    """Compares attribute trees with semantic normalization."""

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True

    def __post_init__(self) -> None:
        self._rules: list[NormalizationRule] = []
        if self.enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        self._rules.extend(self.rules)

    def normalize_value(self, value: Any, resource_type: str, path: str) -> Any:
        """Normalize a value based on applicable rules."""
        normalized = value
        for rule in self._rules:
            if rule.matches(resource_type, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                if value in ("", [], {}):
                    return None
                return value
            case NormalizationType.BOOLEAN_NORMALIZE:
                return _normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return _normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.LOCATION_NAME:
                return value.replace(" ", "").lower() if isinstance(value, str) else value
            case NormalizationType.ARRAY_UNORDERED:
                if isinstance(value, list):
                    return sorted(value, key=lambda x: str(x))
                return value
            case _:
                return value

    def are_equivalent(self, before: Any, after: Any, resource_type: str, path: str) -> bool:
        """Check if two values are semantically equivalent."""
        if contains_unknown(before) or contains_unknown(after):
            return False
        return self._compare(before, after, resource_type, path, subset=False)

    def is_subset(self, expected: Any, actual: Any, resource_type: str, path: str) -> bool:
        """Check that every part of expected is present and equal in actual."""
        return self._compare(expected, actual, resource_type, path, subset=True)

    def _compare(self, a: Any, b: Any, resource_type: str, path: str, subset: bool) -> bool:
        a = self.normalize_value(a, resource_type, path)
        b = self.normalize_value(b, resource_type, path)

        if isinstance(a, dict) and isinstance(b, dict):
            keys = list(a) if subset else list(dict.fromkeys([*a, *b]))
            return all(
                self._compare(a.get(k), b.get(k), resource_type, f"{path}.{k}", subset)
                for k in keys
            )

        if isinstance(a, list) and isinstance(b, list):
            if len(a) != len(b):
                return False
            return all(
                self._compare(x, y, resource_type, path, subset)
                for x, y in zip(a, b, strict=True)
            )

        # bool is an int subclass; True must not equal 1 here
        if isinstance(a, bool) != isinstance(b, bool):
            return False
        return a == b

    def diff(
        self,
        resource_type: str,
        desired: dict[str, Any],
        recorded: dict[str, Any],
        ignore: Iterable[str] = (),
    ) -> list[AttributeChange]:
        """Compare desired attributes against the recorded ones.

        Args:
            resource_type: Resource type, for normalization rule matching.
            desired: Desired attributes, possibly containing UNKNOWN.
            recorded: Attributes recorded at the last successful apply.
            ignore: Top-level attributes excluded from comparison.

        Returns:
            One AttributeChange per differing top-level attribute, in desired
            order followed by attributes only present in the record.
        """
        ignored = set(ignore)
        changes: list[AttributeChange] = []
        for key in dict.fromkeys([*desired, *sorted(recorded)]):
            if key in ignored:
                continue
            before = recorded.get(key)
            after = desired.get(key)
            if not self.are_equivalent(before, after, resource_type, key):
                changes.append(AttributeChange(key, before, after))
        return changes

    def drift(
        self,
        resource_type: str,
        recorded: dict[str, Any],
        observed: dict[str, Any],
        ignore: Iterable[str] = (),
    ) -> list[AttributeChange]:
        """Compare recorded attributes against the observed remote object.

        Returns:
            One AttributeChange per recorded top-level attribute that is not
            contained in the observed object, with after set to the observed
            value.
        """
        ignored = set(ignore)
        changes: list[AttributeChange] = []
        for key, expected in recorded.items():
            if key in ignored:
                continue
            actual = observed.get(key)
            if not self.is_subset(expected, actual, resource_type, key):
                changes.append(AttributeChange(key, expected, actual))
        if changes:
            logger.debug(
                "Remote drift detected",
                extra={"resource_type": resource_type, "paths": [c.path for c in changes]},
            )
        return changes


def _normalize_boolean(value: Any) -> Any:
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
    if isinstance(value, str):
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass
    return value


def _displayable(value: Any) -> Any:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if isinstance(value, dict):
        return {k: _displayable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_displayable(v) for v in value]
    return value
