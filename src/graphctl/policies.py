"""Per-resource-type replacement policies.

A policy tells the Planner which attribute changes force a replacement and
which replacement strategy is safe for a resource type. Policies are matched
against resource types with glob patterns and merged.

RESOLUTION ORDER:
- Built-in defaults apply first
- Policies from the configuration document are layered on top
- A more specific pattern wins over a general one (exact > glob)
- On equal specificity the policy declared later wins
- force_replace attribute sets are unioned across all matching policies

USE CASES:
- Front Door custom domains hold a globally unique host name, so the old
  object must be gone before the new one is created
- Role assignments do not accept tags
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class ReplaceStrategy(str, Enum):
    """Ordering of the create and destroy halves of a replacement."""

    # Create the replacement, then delete the previous object
    CREATE_BEFORE_DESTROY = "create_before_destroy"
    # Delete the previous object, then create the replacement
    DESTROY_BEFORE_CREATE = "destroy_before_create"


DEFAULT_REPLACE_STRATEGY = ReplaceStrategy.CREATE_BEFORE_DESTROY

# Specificity assigned to a pattern without wildcards
EXACT_MATCH_SPECIFICITY = 10_000


def glob_to_regex(pattern: str) -> str:
    """Convert glob pattern to regex.

    * -> .*
    ? -> .
    Other regex chars are escaped
    """
    escaped = ""
    for char in pattern:
        if char == "*":
            escaped += ".*"
        elif char == "?":
            escaped += "."
        elif char in r"\.[]{}()+^$|":
            escaped += "\\" + char
        else:
            escaped += char
    return f"^{escaped}$"


def pattern_specificity(pattern: str) -> int:
    """Rank a glob pattern. Exact patterns outrank any wildcard pattern."""
    if "*" not in pattern and "?" not in pattern:
        return EXACT_MATCH_SPECIFICITY
    return len(pattern.replace("*", "").replace("?", ""))


class ResourceTypePolicy(BaseModel):
    """A single policy rule for one or more resource types.

    Examples:
        # Globally unique host names cannot coexist during replacement
        - resourceTypes: ["Microsoft.Cdn/profiles/customDomains"]
          replaceStrategy: destroy_before_create

        # Changing the SKU tier of a registry needs a new registry
        - resourceTypes: ["Microsoft.ContainerRegistry/*"]
          forceReplace: ["sku"]
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_types: list[str] = Field(default_factory=list, alias="resourceTypes")
    force_replace: list[str] = Field(default_factory=list, alias="forceReplace")
    replace_strategy: ReplaceStrategy | None = Field(None, alias="replaceStrategy")
    supports_tags: bool | None = Field(None, alias="supportsTags")

    # Documentation
    reason: str = ""

    @field_validator("resource_types", "force_replace")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Drop blank entries and surrounding whitespace."""
        result = []
        for pattern in v:
            if not pattern or not pattern.strip():
                continue
            result.append(pattern.strip())
        return result

    def specificity(self, resource_type: str) -> int | None:
        """Return how specifically this policy matches, or None when it doesn't."""
        value = resource_type.lower()
        best: int | None = None
        for pattern in self.resource_types:
            if re.match(glob_to_regex(pattern.lower()), value):
                score = pattern_specificity(pattern)
                if best is None or score > best:
                    best = score
        return best

    def matches(self, resource_type: str) -> bool:
        return self.specificity(resource_type) is not None


@dataclass(frozen=True)
class EffectivePolicy:
    """Merged policy for one resource type.

    Attributes:
        resource_type: The type the policy was resolved for.
        force_replace: Attributes whose change always forces replacement.
        replace_strategy: Strategy used when a replacement is planned.
        supports_tags: Whether context tags are merged into the attributes.
        reasons: Reasons of the policies that contributed.
    """

    resource_type: str
    force_replace: frozenset[str]
    replace_strategy: ReplaceStrategy
    supports_tags: bool
    reasons: tuple[str, ...] = ()


# Built-in policies, layered under the ones declared in the document
DEFAULT_POLICIES: list[ResourceTypePolicy] = [
    ResourceTypePolicy(
        resource_types=[
            "Microsoft.Cdn/profiles/customDomains",
            "Microsoft.Cdn/profiles/afdEndpoints",
            "Microsoft.Network/frontDoors",
        ],
        replace_strategy=ReplaceStrategy.DESTROY_BEFORE_CREATE,
        reason="Host names are globally unique",
    ),
    ResourceTypePolicy(
        resource_types=[
            "Microsoft.Authorization/*",
            "Microsoft.Network/virtualNetworks/subnets",
            "Microsoft.Cdn/profiles/customDomains",
            "Microsoft.Cdn/profiles/originGroups*",
            "Microsoft.Cdn/profiles/afdEndpoints/routes",
        ],
        supports_tags=False,
        reason="Resource type does not accept tags",
    ),
]


class PolicySet:
    """Resolves the effective policy for a resource type.

    Thread Safety:
        Resolution is read-only; results are cached per resource type.
    """

    def __init__(
        self,
        policies: list[ResourceTypePolicy] | None = None,
        enable_default_policies: bool = True,
    ) -> None:
        self._policies: list[ResourceTypePolicy] = []
        if enable_default_policies:
            self._policies.extend(DEFAULT_POLICIES)
        if policies:
            self._policies.extend(policies)
        self._cache: dict[str, EffectivePolicy] = {}

    @property
    def policies(self) -> list[ResourceTypePolicy]:
        return list(self._policies)

    def resolve(self, resource_type: str) -> EffectivePolicy:
        """Merge every matching policy for a resource type.

        Args:
            resource_type: Provider resource type (e.g., "Microsoft.Web/sites").

        Returns:
            EffectivePolicy with unioned force_replace and the most specific
            replace_strategy and supports_tags settings.
        """
        cached = self._cache.get(resource_type)
        if cached is not None:
            return cached

        force_replace: set[str] = set()
        reasons: list[str] = []
        strategy: tuple[int, ReplaceStrategy] | None = None
        supports_tags: tuple[int, bool] | None = None

        for policy in self._policies:
            score = policy.specificity(resource_type)
            if score is None:
                continue
            force_replace.update(policy.force_replace)
            if policy.reason:
                reasons.append(policy.reason)
            # >= so a later policy wins a tie
            if policy.replace_strategy is not None and (
                strategy is None or score >= strategy[0]
            ):
                strategy = (score, policy.replace_strategy)
            if policy.supports_tags is not None and (
                supports_tags is None or score >= supports_tags[0]
            ):
                supports_tags = (score, policy.supports_tags)

        effective = EffectivePolicy(
            resource_type=resource_type,
            force_replace=frozenset(force_replace),
            replace_strategy=strategy[1] if strategy else DEFAULT_REPLACE_STRATEGY,
            supports_tags=supports_tags[1] if supports_tags else True,
            reasons=tuple(reasons),
        )
        self._cache[resource_type] = effective
        logger.debug(
            "Resolved policy for %s",
            resource_type,
            extra={
                "resource_type": resource_type,
                "replace_strategy": effective.replace_strategy.value,
                "force_replace": sorted(effective.force_replace),
            },
        )
        return effective
