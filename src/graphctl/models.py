"""Pydantic models for the configuration document with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Deterministic naming and tagging derived from the deployment context
"""

from __future__ import annotations

import hashlib
import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .policies import ReplaceStrategy, ResourceTypePolicy

# Address separator between resource type and logical name
ADDRESS_SEPARATOR = "::"

# Project and environment are single segments so that derived names never collide
CONTEXT_SEGMENT_PATTERN = r"^[a-z][a-z0-9]*$"
LOGICAL_NAME_PATTERN = r"^[a-z][a-z0-9-]*$"
VARIABLE_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"

# Length of the hash suffix appended when a derived name is truncated
NAME_HASH_LENGTH = 8
DEFAULT_MAX_NAME_LENGTH = 63


def make_address(resource_type: str, name: str) -> str:
    """Build a resource address from its type and logical name."""
    return f"{resource_type}{ADDRESS_SEPARATOR}{name}"


def split_address(address: str) -> tuple[str, str]:
    """Split a resource address into (type, logical name).

    Raises:
        ValueError: If the address is not of the form "<type>::<name>".
    """
    resource_type, sep, name = address.partition(ADDRESS_SEPARATOR)
    if not sep or not resource_type or not name:
        raise ValueError(f"Invalid resource address '{address}', expected '<type>::<name>'")
    return resource_type, name


# =============================================================================
# Context
# =============================================================================


class Context(BaseModel):
    """Deployment context shared by every resource in a document.

    The context drives derived resource names and the tags merged into each
    resource's attributes.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    project: Annotated[str, Field(min_length=1, max_length=24, pattern=CONTEXT_SEGMENT_PATTERN)]
    environment: Annotated[
        str, Field(min_length=1, max_length=16, pattern=CONTEXT_SEGMENT_PATTERN)
    ]
    owner: str | None = None
    location: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    max_name_length: Annotated[
        int, Field(ge=16, le=260, alias="maxNameLength")
    ] = DEFAULT_MAX_NAME_LENGTH
    tag_resources: bool = Field(True, alias="tagResources")

    def resource_name(self, logical_name: str) -> str:
        """Derive the provider-facing name for a logical resource name.

        Names are "<project>-<environment>-<logical>", lowercased with every
        character outside [a-z0-9-] replaced by "-". Names longer than
        max_name_length are truncated and suffixed with a hash of the full
        name so that distinct inputs keep distinct outputs.
        """
        raw = f"{self.project}-{self.environment}-{logical_name}".lower()
        sanitized = re.sub(r"[^a-z0-9-]", "-", raw)
        if len(sanitized) <= self.max_name_length:
            return sanitized

        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:NAME_HASH_LENGTH]
        keep = self.max_name_length - NAME_HASH_LENGTH - 1
        return f"{sanitized[:keep].rstrip('-')}-{digest}"

    def common_tags(self) -> dict[str, str]:
        """Tags every taggable resource carries."""
        tags = {"project": self.project, "environment": self.environment}
        if self.owner:
            tags["owner"] = self.owner
        tags.update(self.tags)
        return tags

    def lookup(self, field_name: str) -> Any:
        """Resolve a ${context.<field>} reference.

        Raises:
            KeyError: If the context has no such field.
        """
        values: dict[str, Any] = {
            "project": self.project,
            "environment": self.environment,
            "owner": self.owner,
            "location": self.location,
            "tags": self.common_tags(),
        }
        if field_name not in values or values[field_name] is None:
            raise KeyError(field_name)
        return values[field_name]


# =============================================================================
# Variables and Outputs
# =============================================================================


class VariableSpec(BaseModel):
    """Input variable declaration. A variable without default is required."""

    model_config = {"extra": "ignore"}

    default: Any = None
    description: str = ""
    sensitive: bool = False

    @property
    def required(self) -> bool:
        return self.default is None


class OutputSpec(BaseModel):
    """Named output exposed after apply."""

    model_config = {"extra": "ignore"}

    value: Any
    description: str = ""
    sensitive: bool = False


# =============================================================================
# Resources
# =============================================================================


class ResourceLifecycle(BaseModel):
    """Per-resource lifecycle settings."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    # Attributes whose change always forces a replacement
    force_replace: list[str] = Field(default_factory=list, alias="forceReplace")
    replace_strategy: ReplaceStrategy | None = Field(None, alias="replaceStrategy")
    # Top-level attributes excluded from change detection
    ignore_changes: list[str] = Field(default_factory=list, alias="ignoreChanges")


class ResourceSpec(BaseModel):
    """A declared resource.

    Example YAML:
        - type: Microsoft.Web/sites
          name: storefront
          attributes:
            resource_group: ${Microsoft.Resources/resourceGroups::core.name}
            properties:
              serverFarmId: ${Microsoft.Web/serverfarms::plan.id}
          lifecycle:
            ignoreChanges: [tags]
    """

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    type: Annotated[str, Field(min_length=1, max_length=256)]
    name: Annotated[str, Field(min_length=1, max_length=80, pattern=LOGICAL_NAME_PATTERN)]
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    lifecycle: ResourceLifecycle = Field(default_factory=ResourceLifecycle)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if ADDRESS_SEPARATOR in v or "${" in v or any(c.isspace() for c in v):
            raise ValueError(
                f"type must not contain whitespace, '{ADDRESS_SEPARATOR}' or '${{': {v}"
            )
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for address in v:
            split_address(address)
        return v

    @property
    def address(self) -> str:
        return make_address(self.type, self.name)


# =============================================================================
# Document
# =============================================================================


class TeardownHints(BaseModel):
    """Optional ordering hints for destroy."""

    model_config = {"extra": "ignore"}

    # Addresses deleted before everything else, in the given order
    order: list[str] = Field(default_factory=list)


class ConfigDocument(BaseModel):
    """Root of a configuration document."""

    model_config = {"extra": "ignore"}

    context: Context
    variables: dict[str, VariableSpec] = Field(default_factory=dict)
    resources: list[ResourceSpec] = Field(default_factory=list)
    outputs: dict[str, OutputSpec] = Field(default_factory=dict)
    policies: list[ResourceTypePolicy] = Field(default_factory=list)
    teardown: TeardownHints = Field(default_factory=TeardownHints)

    @field_validator("variables", mode="before")
    @classmethod
    def expand_variable_shorthand(cls, v: Any) -> Any:
        # "name: value" is shorthand for "name: {default: value}"
        if not isinstance(v, dict):
            return v
        return {
            key: value if isinstance(value, dict) else {"default": value}
            for key, value in v.items()
        }

    @field_validator("outputs", mode="before")
    @classmethod
    def expand_output_shorthand(cls, v: Any) -> Any:
        # "name: ${...}" is shorthand for "name: {value: ${...}}"
        if not isinstance(v, dict):
            return v
        return {
            key: value if isinstance(value, dict) and "value" in value else {"value": value}
            for key, value in v.items()
        }

    @field_validator("variables")
    @classmethod
    def validate_variable_names(cls, v: dict[str, VariableSpec]) -> dict[str, VariableSpec]:
        for name in v:
            if not re.match(VARIABLE_NAME_PATTERN, name):
                raise ValueError(f"Invalid variable name: {name}")
        return v

    @model_validator(mode="after")
    def validate_teardown_hints(self) -> ConfigDocument:
        for address in self.teardown.order:
            split_address(address)
        return self
