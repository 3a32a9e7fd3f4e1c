"""Provider interface.

A provider performs opaque create, update, delete and read calls against a
remote API. Calls are blocking; the Executor runs them in worker threads.
Every failure is raised as one of the typed ProviderError subclasses so that
callers can decide between retrying, deferring and giving up.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar


class ProviderError(Exception):
    """Base class for provider call failures.

    Attributes:
        resource_type: Type of the resource the call was for.
        remote_id: Remote identifier, when one is known.
        attribute: Offending attribute, when the provider can tell.
        code: Provider-specific error code.
    """

    def __init__(
        self,
        message: str,
        *,
        resource_type: str | None = None,
        remote_id: str | None = None,
        attribute: str | None = None,
        code: str | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.remote_id = remote_id
        self.attribute = attribute
        self.code = code
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """Throttling, timeouts and server-side errors. Safe to retry."""

    pass


class ProviderFatalError(ProviderError):
    """Validation, authorization and other errors that retrying won't fix."""

    pass


class ProviderDependencyConflict(ProviderError):
    """A delete was refused because something still depends on the resource."""

    pass


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a successful create or update."""

    remote_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """Interface every provider implements."""

    name: ClassVar[str] = "abstract"

    @abstractmethod
    def create(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResult:
        """Create a remote object and return its identifier and outputs."""

    @abstractmethod
    def update(
        self,
        resource_type: str,
        remote_id: str,
        attributes: dict[str, Any],
        changed: list[str],
    ) -> ProviderResult:
        """Update a remote object in place."""

    @abstractmethod
    def delete(self, resource_type: str, remote_id: str, attributes: dict[str, Any]) -> None:
        """Delete a remote object. An object that is already gone is not an error."""

    @abstractmethod
    def read(
        self, resource_type: str, remote_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Read the live attributes of a remote object, or None if it vanished."""

    def immutable_attributes(self, resource_type: str) -> set[str]:
        """Top-level attributes that can only change through replacement."""
        return set()

    def identity_attributes(self, resource_type: str) -> set[str]:
        """Attributes that identify the remote object.

        Two objects with equal identity attributes cannot exist at once, so a
        replacement that keeps them has to destroy before creating.
        """
        return {"name"}

    def supports_in_place_update(self, resource_type: str, changed: list[str]) -> bool:
        return not set(changed) & self.immutable_attributes(resource_type)
