"""Mock provider state and operations."""

from __future__ import annotations

import copy
import itertools
import threading
from dataclasses import dataclass, field
from typing import Any

from graphctl.providers.base import (
    Provider,
    ProviderDependencyConflict,
    ProviderFatalError,
    ProviderResult,
    ProviderTransientError,
)


@dataclass
class MockObject:
    """A remote object held by the mock provider."""

    remote_id: str
    resource_type: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.attributes.get("name", ""))


@dataclass
class _Injection:
    error: type[Exception]
    # None means every call fails
    remaining: int | None


class MockProvider(Provider):
    """Provider keeping remote objects in memory.

    Two live objects of the same type and name cannot exist at once, as with
    real cloud APIs, so replacements that keep the name must destroy first.
    """

    name = "mock"

    def __init__(self, immutable: set[str] | None = None) -> None:
        self.objects: dict[str, MockObject] = {}
        self.calls: list[tuple[str, str]] = []
        self._immutable = immutable if immutable is not None else {"location"}
        self._injections: dict[tuple[str, str], _Injection] = {}
        self._hidden_dependents: dict[str, int | None] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail(self, operation: str, name: str, times: int | None = None) -> None:
        """Make an operation on the named object fail fatally."""
        self._injections[(operation, name)] = _Injection(ProviderFatalError, times)

    def fail_transiently(self, operation: str, name: str, times: int = 1) -> None:
        """Make an operation on the named object fail transiently."""
        self._injections[(operation, name)] = _Injection(ProviderTransientError, times)

    def add_hidden_dependent(self, name: str, refusals: int | None = None) -> None:
        """Refuse deletes of the named object, forever or a number of times."""
        self._hidden_dependents[name] = refusals

    def find(self, resource_type: str, name: str) -> MockObject | None:
        for obj in self.objects.values():
            if obj.resource_type == resource_type and obj.name == name:
                return obj
        return None

    def drift(self, resource_type: str, name: str, **changes: Any) -> None:
        """Change a remote object behind the engine's back."""
        obj = self.find(resource_type, name)
        assert obj is not None, f"no remote object {resource_type}/{name}"
        obj.attributes.update(changes)

    def vanish(self, resource_type: str, name: str) -> None:
        """Remove a remote object behind the engine's back."""
        obj = self.find(resource_type, name)
        assert obj is not None, f"no remote object {resource_type}/{name}"
        del self.objects[obj.remote_id]

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    def immutable_attributes(self, resource_type: str) -> set[str]:
        return set(self._immutable)

    def create(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResult:
        name = str(attributes.get("name", ""))
        with self._lock:
            self._record("create", name)
            if self.find(resource_type, name) is not None:
                raise ProviderFatalError(
                    f"{resource_type}/{name} already exists",
                    resource_type=resource_type,
                    attribute="name",
                    code="Conflict",
                )
            remote_id = f"mock://{resource_type}/{name}/{next(self._ids)}"
            self.objects[remote_id] = MockObject(remote_id, resource_type, copy.deepcopy(attributes))
            return ProviderResult(remote_id=remote_id, outputs=self._outputs(remote_id, name))

    def update(
        self,
        resource_type: str,
        remote_id: str,
        attributes: dict[str, Any],
        changed: list[str],
    ) -> ProviderResult:
        name = str(attributes.get("name", ""))
        with self._lock:
            self._record("update", name)
            obj = self.objects.get(remote_id)
            if obj is None:
                raise ProviderFatalError(
                    f"{remote_id} not found", resource_type=resource_type, remote_id=remote_id
                )
            obj.attributes = copy.deepcopy(attributes)
            return ProviderResult(remote_id=remote_id, outputs=self._outputs(remote_id, name))

    def delete(self, resource_type: str, remote_id: str, attributes: dict[str, Any]) -> None:
        name = str(attributes.get("name", ""))
        with self._lock:
            self._record("delete", name)
            if remote_id not in self.objects:
                return
            if name in self._hidden_dependents:
                remaining = self._hidden_dependents[name]
                if remaining is None or remaining > 0:
                    if remaining is not None:
                        self._hidden_dependents[name] = remaining - 1
                    raise ProviderDependencyConflict(
                        f"{name} is still in use by a resource outside of state",
                        resource_type=resource_type,
                        remote_id=remote_id,
                        code="InUseSubnetCannotBeDeleted",
                    )
                del self._hidden_dependents[name]
            del self.objects[remote_id]

    def read(
        self, resource_type: str, remote_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any] | None:
        name = str(attributes.get("name", ""))
        with self._lock:
            self._record("read", name)
            obj = self.objects.get(remote_id)
            return copy.deepcopy(obj.attributes) if obj is not None else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        injection = self._injections.get((operation, name))
        if injection is None:
            return
        if injection.remaining is not None:
            if injection.remaining <= 0:
                return
            injection.remaining -= 1
        raise injection.error(f"injected {operation} failure for {name}")

    @staticmethod
    def _outputs(remote_id: str, name: str) -> dict[str, Any]:
        return {"id": remote_id, "endpoint": f"https://{name}.example.net"}
