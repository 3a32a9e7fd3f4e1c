"""Resource dependency graph construction and validation.

This module turns the declared resources into a validated dependency graph:
1. Derived names and context tags are injected into each resource
2. Variable and context references are substituted
3. Explicit depends_on and implicit reference edges are collected
4. Cycles are rejected and a deterministic topological order is produced

DESIGN PHILOSOPHY:
- Edges point from a resource to the resources it depends on
- Resource references stay symbolic until plan or apply time
- Ties in the topological order are broken by declaration order, so the
  same document always yields the same order

EXAMPLE:
```yaml
resources:
  - type: Microsoft.Resources/resourceGroups
    name: core
  - type: Microsoft.Storage/storageAccounts
    name: assets
    attributes:
      resource_group: ${Microsoft.Resources/resourceGroups::core.name}
```
"""

from __future__ import annotations

import copy
import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .models import Context, OutputSpec, ResourceSpec
from .policies import PolicySet
from .references import (
    Reference,
    ReferenceKind,
    ReferenceSyntaxError,
    find_references,
    resolve_value,
)

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when the resource graph is invalid."""

    pass


class CyclicGraphError(GraphError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, participants: list[str]) -> None:
        self.participants = participants
        super().__init__(f"Dependency cycle detected involving: {participants}")


class UnknownReferenceError(GraphError):
    """Raised when a resource refers to something that is not declared."""

    def __init__(self, address: str, attribute_path: str, target: str) -> None:
        self.address = address
        self.attribute_path = attribute_path
        self.target = target
        super().__init__(f"{address}: {attribute_path} references undeclared '{target}'")


class DuplicateResourceError(GraphError):
    """Raised when two resources share an address."""

    pass


@dataclass
class GraphNode:
    """A resource in the dependency graph.

    Attributes:
        spec: The declared resource.
        index: Position in the document, used to break ordering ties.
        attributes: Attributes with name, tags, variables and context applied.
        depends_on: Explicit dependencies first, then implicit ones.
        references: (attribute path, reference) for each resource reference.
    """

    spec: ResourceSpec
    index: int
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    references: list[tuple[str, Reference]] = field(default_factory=list)

    @property
    def address(self) -> str:
        return self.spec.address

    @property
    def type(self) -> str:
        return self.spec.type


@dataclass
class ResourceGraph:
    """Directed acyclic graph of declared resources."""

    nodes: dict[str, GraphNode] = field(default_factory=dict)

    def __contains__(self, address: object) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependents(self, address: str) -> list[str]:
        """Return addresses that depend directly on the given address."""
        return [
            node.address for node in self.nodes.values() if address in node.depends_on
        ]

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicGraphError: If a cycle is detected.
        """
        self.topological_sort()

    def topological_sort(self) -> list[str]:
        """Return addresses in dependency order (dependencies first).

        Returns:
            List of addresses, ties broken by declaration order.

        Raises:
            CyclicGraphError: If a cycle is detected.
        """
        return topological_order(
            {address: node.depends_on for address, node in self.nodes.items()},
            {address: node.index for address, node in self.nodes.items()},
        )


def topological_order(edges: dict[str, list[str]], priority: dict[str, int]) -> list[str]:
    """Kahn's algorithm over address -> prerequisites edges.

    Among nodes that are ready at the same time, the lowest priority value
    comes first. Prerequisites that are not nodes themselves are ignored.

    Raises:
        CyclicGraphError: If the edges contain a cycle.
    """
    dependents: dict[str, list[str]] = {node: [] for node in edges}
    in_degree: dict[str, int] = {node: 0 for node in edges}

    for node, prerequisites in edges.items():
        for dep in set(prerequisites):
            if dep in dependents:
                dependents[dep].append(node)
                in_degree[node] += 1

    queue = [(priority[node], node) for node, degree in in_degree.items() if degree == 0]
    heapq.heapify(queue)
    result: list[str] = []

    while queue:
        _, current = heapq.heappop(queue)
        result.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(queue, (priority[dependent], dependent))

    if len(result) != len(edges):
        raise CyclicGraphError(_cycle_participants(edges, set(result), priority))
    return result


def _cycle_participants(
    edges: dict[str, list[str]], processed: set[str], priority: dict[str, int]
) -> list[str]:
    # Nodes left over by Kahn are cycle members plus nodes downstream of a
    # cycle. Peeling nodes nobody else depends on leaves the cycle members.
    remaining = {node for node in edges if node not in processed}
    changed = True
    while changed:
        changed = False
        needed = {dep for node in remaining for dep in edges[node] if dep in remaining}
        for node in list(remaining):
            if node not in needed:
                remaining.discard(node)
                changed = True
    return sorted(remaining, key=lambda node: priority[node])


def build_graph(
    specs: Iterable[ResourceSpec],
    context: Context,
    variables: dict[str, Any],
    policies: PolicySet | None = None,
) -> ResourceGraph:
    """Build and validate the dependency graph for a set of resources.

    Args:
        specs: Declared resources in document order.
        context: Deployment context for names, tags and context references.
        variables: Resolved input variable values.
        policies: Policies deciding which resource types take tags.

    Returns:
        Validated ResourceGraph.

    Raises:
        DuplicateResourceError: If two resources share an address.
        UnknownReferenceError: If a reference or depends_on target is undeclared.
        CyclicGraphError: If the dependencies contain a cycle.
        GraphError: If a reference expression is malformed.
    """
    policies = policies or PolicySet()
    graph = ResourceGraph()

    for index, spec in enumerate(specs):
        if spec.address in graph.nodes:
            raise DuplicateResourceError(f"Duplicate resource address: {spec.address}")
        graph.nodes[spec.address] = GraphNode(spec=spec, index=index)

    for node in graph.nodes.values():
        attributes = _with_context(node.spec, context, policies)
        try:
            references = list(find_references(attributes))
        except ReferenceSyntaxError as e:
            raise GraphError(f"{node.address}: {e}") from e

        implicit: list[str] = []
        for path, reference in references:
            if reference.kind == ReferenceKind.VARIABLE and reference.target not in variables:
                raise UnknownReferenceError(node.address, path, f"var.{reference.target}")
            if reference.kind == ReferenceKind.CONTEXT:
                try:
                    context.lookup(reference.target)
                except KeyError:
                    raise UnknownReferenceError(
                        node.address, path, f"context.{reference.target}"
                    ) from None
            if reference.kind == ReferenceKind.RESOURCE:
                if reference.target == node.address:
                    raise CyclicGraphError([node.address])
                if reference.target not in graph.nodes:
                    raise UnknownReferenceError(node.address, path, reference.target)
                node.references.append((path, reference))
                if reference.target not in implicit:
                    implicit.append(reference.target)

        for position, dep in enumerate(node.spec.depends_on):
            if dep not in graph.nodes:
                raise UnknownReferenceError(node.address, f"depends_on[{position}]", dep)
            if dep == node.address:
                raise CyclicGraphError([node.address])

        node.attributes = resolve_value(
            attributes, lambda ref: _resolve_static(ref, context, variables)
        )
        node.depends_on = list(dict.fromkeys([*node.spec.depends_on, *implicit]))

    graph.validate()
    logger.debug(
        "Built resource graph",
        extra={
            "resource_count": len(graph),
            "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph


def _with_context(spec: ResourceSpec, context: Context, policies: PolicySet) -> dict[str, Any]:
    attributes = copy.deepcopy(spec.attributes)
    attributes.setdefault("name", context.resource_name(spec.name))
    if context.tag_resources and policies.resolve(spec.type).supports_tags:
        declared = attributes.get("tags") or {}
        if isinstance(declared, dict):
            # Declared tags win over context tags
            attributes["tags"] = {**context.common_tags(), **declared}
    return attributes


def _resolve_static(reference: Reference, context: Context, variables: dict[str, Any]) -> Any:
    if reference.kind == ReferenceKind.VARIABLE:
        return variables[reference.target]
    if reference.kind == ReferenceKind.CONTEXT:
        return context.lookup(reference.target)
    # Resource references stay symbolic
    return str(reference)


def build_outputs(
    outputs: dict[str, OutputSpec],
    graph: ResourceGraph,
    context: Context,
    variables: dict[str, Any],
) -> dict[str, dict[str, Any]]:
    """Validate output expressions and substitute variables and context.

    Resource references stay symbolic; they are resolved against the State
    Store after apply.

    Returns:
        Output name -> {"value": expression, "sensitive": bool}.

    Raises:
        UnknownReferenceError: If an output refers to something undeclared.
    """
    prepared: dict[str, dict[str, Any]] = {}
    for name, output in outputs.items():
        label = f"output.{name}"
        try:
            references = list(find_references(output.value, "value"))
        except ReferenceSyntaxError as e:
            raise GraphError(f"{label}: {e}") from e

        for path, reference in references:
            if reference.kind == ReferenceKind.VARIABLE and reference.target not in variables:
                raise UnknownReferenceError(label, path, f"var.{reference.target}")
            if reference.kind == ReferenceKind.CONTEXT:
                try:
                    context.lookup(reference.target)
                except KeyError:
                    raise UnknownReferenceError(label, path, f"context.{reference.target}") from None
            if reference.kind == ReferenceKind.RESOURCE and reference.target not in graph:
                raise UnknownReferenceError(label, path, reference.target)

        prepared[name] = {
            "value": resolve_value(
                output.value, lambda ref: _resolve_static(ref, context, variables)
            ),
            "sensitive": output.sensitive,
        }
    return prepared
