"""Plan computation: desired graph versus recorded state.

For each resource the Planner decides one verb:

    create   no record exists
    update   recorded attributes differ and the provider can change them in place
    replace  a force-replace attribute changed, or the change cannot be made in place
    delete   a record exists that no longer has a declaration (orphan)
    no-op    nothing to do

ORDERING:
- create/update/replace of R waits for the actions of R's dependencies
- delete of orphan O waits for the actions of every resource whose
  recorded dependencies include O
- ties are broken by declaration order, orphans come after declared
  resources in the order they appear in state

A plan is serializable so that it can be reviewed and applied later; it
records the state lineage and serial it was computed against.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .diff import AttributeChange, AttributeDiffer
from .graph import ResourceGraph, topological_order
from .models import ResourceLifecycle
from .policies import PolicySet, ReplaceStrategy
from .providers.base import Provider
from .references import UNKNOWN, Reference, ReferenceKind, lookup_path, resolve_value
from .state import StateRecord

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1


class ActionVerb(str, Enum):
    """What the Executor does for one resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"
    NO_OP = "no-op"


class DriftKind(str, Enum):
    """How a remote object diverged from its record."""

    DELETED = "deleted"
    MODIFIED = "modified"


class PlanConflict(Exception):
    """Raised when a plan cannot be applied safely.

    Either the remote side drifted from the recorded state, or the state
    moved since a saved plan was computed.
    """

    def __init__(self, message: str, conflicts: list[DriftConflict] | None = None) -> None:
        self.conflicts = conflicts or []
        super().__init__(message)


@dataclass
class PlannedAction:
    """One step of a plan.

    Attributes:
        address: Resource address.
        resource_type: Resource type.
        verb: What to do.
        changed_attributes: Top-level attributes that differ.
        predecessors: Addresses whose actions must be terminal first.
        attributes: Desired attributes with resource references still symbolic,
            or the recorded attributes for a delete.
        dependencies: Addresses this resource depends on, recorded on success.
        replace_strategy: Ordering of the two halves of a replace.
        changes: Before/after values for display.
        reason: Why a replace or delete was chosen.
        purge_deposed: Remote IDs of deposed objects to delete first.
    """

    address: str
    resource_type: str
    verb: ActionVerb
    changed_attributes: list[str] = field(default_factory=list)
    predecessors: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    replace_strategy: ReplaceStrategy | None = None
    changes: list[AttributeChange] = field(default_factory=list)
    reason: str = ""
    purge_deposed: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.verb == ActionVerb.NO_OP and not self.purge_deposed

    @property
    def symbol(self) -> str:
        if self.verb == ActionVerb.REPLACE:
            if self.replace_strategy == ReplaceStrategy.DESTROY_BEFORE_CREATE:
                return "-/+"
            return "+/-"
        return {
            ActionVerb.CREATE: "+",
            ActionVerb.UPDATE: "~",
            ActionVerb.DELETE: "-",
            ActionVerb.NO_OP: "~" if self.purge_deposed else " ",
        }[self.verb]

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "verb": self.verb.value,
            "changed_attributes": list(self.changed_attributes),
            "predecessors": list(self.predecessors),
            "attributes": self.attributes,
            "dependencies": list(self.dependencies),
            "replace_strategy": self.replace_strategy.value if self.replace_strategy else None,
            "changes": [change.to_dict() for change in self.changes],
            "reason": self.reason,
            "purge_deposed": list(self.purge_deposed),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlannedAction:
        strategy = data.get("replace_strategy")
        return cls(
            address=data["address"],
            resource_type=data["resource_type"],
            verb=ActionVerb(data["verb"]),
            changed_attributes=list(data.get("changed_attributes", [])),
            predecessors=list(data.get("predecessors", [])),
            attributes=dict(data.get("attributes", {})),
            dependencies=list(data.get("dependencies", [])),
            replace_strategy=ReplaceStrategy(strategy) if strategy else None,
            changes=[AttributeChange.from_dict(c) for c in data.get("changes", [])],
            reason=data.get("reason", ""),
            purge_deposed=list(data.get("purge_deposed", [])),
        )


@dataclass
class DriftConflict:
    """A remote object that no longer matches its record."""

    address: str
    kind: DriftKind
    changes: list[AttributeChange] = field(default_factory=list)

    def describe(self) -> str:
        if self.kind == DriftKind.DELETED:
            return f"{self.address} was deleted outside of graphctl"
        paths = ", ".join(change.path for change in self.changes)
        return f"{self.address} was modified outside of graphctl ({paths})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "kind": self.kind.value,
            "changes": [change.to_dict() for change in self.changes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DriftConflict:
        return cls(
            address=data["address"],
            kind=DriftKind(data["kind"]),
            changes=[AttributeChange.from_dict(c) for c in data.get("changes", [])],
        )


@dataclass
class Plan:
    """Ordered actions plus the state they were computed against."""

    actions: list[PlannedAction] = field(default_factory=list)
    conflicts: list[DriftConflict] = field(default_factory=list)
    # Output name -> {"value": expression, "sensitive": bool}
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    state_lineage: str | None = None
    state_serial: int = 0
    accepted_drift: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def executable_actions(self) -> list[PlannedAction]:
        return [action for action in self.actions if not action.is_noop]

    @property
    def has_changes(self) -> bool:
        return bool(self.executable_actions)

    def action(self, address: str) -> PlannedAction | None:
        for action in self.actions:
            if action.address == address:
                return action
        return None

    def counts(self) -> dict[str, int]:
        counts = {verb.value: 0 for verb in ActionVerb}
        for action in self.actions:
            counts[action.verb.value] += 1
        return counts

    def summary_line(self) -> str:
        counts = self.counts()
        return (
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['replace']} to replace, {counts['delete']} to delete, "
            f"{counts['no-op']} unchanged."
        )

    def render(self) -> str:
        """Human-readable plan summary."""
        lines: list[str] = []
        for action in self.executable_actions:
            header = f"  {action.symbol} {action.address}"
            if action.reason:
                header += f" ({action.reason})"
            lines.append(header)
            for change in action.changes:
                lines.append(
                    f"      {change.path}: {_render_value(change.before)} -> "
                    f"{_render_value(change.after)}"
                )
            for remote_id in action.purge_deposed:
                lines.append(f"      purge deposed object {remote_id}")

        if self.conflicts:
            if lines:
                lines.append("")
            lines.append("Drift detected:")
            for conflict in self.conflicts:
                lines.append(f"  ! {conflict.describe()}")
            if not self.accepted_drift:
                lines.append("Re-run with --accept-drift to plan against observed reality.")

        if lines:
            lines.append("")
        lines.append(self.summary_line() if self.has_changes else "No changes. " + self.summary_line())
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": PLAN_FORMAT_VERSION,
            "created_at": self.created_at.isoformat(),
            "state_lineage": self.state_lineage,
            "state_serial": self.state_serial,
            "accepted_drift": self.accepted_drift,
            "actions": [action.to_dict() for action in self.actions],
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        version = data.get("format_version")
        if version != PLAN_FORMAT_VERSION:
            raise ValueError(f"Unsupported plan format version: {version}")
        return cls(
            actions=[PlannedAction.from_dict(a) for a in data.get("actions", [])],
            conflicts=[DriftConflict.from_dict(c) for c in data.get("conflicts", [])],
            outputs=dict(data.get("outputs", {})),
            state_lineage=data.get("state_lineage"),
            state_serial=int(data.get("state_serial", 0)),
            accepted_drift=bool(data.get("accepted_drift", False)),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


class Planner:
    """Computes a Plan from a ResourceGraph and the recorded state."""

    def __init__(
        self,
        provider: Provider,
        policies: PolicySet | None = None,
        differ: AttributeDiffer | None = None,
    ) -> None:
        self._provider = provider
        self._policies = policies or PolicySet()
        self._differ = differ or AttributeDiffer()

    def plan(
        self,
        graph: ResourceGraph,
        records: dict[str, StateRecord],
        observed: dict[str, dict[str, Any] | None] | None = None,
        accept_drift: bool = False,
    ) -> Plan:
        """Compute the ordered actions that converge state on the graph.

        Args:
            graph: Validated desired graph.
            records: Recorded state keyed by address, in state order.
            observed: Remote attributes per refreshed address, None for
                objects that vanished. Addresses missing here were not refreshed.
            accept_drift: Use observed reality as the diff baseline instead of
                reporting conflicts as blocking.

        Returns:
            Plan with actions in executable order and any drift conflicts.
        """
        conflicts, baseline = self._detect_drift(graph, records, observed or {}, accept_drift)

        actions: dict[str, PlannedAction] = {}
        desired_by_address: dict[str, dict[str, Any]] = {}

        for address in graph.topological_sort():
            node = graph.nodes[address]
            record = baseline.get(address)
            desired = resolve_value(
                node.attributes,
                lambda ref: self._plan_time_value(ref, actions, baseline, desired_by_address),
            )
            desired_by_address[address] = desired
            action = self._plan_declared(node.type, address, desired, record, node.spec.lifecycle)
            action.attributes = node.attributes
            action.dependencies = list(node.depends_on)
            action.predecessors = list(node.depends_on)
            original = records.get(address)
            if original is not None and original.deposed and action.verb != ActionVerb.CREATE:
                action.purge_deposed = [deposed.remote_id for deposed in original.deposed]
            actions[address] = action

        for address, record in records.items():
            if address in graph:
                continue
            actions[address] = PlannedAction(
                address=address,
                resource_type=record.type,
                verb=ActionVerb.DELETE,
                changed_attributes=sorted(record.attributes),
                attributes=record.attributes,
                dependencies=list(record.dependencies),
                changes=[AttributeChange(k, v, None) for k, v in record.attributes.items()],
                reason="no longer declared",
            )

        # An orphan's delete waits for everything that previously depended on it
        for address, record in records.items():
            for dep in record.dependencies:
                orphan = actions.get(dep)
                if (
                    orphan is not None
                    and orphan.verb == ActionVerb.DELETE
                    and address in actions
                    and address not in orphan.predecessors
                ):
                    orphan.predecessors.append(address)

        # Removing an object waits for the deletes of orphans that depended on it
        for address, record in records.items():
            if address in graph:
                continue
            for dep in record.dependencies:
                target = actions.get(dep)
                if (
                    target is not None
                    and target.verb in (ActionVerb.DELETE, ActionVerb.REPLACE)
                    and address not in target.predecessors
                ):
                    target.predecessors.append(address)

        priority = {address: node.index for address, node in graph.nodes.items()}
        for position, address in enumerate(records):
            priority.setdefault(address, len(graph) + position)
        order = topological_order(
            {address: action.predecessors for address, action in actions.items()}, priority
        )

        plan = Plan(
            actions=[actions[address] for address in order],
            conflicts=conflicts,
            accepted_drift=accept_drift,
        )
        logger.info(
            "Computed plan",
            extra={"counts": plan.counts(), "conflicts": len(plan.conflicts)},
        )
        return plan

    def _detect_drift(
        self,
        graph: ResourceGraph,
        records: dict[str, StateRecord],
        observed: dict[str, dict[str, Any] | None],
        accept_drift: bool,
    ) -> tuple[list[DriftConflict], dict[str, StateRecord | None]]:
        conflicts: list[DriftConflict] = []
        baseline: dict[str, StateRecord | None] = dict(records)

        for address, record in records.items():
            if address not in observed:
                continue
            remote = observed[address]
            if remote is None:
                conflicts.append(DriftConflict(address, DriftKind.DELETED))
                if accept_drift and address in graph:
                    baseline[address] = None
                continue

            ignore = graph.nodes[address].spec.lifecycle.ignore_changes if address in graph else []
            changes = self._differ.drift(record.type, record.attributes, remote, ignore)
            if not changes:
                continue
            conflicts.append(DriftConflict(address, DriftKind.MODIFIED, changes))
            if accept_drift:
                merged = dict(record.attributes)
                for change in changes:
                    merged[change.path] = change.after
                baseline[address] = record.model_copy(update={"attributes": merged})

        for conflict in conflicts:
            logger.warning(
                "Drift detected",
                extra={
                    "address": conflict.address,
                    "kind": conflict.kind.value,
                    "paths": [change.path for change in conflict.changes],
                },
            )
        return conflicts, baseline

    def _plan_declared(
        self,
        resource_type: str,
        address: str,
        desired: dict[str, Any],
        record: StateRecord | None,
        lifecycle: ResourceLifecycle,
    ) -> PlannedAction:
        if record is None:
            return PlannedAction(
                address=address,
                resource_type=resource_type,
                verb=ActionVerb.CREATE,
                changed_attributes=list(desired),
                changes=[AttributeChange(k, None, v) for k, v in desired.items()],
            )

        changes = self._differ.diff(
            resource_type, desired, record.attributes, ignore=lifecycle.ignore_changes
        )
        if not changes:
            return PlannedAction(address=address, resource_type=resource_type, verb=ActionVerb.NO_OP)

        changed = [change.path for change in changes]
        policy = self._policies.resolve(resource_type)
        forced = [path for path in changed if path in set(lifecycle.force_replace) | policy.force_replace]

        if forced:
            reason = f"forces replacement: {', '.join(forced)}"
        elif not self._provider.supports_in_place_update(resource_type, changed):
            reason = f"cannot update in place: {', '.join(changed)}"
        else:
            return PlannedAction(
                address=address,
                resource_type=resource_type,
                verb=ActionVerb.UPDATE,
                changed_attributes=changed,
                changes=changes,
            )

        strategy = lifecycle.replace_strategy or policy.replace_strategy
        identity = self._provider.identity_attributes(resource_type)
        if strategy == ReplaceStrategy.CREATE_BEFORE_DESTROY and not identity & set(changed):
            # Same identity on both objects, they cannot coexist
            strategy = ReplaceStrategy.DESTROY_BEFORE_CREATE
            reason += "; identity unchanged, destroying first"

        return PlannedAction(
            address=address,
            resource_type=resource_type,
            verb=ActionVerb.REPLACE,
            changed_attributes=changed,
            changes=changes,
            replace_strategy=strategy,
            reason=reason,
        )

    def _plan_time_value(
        self,
        reference: Reference,
        actions: dict[str, PlannedAction],
        baseline: dict[str, StateRecord | None],
        desired_by_address: dict[str, dict[str, Any]],
    ) -> Any:
        if reference.kind != ReferenceKind.RESOURCE:
            return UNKNOWN
        producer = actions.get(reference.target)
        record = baseline.get(reference.target)
        if producer is None or record is None:
            return UNKNOWN
        if producer.verb in (ActionVerb.CREATE, ActionVerb.REPLACE):
            return UNKNOWN

        if producer.verb == ActionVerb.UPDATE:
            # Inputs are known; provider outputs may change with the update
            try:
                return lookup_path(desired_by_address[reference.target], reference.attribute)
            except KeyError:
                return UNKNOWN

        try:
            return record.lookup(reference.attribute)
        except KeyError:
            return UNKNOWN


def _render_value(value: Any) -> str:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if value is None:
        return "null"
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(value)
