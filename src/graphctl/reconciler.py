"""Plan, apply and destroy cycles.

A cycle:
1. Load and validate the configuration document, build the graph
2. Take the State Store lock (heartbeat refreshed in the background)
3. Refresh: read every recorded resource from the provider
4. Plan, or check that a saved plan still matches the state
5. Execute the plan, or run the Teardown Sequencer on destroy
6. Resolve and record outputs
7. Log one provenance record

Errors never escape a cycle; they are returned on the CycleResult so the
caller can map them to exit codes. The State Store always reflects what
succeeded remotely.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import Config, ConfigurationError
from .executor import ExecutionSummary, Executor, RetryPolicy, call_with_retry
from .graph import GraphError, ResourceGraph, build_graph, build_outputs
from .models import ConfigDocument
from .planner import Plan, PlanConflict, Planner
from .policies import PolicySet
from .provenance import ChangeProvenanceSummary, CycleProvenance, get_provenance_logger
from .providers.base import Provider, ProviderError
from .providers.registry import create_provider
from .references import Reference, ReferenceKind, ReferenceResolutionError, resolve_value
from .spec_loader import SpecLoadError, load_document, resolve_variables
from .state import OutputValue, StateError, StateRecord, StateStore
from .teardown import DependencyConflictOnDelete, TeardownResult, TeardownSequencer, teardown_order

logger = logging.getLogger(__name__)

ApplyConfirmation = Callable[[Plan], bool]
DestroyConfirmation = Callable[[list[str]], bool]


@dataclass
class CycleResult:
    """Result of a single plan, apply or destroy cycle."""

    operation: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan: Plan | None = None
    execution: ExecutionSummary | None = None
    teardown: TeardownResult | None = None
    outputs: dict[str, OutputValue] = field(default_factory=dict)
    # The operator answered no at the confirmation prompt
    declined: bool = False
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the cycle succeeded.

        A cycle with failed, skipped or cancelled actions is not a success
        even though it raised nothing.
        """
        if self.error is not None:
            return False
        if self.execution is not None and not self.execution.success:
            return False
        if self.teardown is not None and not self.teardown.success:
            return False
        return True


@dataclass
class _Prepared:
    document: ConfigDocument
    variables: dict[str, Any]
    policies: PolicySet
    graph: ResourceGraph
    outputs: dict[str, dict[str, Any]]


class Reconciler:
    """Runs cycles against one configuration document and one State Store."""

    def __init__(
        self,
        config: Config,
        provider: Provider | None = None,
        store: StateStore | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Validated engine configuration.
            provider: Provider to use; built from config on first use if None.
            store: State Store to use; opened at config.state_path if None.
        """
        self._config = config
        self._provider = provider
        self._store = store or StateStore(config.state_path, config.lock_timeout_seconds)
        self._retry_policy = RetryPolicy.from_config(config)
        self._executor: Executor | None = None
        self._sequencer: TeardownSequencer | None = None
        self._abort_requested = False

    @property
    def config(self) -> Config:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def provider(self) -> Provider:
        """The provider, built on first use.

        Raises:
            ConfigurationError: If the provider cannot be built from config.
        """
        if self._provider is None:
            self._provider = create_provider(self._config)
        return self._provider

    def abort(self) -> None:
        """Stop starting new provider calls. In-flight calls finish."""
        logger.warning("Abort requested")
        self._abort_requested = True
        if self._executor is not None:
            self._executor.abort()
        if self._sequencer is not None:
            self._sequencer.abort()

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def plan(
        self,
        var_overrides: dict[str, Any] | None = None,
        refresh: bool | None = None,
        accept_drift: bool = False,
    ) -> CycleResult:
        """Compute a plan without changing anything.

        Args:
            var_overrides: Variable values from the command line.
            refresh: Read recorded resources for drift; defaults to config.refresh.
            accept_drift: Plan against observed reality.
        """
        result = CycleResult(operation="plan")
        provenance = self._start_provenance("plan")
        try:
            prepared = self._prepare(var_overrides or {}, provenance)
            async with self._locked("plan", provenance):
                result.plan = await self._compute_plan(prepared, refresh, accept_drift)
            self._record_plan(provenance, result.plan)
        except Exception as e:
            result.error = e
        finally:
            self._finish(result, provenance)
        return result

    async def apply(
        self,
        plan: Plan | None = None,
        var_overrides: dict[str, Any] | None = None,
        accept_drift: bool = False,
        confirm: ApplyConfirmation | None = None,
    ) -> CycleResult:
        """Apply a saved plan, or plan and apply in one cycle.

        Args:
            plan: A saved plan. It must have been computed against the
                current state serial and lineage.
            var_overrides: Variable values, used when no plan is given.
            accept_drift: Plan against observed reality, when no plan is given.
            confirm: Called with the plan before anything changes; a False
                return ends the cycle without changes.
        """
        result = CycleResult(operation="apply")
        provenance = self._start_provenance("apply")
        try:
            prepared = None if plan is not None else self._prepare(var_overrides or {}, provenance)
            async with self._locked("apply", provenance) as store:
                if plan is None:
                    assert prepared is not None
                    plan = await self._compute_plan(prepared, None, accept_drift)
                else:
                    self._check_plan_is_current(plan, store)
                result.plan = plan
                self._record_plan(provenance, plan)

                if plan.conflicts and not plan.accepted_drift:
                    raise PlanConflict(
                        f"Drift detected on {len(plan.conflicts)} resource(s); "
                        f"re-plan with --accept-drift to converge on observed reality",
                        plan.conflicts,
                    )

                if plan.has_changes and confirm is not None:
                    if not await self._confirm(confirm, plan):
                        result.declined = True
                        logger.info("Apply declined by operator")
                        return result

                executor = Executor(
                    self.provider,
                    store,
                    retry_policy=self._retry_policy,
                    parallelism=self._config.parallelism,
                )
                self._executor = executor
                if self._abort_requested:
                    executor.abort()
                try:
                    result.execution = await executor.execute(plan)
                except StateError:
                    result.execution = executor.summary
                    if result.execution is not None:
                        self._record_execution(provenance, result.execution)
                    provenance.serial_after = store.serial
                    raise
                self._record_execution(provenance, result.execution)

                if result.execution.success:
                    result.outputs = self._commit_outputs(plan, store)
                else:
                    logger.warning(
                        "Outputs not updated, some actions did not succeed",
                        extra={"counts": result.execution.counts()},
                    )
                    result.outputs = store.outputs()
                provenance.serial_after = store.serial
        except Exception as e:
            result.error = e
        finally:
            self._executor = None
            self._finish(result, provenance)
        return result

    async def destroy(
        self,
        hints: Iterable[str] = (),
        dry_run: bool = False,
        confirm: DestroyConfirmation | None = None,
    ) -> CycleResult:
        """Delete everything recorded in state.

        Args:
            hints: Addresses to delete first; appended to the configuration
                document's teardown.order.
            dry_run: Compute and return the order without calling the provider.
            confirm: Called with the deletion order; a False return ends the
                cycle without changes.
        """
        result = CycleResult(operation="destroy")
        provenance = self._start_provenance("destroy")
        try:
            all_hints = [*self._teardown_hints(provenance), *hints]
            async with self._locked("destroy", provenance) as store:
                order = teardown_order(store.records(), all_hints)
                provenance.change_summary = ChangeProvenanceSummary(delete_count=len(order))
                if dry_run:
                    result.teardown = TeardownResult(order=order, dry_run=True)
                    return result
                if not order:
                    result.teardown = TeardownResult()
                    return result

                if confirm is not None and not await self._confirm(confirm, order):
                    result.declined = True
                    logger.info("Destroy declined by operator")
                    return result

                sequencer = TeardownSequencer(
                    self.provider,
                    store,
                    retry_policy=self._retry_policy,
                    max_rounds=self._config.teardown_max_rounds,
                )
                self._sequencer = sequencer
                if self._abort_requested:
                    sequencer.abort()
                result.teardown = await sequencer.run(all_hints)
                provenance.change_summary.failed_count = len(result.teardown.failed)
                provenance.change_summary.skipped_count = len(result.teardown.skipped)
                provenance.change_summary.cancelled_count = len(result.teardown.cancelled)
                provenance.serial_after = store.serial

                if result.teardown.stuck:
                    raise DependencyConflictOnDelete(
                        result.teardown.stuck,
                        {a: result.teardown.errors.get(a, "") for a in result.teardown.stuck},
                    )
        except Exception as e:
            result.error = e
        finally:
            self._sequencer = None
            self._finish(result, provenance)
        return result

    def output(self, name: str | None = None) -> dict[str, OutputValue]:
        """Read recorded outputs. Takes no lock.

        Raises:
            KeyError: If name is given and no such output is recorded.
            StateError: If the state document cannot be read.
        """
        self._store.load()
        outputs = self._store.outputs()
        if name is None:
            return outputs
        if name not in outputs:
            raise KeyError(f"No output named '{name}'. Recorded outputs: {sorted(outputs)}")
        return {name: outputs[name]}

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _prepare(self, var_overrides: dict[str, Any], provenance: CycleProvenance) -> _Prepared:
        document = load_document(self._config.config_path)
        provenance.project = document.context.project
        provenance.environment = document.context.environment
        variables = resolve_variables(document, var_overrides)
        policies = PolicySet(document.policies)
        graph = build_graph(document.resources, document.context, variables, policies)
        outputs = build_outputs(document.outputs, graph, document.context, variables)
        return _Prepared(document, variables, policies, graph, outputs)

    async def _compute_plan(
        self, prepared: _Prepared, refresh: bool | None, accept_drift: bool
    ) -> Plan:
        records = self._store.records()
        if refresh is None:
            refresh = self._config.refresh
        observed = await self._refresh(records) if refresh and records else None

        planner = Planner(self.provider, policies=prepared.policies)
        plan = planner.plan(prepared.graph, records, observed=observed, accept_drift=accept_drift)
        plan.outputs = prepared.outputs
        plan.state_lineage = self._store.lineage
        plan.state_serial = self._store.serial
        return plan

    async def _refresh(self, records: dict[str, StateRecord]) -> dict[str, dict[str, Any] | None]:
        """Read every recorded resource from the provider."""
        semaphore = asyncio.Semaphore(self._config.parallelism)

        async def read(address: str, record: StateRecord) -> tuple[str, dict[str, Any] | None]:
            observed = await call_with_retry(
                self.provider.read,
                record.type,
                record.remote_id,
                record.attributes,
                policy=self._retry_policy,
                semaphore=semaphore,
                address=address,
                operation="read",
            )
            return address, observed

        logger.info("Refreshing recorded resources", extra={"resource_count": len(records)})
        results = await asyncio.gather(*(read(a, r) for a, r in records.items()))
        return dict(results)

    def _check_plan_is_current(self, plan: Plan, store: StateStore) -> None:
        if plan.state_lineage != store.lineage or plan.state_serial != store.serial:
            raise PlanConflict(
                "Saved plan is stale: it was computed against state "
                f"{plan.state_lineage}@{plan.state_serial}, current state is "
                f"{store.lineage}@{store.serial}. Plan again."
            )

    def _commit_outputs(self, plan: Plan, store: StateStore) -> dict[str, OutputValue]:
        """Resolve output expressions against the State Store and record them."""
        outputs: dict[str, OutputValue] = {}
        for name, output in plan.outputs.items():
            value = resolve_value(
                output["value"], lambda ref, n=name: self._resolve_output(n, ref, store)
            )
            outputs[name] = OutputValue(value=value, sensitive=bool(output.get("sensitive")))

        current = store.outputs()
        if {k: v.model_dump() for k, v in current.items()} != {
            k: v.model_dump() for k, v in outputs.items()
        }:
            store.set_outputs(outputs)
        return outputs

    @staticmethod
    def _resolve_output(name: str, reference: Reference, store: StateStore) -> Any:
        label = f"output.{name}"
        if reference.kind != ReferenceKind.RESOURCE:
            raise ReferenceResolutionError(label, reference, "unresolved reference in saved plan")
        record = store.get(reference.target)
        if record is None:
            raise ReferenceResolutionError(label, reference, f"{reference.target} has no state record")
        try:
            return record.lookup(reference.attribute)
        except KeyError:
            raise ReferenceResolutionError(
                label, reference, f"{reference.target} has no attribute '{reference.attribute}'"
            ) from None

    def _teardown_hints(self, provenance: CycleProvenance) -> list[str]:
        # Destroy works from state alone; the document only contributes hints
        if not self._config.config_path.exists():
            return []
        try:
            document = load_document(self._config.config_path)
        except SpecLoadError as e:
            logger.warning(
                "Ignoring teardown hints, configuration document did not load",
                extra={"error": str(e)},
            )
            return []
        provenance.project = document.context.project
        provenance.environment = document.context.environment
        return list(document.teardown.order)

    async def _confirm(self, confirm: Callable[[Any], bool], subject: Any) -> bool:
        # Prompts block; keep the lock heartbeat running meanwhile
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, confirm, subject)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _locked(self, operation: str, provenance: CycleProvenance) -> AsyncIterator[StateStore]:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            functools.partial(
                self._store.acquire, operation, wait_seconds=self._config.lock_wait_seconds
            ),
        )
        provenance.state_lineage = self._store.lineage
        provenance.serial_before = self._store.serial
        provenance.serial_after = self._store.serial
        heartbeat = asyncio.create_task(self._heartbeat())
        try:
            yield self._store
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self._store.release()

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._config.lock_heartbeat_seconds)
            try:
                self._store.heartbeat()
            except StateError as e:
                logger.error("Lost the state lock, aborting", extra={"error": str(e)})
                self.abort()
                return

    # ------------------------------------------------------------------
    # Provenance
    # ------------------------------------------------------------------

    def _start_provenance(self, operation: str) -> CycleProvenance:
        return get_provenance_logger().create_provenance(
            operation=operation,
            provider=self._config.provider,
            config_path=str(self._config.config_path),
        )

    @staticmethod
    def _record_plan(provenance: CycleProvenance, plan: Plan) -> None:
        provenance.change_summary = ChangeProvenanceSummary.from_plan_counts(plan.counts())
        provenance.conflicts = len(plan.conflicts)
        provenance.drift_detected = bool(plan.conflicts)

    @staticmethod
    def _record_execution(provenance: CycleProvenance, summary: ExecutionSummary) -> None:
        provenance.change_summary.failed_count = len(summary.failed)
        provenance.change_summary.skipped_count = len(summary.skipped)
        provenance.change_summary.cancelled_count = len(summary.cancelled)

    def _finish(self, result: CycleResult, provenance: CycleProvenance) -> None:
        result.end_time = datetime.now(UTC)
        provenance.duration_seconds = result.duration_seconds
        if result.error is not None:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__
            logger.error(
                "Cycle failed",
                extra={
                    "operation": result.operation,
                    "error": str(result.error),
                    "error_type": type(result.error).__name__,
                },
                exc_info=result.error if _is_unexpected(result.error) else None,
            )
        get_provenance_logger().log_provenance(provenance)


def _is_unexpected(error: Exception) -> bool:
    expected = (
        ConfigurationError,
        DependencyConflictOnDelete,
        GraphError,
        PlanConflict,
        ProviderError,
        ReferenceResolutionError,
        SpecLoadError,
        StateError,
    )
    return not isinstance(error, expected)
