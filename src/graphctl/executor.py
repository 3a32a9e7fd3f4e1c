"""Plan execution with bounded concurrency and typed retries.

Every action runs in its own task that waits until all of its predecessors
are terminal. Provider calls are blocking and run in the default thread
pool; an asyncio.Semaphore bounds how many run at once.

FAILURE HANDLING:
- Transient provider errors are retried with exponential backoff and
  jitter; the worker slot is released while sleeping
- A fatal error fails the action; every action downstream of it is
  skipped, independent branches continue
- abort() stops new provider calls; in-flight calls finish, unstarted
  actions are cancelled
- A State Store error (lock lost, concurrent writer) aborts the run and is
  raised from execute() once in-flight calls have finished
- There is no automatic rollback; the State Store always reflects what
  succeeded remotely
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .config import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PARALLELISM,
    DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
    DEFAULT_RETRY_BACKOFF_MAX_SECONDS,
    Config,
)
from .models import split_address
from .planner import ActionVerb, Plan, PlannedAction
from .policies import ReplaceStrategy
from .providers.base import Provider, ProviderError, ProviderResult, ProviderTransientError
from .references import Reference, ReferenceKind, ReferenceResolutionError, resolve_value
from .state import DeposedObject, StateError, StateRecord, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ActionStatus(str, Enum):
    """Terminal and non-terminal states of a planned action."""

    PENDING = "pending"
    APPLIED = "applied"
    NO_OP = "no-op"
    FAILED = "failed"
    SKIPPED = "skipped-due-to-dependency-failure"
    CANCELLED = "cancelled"


class ActionCancelled(Exception):
    """Raised instead of a provider call once the run has been aborted."""


UNSUCCESSFUL_STATUSES: frozenset[ActionStatus] = frozenset(
    {ActionStatus.FAILED, ActionStatus.SKIPPED, ActionStatus.CANCELLED}
)


@dataclass
class ActionOutcome:
    """What happened to one action."""

    address: str
    verb: ActionVerb
    status: ActionStatus = ActionStatus.PENDING
    error: Exception | None = None
    attempts: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "verb": self.verb.value,
            "status": self.status.value,
            "error": str(self.error) if self.error else None,
            "attempts": self.attempts,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class ExecutionSummary:
    """Outcomes of every action in a plan, in plan order."""

    outcomes: dict[str, ActionOutcome] = field(default_factory=dict)
    aborted: bool = False

    def _with_status(self, status: ActionStatus) -> list[str]:
        return [a for a, outcome in self.outcomes.items() if outcome.status == status]

    @property
    def applied(self) -> list[str]:
        return self._with_status(ActionStatus.APPLIED)

    @property
    def failed(self) -> list[str]:
        return self._with_status(ActionStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with_status(ActionStatus.SKIPPED)

    @property
    def cancelled(self) -> list[str]:
        return self._with_status(ActionStatus.CANCELLED)

    @property
    def unchanged(self) -> list[str]:
        return self._with_status(ActionStatus.NO_OP)

    @property
    def success(self) -> bool:
        return not any(o.status in UNSUCCESSFUL_STATUSES for o in self.outcomes.values())

    def counts(self) -> dict[str, int]:
        return {
            "applied": len(self.applied),
            "skipped-due-to-dependency-failure": len(self.skipped),
            "failed": len(self.failed),
            "cancelled": len(self.cancelled),
            "no-op": len(self.unchanged),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "aborted": self.aborted,
            "counts": self.counts(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes.values()],
        }


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter for transient provider errors."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    jitter_ratio: float = 0.2
    timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            backoff_base_seconds=config.retry_backoff_base_seconds,
            backoff_max_seconds=config.retry_backoff_max_seconds,
            timeout_seconds=config.provider_timeout_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        backoff = min(
            self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds
        )
        jitter = random.uniform(0, backoff * self.jitter_ratio)
        return backoff + jitter


async def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy,
    semaphore: asyncio.Semaphore,
    address: str,
    operation: str,
    outcome: ActionOutcome | None = None,
    cancelled: Callable[[], bool] | None = None,
) -> T:
    """Run a blocking provider call in a worker thread, retrying transient errors.

    cancelled is checked once a worker slot is held, so an abort requested
    while the call was queued or backing off prevents it from starting.

    Raises:
        ActionCancelled: If cancelled() is true before the call starts.
        ProviderError: The last error once attempts are exhausted, or the
            first non-transient error.
    """
    loop = asyncio.get_running_loop()
    attempt = 0
    while True:
        attempt += 1
        if outcome is not None:
            outcome.attempts += 1
        try:
            async with semaphore:
                if cancelled is not None and cancelled():
                    raise ActionCancelled(f"{operation} of {address} not started, run aborted")
                logger.debug(
                    "Provider call",
                    extra={"address": address, "operation": operation, "attempt": attempt},
                )
                try:
                    return await asyncio.wait_for(
                        loop.run_in_executor(None, functools.partial(func, *args)),
                        timeout=policy.timeout_seconds,
                    )
                except TimeoutError:
                    raise ProviderTransientError(
                        f"{operation} timed out after {policy.timeout_seconds}s"
                    ) from None
        except ProviderTransientError as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    "Provider call failed after retries",
                    extra={
                        "address": address,
                        "operation": operation,
                        "attempts": attempt,
                        "error": str(e),
                    },
                )
                raise
            wait_time = policy.backoff(attempt)
            logger.warning(
                "Transient provider error, retrying",
                extra={
                    "address": address,
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "wait_seconds": round(wait_time, 2),
                    "error": str(e),
                },
            )
            # Sleeping outside the semaphore frees the slot for other actions
            await asyncio.sleep(wait_time)


class Executor:
    """Applies a Plan against a provider and records results in the State Store."""

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        retry_policy: RetryPolicy | None = None,
        parallelism: int = DEFAULT_PARALLELISM,
    ) -> None:
        self._provider = provider
        self._store = store
        self._retry_policy = retry_policy or RetryPolicy()
        self._parallelism = parallelism
        self._abort_requested = False
        self._state_error: StateError | None = None
        self.summary: ExecutionSummary | None = None

    def abort(self) -> None:
        """Stop starting new actions. In-flight provider calls finish."""
        if not self._abort_requested:
            logger.warning("Abort requested, no new actions will start")
        self._abort_requested = True

    @property
    def aborted(self) -> bool:
        return self._abort_requested

    async def execute(self, plan: Plan) -> ExecutionSummary:
        """Apply every action of a plan.

        Returns:
            ExecutionSummary with one outcome per action in plan order.

        Raises:
            StateError: If a result could not be committed. The summary of
                the aborted run is kept in self.summary.
        """
        semaphore = asyncio.Semaphore(self._parallelism)
        outcomes = {a.address: ActionOutcome(a.address, a.verb) for a in plan.actions}
        done = {a.address: asyncio.Event() for a in plan.actions}

        logger.info(
            "Executing plan",
            extra={
                "action_count": len(plan.executable_actions),
                "parallelism": self._parallelism,
            },
        )
        await asyncio.gather(
            *(self._run(action, outcomes, done, semaphore) for action in plan.actions)
        )

        summary = ExecutionSummary(outcomes=outcomes, aborted=self._abort_requested)
        self.summary = summary
        logger.info("Plan execution finished", extra={"counts": summary.counts()})
        if self._state_error is not None:
            raise self._state_error
        return summary

    async def _run(
        self,
        action: PlannedAction,
        outcomes: dict[str, ActionOutcome],
        done: dict[str, asyncio.Event],
        semaphore: asyncio.Semaphore,
    ) -> None:
        outcome = outcomes[action.address]
        try:
            for predecessor in action.predecessors:
                if predecessor in done:
                    await done[predecessor].wait()

            blocked = [
                p
                for p in action.predecessors
                if p in outcomes and outcomes[p].status in UNSUCCESSFUL_STATUSES
            ]
            if blocked:
                if all(outcomes[p].status == ActionStatus.CANCELLED for p in blocked):
                    outcome.status = ActionStatus.CANCELLED
                else:
                    outcome.status = ActionStatus.SKIPPED
                    logger.warning(
                        "Skipping action, a dependency failed",
                        extra={"address": action.address, "blocked_by": blocked},
                    )
                return

            if action.is_noop:
                outcome.status = ActionStatus.NO_OP
                return

            if self._abort_requested:
                outcome.status = ActionStatus.CANCELLED
                return

            start = time.monotonic()
            try:
                await self._apply(action, outcome, semaphore)
                outcome.status = ActionStatus.APPLIED
                logger.info(
                    "Applied action",
                    extra={"address": action.address, "verb": action.verb.value},
                )
            except ActionCancelled:
                outcome.status = ActionStatus.CANCELLED
                logger.info(
                    "Action cancelled before its provider call",
                    extra={"address": action.address, "verb": action.verb.value},
                )
            except StateError as e:
                outcome.status = ActionStatus.FAILED
                outcome.error = e
                logger.error(
                    "Could not record result, aborting",
                    extra={
                        "address": action.address,
                        "verb": action.verb.value,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                if self._state_error is None:
                    self._state_error = e
                self.abort()
            except (ProviderError, ReferenceResolutionError) as e:
                outcome.status = ActionStatus.FAILED
                outcome.error = e
                logger.error(
                    "Action failed",
                    extra={
                        "address": action.address,
                        "verb": action.verb.value,
                        "attribute": getattr(e, "attribute", None),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
            except Exception as e:
                outcome.status = ActionStatus.FAILED
                outcome.error = e
                logger.exception(
                    "Unexpected error while applying action",
                    extra={"address": action.address, "verb": action.verb.value},
                )
            finally:
                outcome.duration_seconds = time.monotonic() - start
        finally:
            done[action.address].set()

    async def _apply(
        self, action: PlannedAction, outcome: ActionOutcome, semaphore: asyncio.Semaphore
    ) -> None:
        async def call(operation: str, func: Callable[..., T], *args: Any) -> T:
            return await call_with_retry(
                func,
                *args,
                policy=self._retry_policy,
                semaphore=semaphore,
                address=action.address,
                operation=operation,
                outcome=outcome,
                cancelled=lambda: self._abort_requested,
            )

        if action.purge_deposed:
            await self._purge_deposed(action, call)

        match action.verb:
            case ActionVerb.NO_OP:
                return

            case ActionVerb.CREATE:
                attributes = self._resolve(action)
                result = await call("create", self._provider.create, action.resource_type, attributes)
                self._store.put(action.address, self._record(action, attributes, result))

            case ActionVerb.UPDATE:
                current = self._require_record(action)
                attributes = self._resolve(action)
                result = await call(
                    "update",
                    self._provider.update,
                    action.resource_type,
                    current.remote_id,
                    attributes,
                    action.changed_attributes,
                )
                self._store.put(action.address, self._record(action, attributes, result, current))

            case ActionVerb.REPLACE:
                current = self._require_record(action)
                attributes = self._resolve(action)
                if action.replace_strategy == ReplaceStrategy.DESTROY_BEFORE_CREATE:
                    await call(
                        "delete",
                        self._provider.delete,
                        action.resource_type,
                        current.remote_id,
                        current.attributes,
                    )
                    self._store.delete(action.address)
                    result = await call(
                        "create", self._provider.create, action.resource_type, attributes
                    )
                    self._store.put(action.address, self._record(action, attributes, result))
                else:
                    result = await call(
                        "create", self._provider.create, action.resource_type, attributes
                    )
                    deposed = DeposedObject(
                        remote_id=current.remote_id, attributes=current.attributes
                    )
                    record = self._record(action, attributes, result, current)
                    record.deposed = [*current.deposed, deposed]
                    self._store.put(action.address, record)
                    await call(
                        "delete",
                        self._provider.delete,
                        action.resource_type,
                        current.remote_id,
                        current.attributes,
                    )
                    record.deposed = [d for d in record.deposed if d.remote_id != current.remote_id]
                    self._store.put(action.address, record)

            case ActionVerb.DELETE:
                current = self._store.get(action.address)
                if current is None:
                    return
                for deposed in current.deposed:
                    await call(
                        "delete",
                        self._provider.delete,
                        current.type,
                        deposed.remote_id,
                        deposed.attributes,
                    )
                await call(
                    "delete",
                    self._provider.delete,
                    current.type,
                    current.remote_id,
                    current.attributes,
                )
                self._store.delete(action.address)

    async def _purge_deposed(self, action: PlannedAction, call: Callable[..., Any]) -> None:
        current = self._store.get(action.address)
        if current is None:
            return
        for deposed in list(current.deposed):
            if deposed.remote_id not in action.purge_deposed:
                continue
            await call(
                "delete",
                self._provider.delete,
                current.type,
                deposed.remote_id,
                deposed.attributes,
            )
            current.deposed = [d for d in current.deposed if d.remote_id != deposed.remote_id]
            self._store.put(action.address, current)
            logger.info(
                "Purged deposed object",
                extra={"address": action.address, "remote_id": deposed.remote_id},
            )

    def _resolve(self, action: PlannedAction) -> dict[str, Any]:
        """Substitute resource references with values from the State Store."""

        def resolver(reference: Reference) -> Any:
            if reference.kind != ReferenceKind.RESOURCE:
                raise ReferenceResolutionError(
                    action.address, reference, "only resource references remain at apply time"
                )
            producer = self._store.get(reference.target)
            if producer is None:
                raise ReferenceResolutionError(
                    action.address, reference, f"{reference.target} has no state record"
                )
            try:
                return producer.lookup(reference.attribute)
            except KeyError:
                raise ReferenceResolutionError(
                    action.address,
                    reference,
                    f"{reference.target} has no attribute '{reference.attribute}'",
                ) from None

        return resolve_value(action.attributes, resolver)

    def _require_record(self, action: PlannedAction) -> StateRecord:
        record = self._store.get(action.address)
        if record is None:
            raise ProviderError(
                f"{action.address}: no state record to {action.verb.value}",
                resource_type=action.resource_type,
            )
        return record

    def _record(
        self,
        action: PlannedAction,
        attributes: dict[str, Any],
        result: ProviderResult,
        current: StateRecord | None = None,
    ) -> StateRecord:
        resource_type, name = split_address(action.address)
        update = {
            "type": resource_type,
            "name": name,
            "remote_id": result.remote_id,
            "attributes": attributes,
            "outputs": result.outputs,
            "dependencies": list(action.dependencies),
        }
        if current is not None:
            # Keep fields written by newer versions
            return current.model_copy(update=update)
        return StateRecord(**update)
