"""Teardown of everything recorded in the State Store.

Deletion order is the reverse topological order of the recorded
dependencies; the current configuration is not consulted. Operator hints
name resources to delete first.

DEFER AND RETRY:
Providers sometimes refuse a delete because of a dependent the engine
never recorded (a NIC created by a platform service in a managed subnet,
for example). Such a refusal defers the resource to the next round while
the rest of the teardown continues. Teardown stops when nothing is left,
when a round after the first makes no progress, or after the maximum
number of rounds; whatever remains is reported as DependencyConflictOnDelete.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_TEARDOWN_MAX_ROUNDS
from .executor import RetryPolicy, call_with_retry
from .graph import topological_order
from .providers.base import Provider, ProviderDependencyConflict, ProviderError
from .state import StateRecord, StateStore

logger = logging.getLogger(__name__)


class DependencyConflictOnDelete(Exception):
    """Raised when resources are still refused deletion after all retry rounds."""

    def __init__(self, addresses: list[str], reasons: dict[str, str]) -> None:
        self.addresses = addresses
        self.reasons = reasons
        details = "; ".join(f"{a}: {reasons.get(a, 'dependency conflict')}" for a in addresses)
        super().__init__(f"Could not delete {len(addresses)} resource(s): {details}")


@dataclass
class TeardownResult:
    """What a teardown did."""

    order: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    stuck: list[str] = field(default_factory=list)
    rounds: int = 0
    dry_run: bool = False
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not (self.failed or self.skipped or self.cancelled or self.stuck)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "deleted": self.deleted,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "stuck": self.stuck,
            "rounds": self.rounds,
            "dry_run": self.dry_run,
            "errors": self.errors,
        }


def teardown_order(records: dict[str, StateRecord], hints: Iterable[str] = ()) -> list[str]:
    """Compute the deletion order for recorded resources.

    Dependents come before their dependencies. Among resources that are
    ready at the same time, the one recorded last goes first. Hinted
    addresses are moved to the front in the given order; unknown hints are
    ignored with a warning.

    Raises:
        CyclicGraphError: If the recorded dependencies contain a cycle.
    """
    addresses = list(records)
    # Reverse edges: a resource becomes deletable once its dependents are gone
    edges: dict[str, list[str]] = {address: [] for address in addresses}
    for address, record in records.items():
        for dep in record.dependencies:
            if dep in edges:
                edges[dep].append(address)
    priority = {address: -position for position, address in enumerate(addresses)}
    order = topological_order(edges, priority)

    first: list[str] = []
    for hint in hints:
        if hint not in records:
            logger.warning("Ignoring teardown hint for unknown resource", extra={"address": hint})
            continue
        if hint not in first:
            first.append(hint)
    return first + [address for address in order if address not in first]


class TeardownSequencer:
    """Deletes every recorded resource with defer-and-retry."""

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        retry_policy: RetryPolicy | None = None,
        max_rounds: int = DEFAULT_TEARDOWN_MAX_ROUNDS,
    ) -> None:
        self._provider = provider
        self._store = store
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_rounds = max_rounds
        self._abort_requested = False

    def abort(self) -> None:
        self._abort_requested = True

    async def run(self, hints: Iterable[str] = (), dry_run: bool = False) -> TeardownResult:
        """Delete all recorded resources.

        Args:
            hints: Addresses to delete first, in order.
            dry_run: Only compute the order.

        Returns:
            TeardownResult. result.stuck lists resources still refused when
            the retry rounds ran out.
        """
        records = self._store.records()
        result = TeardownResult(order=teardown_order(records, hints), dry_run=dry_run)
        if dry_run:
            return result

        dependents: dict[str, list[str]] = {address: [] for address in records}
        for address, record in records.items():
            for dep in record.dependencies:
                if dep in dependents:
                    dependents[dep].append(address)

        # Deletes run one at a time; ordering matters more than throughput here
        semaphore = asyncio.Semaphore(1)
        pending = list(result.order)

        while pending and result.rounds < self._max_rounds:
            result.rounds += 1
            deferred: list[str] = []
            progress = False
            logger.info(
                "Teardown round started",
                extra={"round": result.rounds, "pending": len(pending)},
            )

            for address in pending:
                if self._abort_requested:
                    result.cancelled.append(address)
                    continue

                blocked_by = [
                    d for d in dependents[address] if d in result.failed or d in result.skipped
                ]
                if blocked_by:
                    result.skipped.append(address)
                    logger.warning(
                        "Skipping delete, a dependent could not be deleted",
                        extra={"address": address, "blocked_by": blocked_by},
                    )
                    continue

                waiting_on = [d for d in dependents[address] if d in deferred]
                if waiting_on:
                    deferred.append(address)
                    result.errors[address] = f"waiting on {', '.join(waiting_on)}"
                    continue

                try:
                    await self._delete(address, records[address], semaphore)
                except ProviderDependencyConflict as e:
                    deferred.append(address)
                    result.errors[address] = str(e)
                    logger.warning(
                        "Delete refused by a dependent, deferring",
                        extra={"address": address, "round": result.rounds, "error": str(e)},
                    )
                    continue
                except ProviderError as e:
                    result.failed.append(address)
                    result.errors[address] = str(e)
                    logger.error(
                        "Delete failed",
                        extra={
                            "address": address,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    continue

                progress = True
                result.deleted.append(address)
                result.errors.pop(address, None)

            pending = [] if self._abort_requested else deferred
            if pending and result.rounds > 1 and not progress:
                logger.warning(
                    "Teardown round made no progress, giving up",
                    extra={"round": result.rounds, "remaining": pending},
                )
                break

        result.stuck = pending
        if not self._store.records() and self._store.outputs():
            self._store.set_outputs({})

        logger.info("Teardown finished", extra=result.to_dict())
        return result

    async def _delete(self, address: str, record: StateRecord, semaphore: asyncio.Semaphore) -> None:
        for deposed in record.deposed:
            await call_with_retry(
                self._provider.delete,
                record.type,
                deposed.remote_id,
                deposed.attributes,
                policy=self._retry_policy,
                semaphore=semaphore,
                address=address,
                operation="delete",
            )
        await call_with_retry(
            self._provider.delete,
            record.type,
            record.remote_id,
            record.attributes,
            policy=self._retry_policy,
            semaphore=semaphore,
            address=address,
            operation="delete",
        )
        self._store.delete(address)
        logger.info("Deleted resource", extra={"address": address})
