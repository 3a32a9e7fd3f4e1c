"""Cycle provenance tracking for audit.

Every plan, apply and destroy cycle produces one structured record that
answers:
- "Which state serial did this cycle start from and end at?"
- "Who ran it, from which commit of the configuration?"
- "What changed, and what failed?"

The record is logged once, at the end of the cycle, whether or not the cycle
succeeded.
"""

from __future__ import annotations

import getpass
import logging
import os
import socket
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("GRAPHCTL_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Summary of changes for provenance tracking."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0
    no_change_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    cancelled_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total planned changes (create + update + replace + delete)."""
        return self.create_count + self.update_count + self.replace_count + self.delete_count

    @classmethod
    def from_plan_counts(cls, counts: dict[str, int]) -> ChangeProvenanceSummary:
        return cls(
            create_count=counts.get("create", 0),
            update_count=counts.get("update", 0),
            replace_count=counts.get("replace", 0),
            delete_count=counts.get("delete", 0),
            no_change_count=counts.get("no-op", 0),
        )


@dataclass
class CycleProvenance:
    """Complete provenance record for one cycle."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    operation: str = ""
    engine_version: str = ENGINE_VERSION
    operator: str = ""
    hostname: str = ""

    # Git source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    config_path: str = ""

    # Deployment context
    project: str = ""
    environment: str = ""
    provider: str = ""

    # State
    state_lineage: str | None = None
    serial_before: int = 0
    serial_after: int = 0

    # Outcome
    drift_detected: bool = False
    conflicts: int = 0
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._hostname = socket.gethostname()
        try:
            self._operator = getpass.getuser()
        except (KeyError, OSError):
            # No passwd entry, common in containers
            self._operator = os.environ.get("USER", "")

    def create_provenance(
        self,
        operation: str,
        provider: str,
        config_path: str,
    ) -> CycleProvenance:
        """Start a provenance record for a cycle.

        Project and environment are filled in once the configuration
        document has been loaded.
        """
        return CycleProvenance(
            operation=operation,
            operator=self._operator,
            hostname=self._hostname,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            config_path=config_path,
            provider=provider,
        )

    def log_provenance(self, provenance: CycleProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.conflicts:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Cycle provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "operation": provenance.operation,
                "project": provenance.project,
                "environment": provenance.environment,
                "serial_before": provenance.serial_before,
                "serial_after": provenance.serial_after,
                "changes": provenance.change_summary.total_significant,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
