"""Persistent state: one record per managed resource plus resolved outputs.

The state document is a single JSON file:

    {
      "version": 1,
      "serial": 7,
      "lineage": "6c2f...",
      "checksum": "sha256 of resources and outputs",
      "resources": {"<type>::<name>": {...record...}},
      "outputs": {"endpoint": {"value": "...", "sensitive": false}}
    }

SAFETY:
- Every mutation is committed immediately with an atomic replace, so a
  crash leaves either the previous or the next document on disk
- A lock file guards the document for the duration of a cycle; a holder
  refreshes it with heartbeats and an abandoned lock is reclaimed after the
  lock timeout
- The serial and lineage read at lock time are checked again before each
  commit, so a concurrent writer is detected instead of overwritten
- Unknown fields are preserved and a document is never rewritten at a
  lower format version
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import socket
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .config import DEFAULT_LOCK_TIMEOUT_SECONDS, MAX_STATE_FILE_SIZE_BYTES
from .models import make_address
from .references import lookup_path

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1
RECORD_SCHEMA_VERSION = 1

LOCK_SUFFIX = ".lock"
BACKUP_SUFFIX = ".backup"
LOCK_POLL_INTERVAL_SECONDS = 1.0


class StateError(Exception):
    """Raised when the State Store cannot be read or written."""

    pass


class LockContention(StateError):
    """Raised when another live process holds the state lock."""

    def __init__(self, message: str, holder: LockInfo | None = None) -> None:
        self.holder = holder
        super().__init__(message)


class StateCorruptionError(StateError):
    """Raised when the state document cannot be parsed or fails its checksum."""

    pass


class ConcurrentWriterError(StateError):
    """Raised when the document changed on disk since it was loaded."""

    pass


# =============================================================================
# Document
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeposedObject(BaseModel):
    """A previous remote object kept during create-before-destroy replacement."""

    model_config = {"extra": "allow"}

    remote_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    deposed_at: datetime = Field(default_factory=_utcnow)


class StateRecord(BaseModel):
    """What is known about one managed resource."""

    model_config = {"extra": "allow"}

    type: str
    name: str
    remote_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    deposed: list[DeposedObject] = Field(default_factory=list)
    schema_version: int = RECORD_SCHEMA_VERSION
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def address(self) -> str:
        return make_address(self.type, self.name)

    def lookup(self, path: str) -> Any:
        """Resolve an attribute path, preferring provider outputs.

        Raises:
            KeyError: If neither outputs nor attributes contain the path.
        """
        try:
            return lookup_path(self.outputs, path)
        except KeyError:
            return lookup_path(self.attributes, path)


class OutputValue(BaseModel):
    """A resolved output."""

    model_config = {"extra": "allow"}

    value: Any = None
    sensitive: bool = False


class StateDocument(BaseModel):
    """The persisted state document."""

    model_config = {"extra": "allow"}

    version: int = STATE_FORMAT_VERSION
    serial: int = 0
    lineage: str | None = None
    checksum: str | None = None
    resources: dict[str, StateRecord] = Field(default_factory=dict)
    outputs: dict[str, OutputValue] = Field(default_factory=dict)

    def compute_checksum(self) -> str:
        payload = self.model_dump(mode="json", include={"resources", "outputs"})
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Lock
# =============================================================================


@dataclass
class LockInfo:
    """Contents of the lock file."""

    holder_id: str
    operation: str
    pid: int
    hostname: str
    acquired_at: str
    heartbeat_at: str

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or _utcnow()
        return (now - datetime.fromisoformat(self.heartbeat_at)).total_seconds()

    def describe(self) -> str:
        return (
            f"held by {self.holder_id} ({self.operation}, pid {self.pid} on "
            f"{self.hostname}) since {self.acquired_at}, last heartbeat {self.heartbeat_at}"
        )


class StateLock:
    """Exclusive lock file next to the state document."""

    def __init__(self, path: Path, timeout_seconds: int, operation: str) -> None:
        self._path = path
        self._timeout_seconds = timeout_seconds
        self._operation = operation
        self._holder_id = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    @property
    def holder_id(self) -> str:
        return self._holder_id

    def acquire(self, wait_seconds: float = 0) -> None:
        """Take the lock, reclaiming it if its holder stopped heartbeating.

        Raises:
            LockContention: If a live holder keeps the lock past wait_seconds.
        """
        deadline = time.monotonic() + wait_seconds
        self._path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            now = _utcnow().isoformat()
            info = LockInfo(
                holder_id=self._holder_id,
                operation=self._operation,
                pid=os.getpid(),
                hostname=socket.gethostname(),
                acquired_at=now,
                heartbeat_at=now,
            )
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                current = read_lock(self._path)
                if current is not None:
                    age = current.age_seconds()
                else:
                    # Unreadable lock files may be mid-write; age them by mtime
                    age = self._file_age_seconds()
                if age > self._timeout_seconds:
                    self._reclaim(current)
                    continue
                if time.monotonic() >= deadline:
                    holder = current.describe() if current else "lock file is unreadable"
                    raise LockContention(f"State is locked: {holder}", holder=current) from None
                time.sleep(LOCK_POLL_INTERVAL_SECONDS)
                continue

            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(asdict(info), f)
            self._held = True
            logger.debug(
                "Acquired state lock",
                extra={"lock_path": str(self._path), "holder_id": self._holder_id},
            )
            return

    def _file_age_seconds(self) -> float:
        try:
            return time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return 0.0

    def _reclaim(self, stale: LockInfo | None) -> None:
        # Re-read right before removal so a lock that was just refreshed or
        # replaced by another reclaimer is left alone
        current = read_lock(self._path)
        if stale is not None and (
            current is None
            or current.holder_id != stale.holder_id
            or current.heartbeat_at != stale.heartbeat_at
        ):
            return
        logger.warning(
            "Reclaiming abandoned state lock",
            extra={
                "lock_path": str(self._path),
                "previous_holder": stale.holder_id if stale else None,
                "last_heartbeat": stale.heartbeat_at if stale else None,
            },
        )
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass

    def heartbeat(self) -> None:
        """Refresh the heartbeat timestamp.

        Raises:
            LockContention: If the lock is no longer ours.
        """
        current = read_lock(self._path)
        if not self._held or current is None or current.holder_id != self._holder_id:
            self._held = False
            raise LockContention("State lock was lost or reclaimed by another process")
        current.heartbeat_at = _utcnow().isoformat()
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(json.dumps(asdict(current)), encoding="utf-8")
        os.replace(tmp_path, self._path)

    def release(self) -> None:
        if not self._held:
            return
        current = read_lock(self._path)
        if current is not None and current.holder_id == self._holder_id:
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass
        self._held = False
        logger.debug("Released state lock", extra={"lock_path": str(self._path)})


def read_lock(path: Path) -> LockInfo | None:
    """Read a lock file. Returns None when it is missing or unreadable."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return LockInfo(**data)
    except (OSError, ValueError, TypeError):
        return None


# =============================================================================
# Store
# =============================================================================


class StateStore:
    """Durable record of managed resources.

    Reads work without the lock. Mutations require the lock and are
    committed to disk before they return.
    """

    def __init__(
        self,
        path: Path,
        lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + LOCK_SUFFIX)
        self._lock_timeout_seconds = lock_timeout_seconds
        self._lock: StateLock | None = None
        self._document: StateDocument | None = None
        self._on_disk = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    @property
    def locked(self) -> bool:
        return self._lock is not None and self._lock.held

    @property
    def document(self) -> StateDocument:
        if self._document is None:
            self.load()
        assert self._document is not None
        return self._document

    @property
    def serial(self) -> int:
        return self.document.serial

    @property
    def lineage(self) -> str | None:
        return self.document.lineage

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def acquire(self, operation: str, wait_seconds: float = 0) -> None:
        """Take the lock and load the current document."""
        lock = StateLock(self._lock_path, self._lock_timeout_seconds, operation)
        lock.acquire(wait_seconds=wait_seconds)
        self._lock = lock
        try:
            self.load()
        except StateError:
            self.release()
            raise

    def heartbeat(self) -> None:
        if self._lock is None:
            raise StateError("State lock is not held")
        self._lock.heartbeat()

    def release(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    @contextmanager
    def locked_for(self, operation: str, wait_seconds: float = 0) -> Iterator[StateStore]:
        """Hold the lock for the duration of a with block."""
        self.acquire(operation, wait_seconds=wait_seconds)
        try:
            yield self
        finally:
            self.release()

    def force_unlock(self) -> LockInfo | None:
        """Remove the lock file regardless of holder. Returns the removed lock."""
        info = read_lock(self._lock_path)
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            return None
        logger.warning(
            "Forcibly removed state lock",
            extra={"lock_path": str(self._lock_path), "holder": info.holder_id if info else None},
        )
        return info

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def load(self) -> StateDocument:
        """Read the document from disk. A missing file is an empty state.

        Raises:
            StateCorruptionError: If the file is oversized, unparseable or
                fails its checksum.
        """
        document = self._read_file()
        if document is None:
            self._document = StateDocument()
            self._on_disk = False
        else:
            if document.version > STATE_FORMAT_VERSION:
                logger.warning(
                    "State document was written by a newer version",
                    extra={"version": document.version, "supported": STATE_FORMAT_VERSION},
                )
            self._document = document
            self._on_disk = True
        return self._document

    def _read_file(self) -> StateDocument | None:
        if not self._path.exists():
            return None

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateCorruptionError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateCorruptionError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(raw, dict):
            raise StateCorruptionError(f"State file must contain a JSON object: {self._path}")

        try:
            document = StateDocument.model_validate(raw)
        except ValidationError as e:
            raise StateCorruptionError(f"Invalid state document {self._path}: {e}") from e

        if document.checksum is not None and document.checksum != document.compute_checksum():
            raise StateCorruptionError(
                f"State file checksum mismatch, refusing to use {self._path}. "
                f"A previous copy is kept at {self._path}{BACKUP_SUFFIX}"
            )
        return document

    def get(self, address: str) -> StateRecord | None:
        record = self.document.resources.get(address)
        return record.model_copy(deep=True) if record is not None else None

    def records(self) -> dict[str, StateRecord]:
        """All records keyed by address, in the order they were first written."""
        return {
            address: record.model_copy(deep=True)
            for address, record in self.document.resources.items()
        }

    def outputs(self) -> dict[str, OutputValue]:
        return {name: value.model_copy(deep=True) for name, value in self.document.outputs.items()}

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def put(self, address: str, record: StateRecord) -> None:
        """Create or replace the record for an address and commit."""
        self._require_lock()
        self._check_writer()
        record = record.model_copy(update={"updated_at": _utcnow()})
        self.document.resources[address] = record
        self._commit()

    def delete(self, address: str) -> None:
        """Remove the record for an address and commit. Missing is a no-op."""
        self._require_lock()
        if address not in self.document.resources:
            return
        self._check_writer()
        del self.document.resources[address]
        self._commit()

    def set_outputs(self, outputs: dict[str, OutputValue]) -> None:
        self._require_lock()
        self._check_writer()
        self.document.outputs = dict(outputs)
        self._commit()

    def _require_lock(self) -> None:
        if not self.locked:
            raise StateError("State lock must be held to modify state")

    def _check_writer(self) -> None:
        """Fail before any in-memory change if the file moved under us.

        Raises:
            ConcurrentWriterError: If the file was removed, or its serial or
                lineage no longer match the loaded document.
        """
        document = self.document
        on_disk = self._read_file()
        if self._on_disk and on_disk is None:
            raise ConcurrentWriterError(f"State file {self._path} was removed during the cycle")
        if on_disk is not None and (
            not self._on_disk
            or on_disk.serial != document.serial
            or on_disk.lineage != document.lineage
        ):
            raise ConcurrentWriterError(
                f"State file {self._path} was modified by another writer "
                f"(expected serial {document.serial}, found {on_disk.serial})"
            )

    def _commit(self) -> None:
        document = self.document
        document.version = max(document.version, STATE_FORMAT_VERSION)
        document.lineage = document.lineage or str(uuid.uuid4())
        document.serial += 1
        document.checksum = document.compute_checksum()

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        payload = json.dumps(document.model_dump(mode="json"), indent=2, sort_keys=False)
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        if self._on_disk:
            shutil.copy2(self._path, self._path.with_name(self._path.name + BACKUP_SUFFIX))
        os.replace(tmp_path, self._path)
        self._on_disk = True
        logger.debug(
            "Committed state",
            extra={"serial": document.serial, "resource_count": len(document.resources)},
        )
