"""Tests for the State Store and its lock."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from graphctl.state import (
    ConcurrentWriterError,
    LockContention,
    LockInfo,
    OutputValue,
    StateCorruptionError,
    StateError,
    StateRecord,
    StateStore,
)

ADDRESS = "Test/things::a"


def record(name: str = "a", **attributes: object) -> StateRecord:
    return StateRecord(
        type="Test/things",
        name=name,
        remote_id=f"mock-{name}",
        attributes={"name": f"shop-dev-{name}", **attributes},
    )


@pytest.fixture
def path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "state.json"


@pytest.fixture
def store(path: Path) -> StateStore:
    return StateStore(path, lock_timeout_seconds=60)


class TestDocument:
    """Tests for reading and committing the state document."""

    def test_missing_file_is_empty_state(self, store: StateStore) -> None:
        assert store.records() == {}
        assert store.serial == 0
        assert store.lineage is None

    def test_put_commits_and_bumps_serial(self, store: StateStore, path: Path) -> None:
        with store.locked_for("apply"):
            store.put(ADDRESS, record())
            lineage = store.lineage
            store.put("Test/things::b", record("b"))

        assert lineage is not None
        reloaded = StateStore(path)
        assert reloaded.serial == 2
        assert reloaded.lineage == lineage
        assert list(reloaded.records()) == [ADDRESS, "Test/things::b"]
        assert reloaded.get(ADDRESS).remote_id == "mock-a"  # type: ignore[union-attr]

    def test_delete(self, store: StateStore, path: Path) -> None:
        with store.locked_for("apply"):
            store.put(ADDRESS, record())
            store.delete(ADDRESS)
            store.delete("Test/things::missing")

        reloaded = StateStore(path)
        assert reloaded.records() == {}
        assert reloaded.serial == 2

    def test_outputs(self, store: StateStore, path: Path) -> None:
        with store.locked_for("apply"):
            store.set_outputs({"endpoint": OutputValue(value="https://x", sensitive=True)})

        outputs = StateStore(path).outputs()
        assert outputs["endpoint"].value == "https://x"
        assert outputs["endpoint"].sensitive is True

    def test_get_returns_copy(self, store: StateStore) -> None:
        with store.locked_for("apply"):
            store.put(ADDRESS, record())

        copy = store.get(ADDRESS)
        assert copy is not None
        copy.attributes["name"] = "changed"

        assert store.get(ADDRESS).attributes["name"] == "shop-dev-a"  # type: ignore[union-attr]

    def test_mutation_requires_lock(self, store: StateStore) -> None:
        with pytest.raises(StateError, match="lock must be held"):
            store.put(ADDRESS, record())

    def test_backup_of_previous_document(self, store: StateStore, path: Path) -> None:
        with store.locked_for("apply"):
            store.put(ADDRESS, record())
            store.put(ADDRESS, record(size=2))

        backup = json.loads(path.with_name("state.json.backup").read_text())
        assert backup["serial"] == 1

    def test_checksum_mismatch(self, store: StateStore, path: Path) -> None:
        with store.locked_for("apply"):
            store.put(ADDRESS, record())

        raw = json.loads(path.read_text())
        raw["resources"][ADDRESS]["remote_id"] = "tampered"
        path.write_text(json.dumps(raw))

        with pytest.raises(StateCorruptionError, match="checksum mismatch"):
            StateStore(path).load()

    def test_invalid_json(self, path: Path) -> None:
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        with pytest.raises(StateCorruptionError, match="Invalid JSON"):
            StateStore(path).load()

    def test_unknown_fields_are_preserved(self, store: StateStore, path: Path) -> None:
        """Fields written by other versions survive a rewrite."""
        path.parent.mkdir(parents=True)
        path.write_text(
            json.dumps(
                {
                    "version": 2,
                    "serial": 3,
                    "lineage": "abc",
                    "backend": {"kind": "local"},
                    "resources": {
                        ADDRESS: {
                            "type": "Test/things",
                            "name": "a",
                            "remote_id": "mock-a",
                            "custom": "keep",
                        }
                    },
                }
            )
        )

        with store.locked_for("apply"):
            store.put("Test/things::b", record("b"))

        raw = json.loads(path.read_text())
        assert raw["version"] == 2
        assert raw["serial"] == 4
        assert raw["lineage"] == "abc"
        assert raw["backend"] == {"kind": "local"}
        assert raw["resources"][ADDRESS]["custom"] == "keep"

    def test_concurrent_writer_detected(self, store: StateStore, path: Path) -> None:
        with store.locked_for("apply"):
            store.put(ADDRESS, record())

            raw = json.loads(path.read_text())
            raw["serial"] = 10
            raw["checksum"] = None
            path.write_text(json.dumps(raw))

            with pytest.raises(ConcurrentWriterError, match="modified by another writer"):
                store.put("Test/things::b", record("b"))

    def test_conflicting_write_leaves_memory_untouched(
        self, store: StateStore, path: Path
    ) -> None:
        """A rejected put or delete does not change the loaded document."""
        with store.locked_for("apply"):
            store.put(ADDRESS, record())
            serial = store.serial

            raw = json.loads(path.read_text())
            raw["serial"] = 10
            raw["checksum"] = None
            path.write_text(json.dumps(raw))

            with pytest.raises(ConcurrentWriterError):
                store.put("Test/things::b", record("b"))
            with pytest.raises(ConcurrentWriterError):
                store.delete(ADDRESS)

            assert store.get("Test/things::b") is None
            assert store.get(ADDRESS) is not None
            assert store.serial == serial

    def test_removed_file_detected(self, store: StateStore, path: Path) -> None:
        with store.locked_for("apply"):
            store.put(ADDRESS, record())
            path.unlink()

            with pytest.raises(ConcurrentWriterError, match="removed"):
                store.put("Test/things::b", record("b"))


class TestLock:
    """Tests for the state lock."""

    def test_contention(self, store: StateStore, path: Path) -> None:
        store.acquire("apply")
        try:
            other = StateStore(path, lock_timeout_seconds=60)
            with pytest.raises(LockContention) as exc_info:
                other.acquire("plan")
            assert exc_info.value.holder is not None
            assert exc_info.value.holder.operation == "apply"
        finally:
            store.release()

        assert not store.lock_path.exists()

    def test_stale_lock_is_reclaimed(self, store: StateStore) -> None:
        old = (datetime.now(UTC) - timedelta(hours=1)).isoformat()
        store.lock_path.parent.mkdir(parents=True)
        store.lock_path.write_text(
            json.dumps(
                asdict(
                    LockInfo(
                        holder_id="gone-1-abc",
                        operation="apply",
                        pid=1,
                        hostname="gone",
                        acquired_at=old,
                        heartbeat_at=old,
                    )
                )
            )
        )

        store.acquire("apply")
        try:
            assert store.locked
        finally:
            store.release()

    def test_heartbeat_refreshes(self, store: StateStore) -> None:
        with store.locked_for("apply"):
            before = json.loads(store.lock_path.read_text())["heartbeat_at"]
            store.heartbeat()
            after = json.loads(store.lock_path.read_text())["heartbeat_at"]

        assert after >= before

    def test_heartbeat_after_lock_lost(self, store: StateStore) -> None:
        store.acquire("apply")
        try:
            store.force_unlock()
            with pytest.raises(LockContention, match="lost"):
                store.heartbeat()
        finally:
            store.release()

    def test_force_unlock(self, store: StateStore, path: Path) -> None:
        assert store.force_unlock() is None

        StateStore(path).acquire("apply")
        info = store.force_unlock()

        assert info is not None
        assert info.operation == "apply"
        assert "apply" in info.describe()
        assert not store.lock_path.exists()
