"""Tests for the file state store."""
import json
import shutil

import pytest
import yaml

from mcp_infra_reconciler.state_store import (
    FileStateStore,
    LockNotHeldError,
    StateCorruptionError,
    StateRecord,
    compute_checksum,
    fingerprint_inputs,
)


def make_record(address: str = "aws_vpc.main", resource_id: str = "vpc-0001", **inputs) -> StateRecord:
    resource_type = address.split(".")[0]
    inputs = inputs or {"cidr_block": "10.0.0.0/16"}
    return StateRecord(
        address=address,
        resource_type=resource_type,
        resource_id=resource_id,
        inputs=inputs,
        attributes={**inputs, "id": resource_id},
    )


@pytest.fixture
def store(tmp_path):
    return FileStateStore(tmp_path / "state", git_enabled=False)


class TestStateRecord:
    """Tests for StateRecord."""

    def test_fingerprint_from_inputs(self):
        """The fingerprint is computed from the inputs."""
        record = make_record()
        assert record.fingerprint == fingerprint_inputs({"cidr_block": "10.0.0.0/16"})
        assert record.fingerprint.startswith("sha256:")

    def test_fingerprint_ignores_key_order(self):
        """Canonical JSON makes fingerprints order-independent."""
        assert fingerprint_inputs({"a": 1, "b": 2}) == fingerprint_inputs({"b": 2, "a": 1})

    def test_round_trip_dict(self):
        record = make_record()
        assert StateRecord.from_dict(record.to_dict()) == record


class TestFileStateStore:
    """Tests for reads and writes under the lock."""

    def test_empty_store(self, store):
        """A fresh store has no records."""
        with store.acquire_lock(timeout=1) as lock:
            assert store.read_all(lock) == {}

    def test_write_then_read(self, store):
        """Written records are visible to reads."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())
            records = store.read_all(lock)

        assert list(records) == ["aws_vpc.main"]
        assert records["aws_vpc.main"].resource_id == "vpc-0001"

    def test_survives_restart(self, store, tmp_path):
        """Records persist across store instances."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())

        reopened = FileStateStore(tmp_path / "state", git_enabled=False)
        with reopened.acquire_lock(timeout=1) as lock:
            assert "aws_vpc.main" in reopened.read_all(lock)

    def test_delete(self, store):
        """Deleted records disappear; deleting twice returns False."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())
            assert store.delete(lock, "aws_vpc.main") is True
            assert store.delete(lock, "aws_vpc.main") is False
            assert store.read_all(lock) == {}

    def test_read_all_is_a_copy(self, store):
        """Mutating the returned snapshot does not change the store."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())
            records = store.read_all(lock)
            records["aws_vpc.main"].attributes["id"] = "changed"
            assert store.read_all(lock)["aws_vpc.main"].attributes["id"] == "vpc-0001"

    def test_address_mismatch(self, store):
        """The record address must match the key."""
        with store.acquire_lock(timeout=1) as lock:
            with pytest.raises(ValueError):
                store.write(lock, "aws_vpc.other", make_record())

    def test_requires_live_lock(self, store):
        """Reads and writes fail with a released lock."""
        lock = store.acquire_lock(timeout=1)
        lock.release()

        with pytest.raises(LockNotHeldError):
            store.read_all(lock)
        with pytest.raises(LockNotHeldError):
            store.write(lock, "aws_vpc.main", make_record())

    def test_requires_lock_of_this_store(self, store, tmp_path):
        """A lock from another store is rejected."""
        other = FileStateStore(tmp_path / "other", git_enabled=False)
        with other.acquire_lock(timeout=1) as foreign:
            with pytest.raises(LockNotHeldError):
                store.read_all(foreign)

    def test_force_unlocked_handle_rejected(self, store):
        """A handle whose lock was force-unlocked can no longer write."""
        lock = store.acquire_lock(timeout=1)
        store.force_unlock(lock.lock_id)

        with pytest.raises(LockNotHeldError):
            store.write(lock, "aws_vpc.main", make_record())
        lock.release()

    def test_journal_written_before_visible(self, store):
        """Each write appends a checksummed journal entry."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())

        lines = store.journal_path.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["op"] == "put"
        assert entry["seq"] == 1
        checksum = entry.pop("checksum")
        assert checksum == compute_checksum(entry)


class TestCompaction:
    """Tests for snapshot compaction."""

    def test_compact_folds_journal(self, store, tmp_path):
        """Compaction writes a snapshot and empties the journal."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())
            store.write(lock, "aws_subnet.public", make_record("aws_subnet.public", "subnet-0002"))
            store.delete(lock, "aws_subnet.public")
            store.compact(lock)

        assert store.journal_path.read_text() == ""
        data = yaml.safe_load(store.snapshot_path.read_text())
        assert data["serial"] == 3
        assert list(data["records"]) == ["aws_vpc.main"]

        reopened = FileStateStore(tmp_path / "state", git_enabled=False)
        with reopened.acquire_lock(timeout=1) as lock:
            assert list(reopened.read_all(lock)) == ["aws_vpc.main"]

    def test_writes_after_compaction(self, store, tmp_path):
        """Journal entries after a snapshot are replayed on top of it."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())
            store.compact(lock)
            store.write(lock, "aws_subnet.public", make_record("aws_subnet.public", "subnet-0002"))

        reopened = FileStateStore(tmp_path / "state", git_enabled=False)
        with reopened.acquire_lock(timeout=1) as lock:
            assert sorted(reopened.read_all(lock)) == ["aws_subnet.public", "aws_vpc.main"]

    def test_compact_without_changes_is_noop(self, store):
        """A second compaction with nothing new leaves the snapshot alone."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())
            store.compact(lock)
            before = store.snapshot_path.read_text()
            store.compact(lock)
            assert store.snapshot_path.read_text() == before


class TestCorruption:
    """Corrupt state is detected, never repaired."""

    def test_partial_journal_entry(self, store):
        """A journal line without a trailing newline is corruption."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())

        with open(store.journal_path, "a") as f:
            f.write('{"seq": 2, "op": "put"')

        with store.acquire_lock(timeout=1) as lock:
            with pytest.raises(StateCorruptionError, match="partially written"):
                store.read_all(lock)

    def test_journal_checksum_mismatch(self, store):
        """A tampered journal entry fails its checksum."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())

        text = store.journal_path.read_text().replace("vpc-0001", "vpc-9999")
        store.journal_path.write_text(text)

        with store.acquire_lock(timeout=1) as lock:
            with pytest.raises(StateCorruptionError, match="checksum"):
                store.read_all(lock)

    def test_snapshot_checksum_mismatch(self, store):
        """A tampered snapshot fails its checksum."""
        with store.acquire_lock(timeout=1) as lock:
            store.write(lock, "aws_vpc.main", make_record())
            store.compact(lock)

        text = store.snapshot_path.read_text().replace("10.0.0.0/16", "10.9.0.0/16")
        store.snapshot_path.write_text(text)

        with store.acquire_lock(timeout=1) as lock:
            with pytest.raises(StateCorruptionError, match="Snapshot checksum"):
                store.read_all(lock)

    def test_unsupported_schema_version(self, store):
        """Unknown schema versions are refused."""
        store.snapshot_path.write_text("schema_version: 99\nserial: 0\nrecords: {}\n")

        with store.acquire_lock(timeout=1) as lock:
            with pytest.raises(StateCorruptionError, match="schema version"):
                store.read_all(lock)

    def test_invalid_snapshot_yaml(self, store):
        store.snapshot_path.write_text("records: [unclosed\n")

        with store.acquire_lock(timeout=1) as lock:
            with pytest.raises(StateCorruptionError):
                store.read_all(lock)


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestStateHistory:
    """Tests for git versioning of snapshots."""

    def test_compaction_commits_snapshot(self, tmp_path):
        """Each compaction with changes adds a version."""
        store = FileStateStore(tmp_path / "state", git_enabled=True)

        with store.acquire_lock(timeout=1, holder="tester") as lock:
            store.write(lock, "aws_vpc.main", make_record())
            store.compact(lock, "first apply")
            store.write(lock, "aws_subnet.public", make_record("aws_subnet.public", "subnet-0002"))
            store.compact(lock, "second apply")

        history = store.history()
        assert [h["message"] for h in history[:2]] == ["second apply", "first apply"]

        first = store.snapshot_at(history[1]["hash"])
        assert list(first) == ["aws_vpc.main"]

    def test_history_disabled(self, store):
        """Without git there is no history."""
        assert store.history() == []
        assert store.snapshot_at() is None

    def test_corrupt_revision_rejected(self, tmp_path):
        """A committed snapshot that fails its checksum is not returned."""
        store = FileStateStore(tmp_path / "state", git_enabled=True)
        with store.acquire_lock(timeout=1, holder="tester") as lock:
            store.write(lock, "aws_vpc.main", make_record())
            store.compact(lock, "first apply")

        text = store.snapshot_path.read_text().replace("10.0.0.0/16", "10.9.0.0/16")
        store.snapshot_path.write_text(text)
        store.git.commit("hand edit", files=["snapshot.yaml"])

        with pytest.raises(StateCorruptionError, match="checksum mismatch"):
            store.snapshot_at("HEAD")
        assert list(store.snapshot_at("HEAD~1")) == ["aws_vpc.main"]
