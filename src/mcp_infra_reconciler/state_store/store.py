"""State store for the last-applied state of managed resources.

Handles:
- One StateRecord per managed address
- Exclusive locking of the whole store
- Crash consistency: every mutation is appended to a journal (fsync'd)
  before it becomes visible to reads
- Corruption detection via per-entry checksums
- Snapshot compaction and git versioning of snapshots

Directory layout:
    <base>/state/
    ├── snapshot.yaml     # schema_version, serial, checksum, records
    ├── journal.jsonl     # mutations since the snapshot, one per line
    └── state.lock        # companion lock record
"""
import copy
import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from ..utils.logging_config import timed
from .lock import LockFile, LockInfo, LockNotHeldError, StateLock

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DEFAULT_STATE_DIR = Path.home() / ".stackcraft" / "state"


class StateCorruptionError(Exception):
    """Persisted state failed an integrity check. Needs manual repair."""

    def __init__(self, message: str, path: Optional[Union[Path, str]] = None):
        self.path = path
        super().__init__(f"{message} ({path})" if path else message)


def compute_checksum(data: Any) -> str:
    """SHA256 of the canonical JSON form of ``data``."""
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return f"sha256:{hashlib.sha256(payload.encode()).hexdigest()}"


def fingerprint_inputs(inputs: dict[str, Any]) -> str:
    """Fingerprint of the resolved desired attributes of a resource."""
    return compute_checksum(inputs)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StateRecord:
    """Last-applied state of one resource."""
    address: str
    resource_type: str
    resource_id: str
    inputs: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    fingerprint: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        if not self.fingerprint:
            self.fingerprint = fingerprint_inputs(self.inputs)
        if self.created_at is None:
            self.created_at = _now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateRecord":
        return cls(**data)


class StateStore(ABC):
    """Contract for state backends.

    Every read or write takes the StateLock handle returned by
    ``acquire_lock``; calls with a released or foreign handle fail with
    LockNotHeldError.
    """

    @abstractmethod
    def acquire_lock(
        self,
        timeout: float,
        operation: str = "",
        holder: Optional[str] = None,
    ) -> StateLock:
        pass

    @abstractmethod
    def read_all(self, lock: StateLock) -> dict[str, StateRecord]:
        pass

    @abstractmethod
    def write(self, lock: StateLock, address: str, record: StateRecord) -> None:
        pass

    @abstractmethod
    def delete(self, lock: StateLock, address: str) -> bool:
        pass

    def compact(self, lock: StateLock, message: Optional[str] = None) -> None:
        """Fold pending mutations into a durable snapshot (optional)."""
        return None

    @abstractmethod
    def lock_info(self) -> Optional[LockInfo]:
        pass

    @abstractmethod
    def force_unlock(self, lock_id: str) -> bool:
        pass


class FileStateStore(StateStore):
    """State store on the local filesystem."""

    def __init__(self, base_dir: Optional[Path] = None, git_enabled: bool = True):
        """
        Initialize the state store.

        Args:
            base_dir: Directory for state files (default: ~/.stackcraft/state)
            git_enabled: Commit each compacted snapshot to git (default: True)
        """
        self.base_dir = Path(base_dir) if base_dir else DEFAULT_STATE_DIR
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.git_enabled = git_enabled
        self._git_manager = None
        self._lock_file = LockFile(self.lock_path)

        # In-memory view, valid only for the lock it was loaded under
        self._loaded_for: Optional[str] = None
        self._records: dict[str, StateRecord] = {}
        self._serial = 0
        self._seq = 0

    @property
    def snapshot_path(self) -> Path:
        return self.base_dir / "snapshot.yaml"

    @property
    def journal_path(self) -> Path:
        return self.base_dir / "journal.jsonl"

    @property
    def lock_path(self) -> Path:
        return self.base_dir / "state.lock"

    @property
    def git(self):
        """Get or create the GitManager for the state directory."""
        if self._git_manager is None and self.git_enabled:
            from .git_manager import GitManager
            self._git_manager = GitManager(self.base_dir)
        return self._git_manager

    # === Locking ===

    def acquire_lock(
        self,
        timeout: float,
        operation: str = "",
        holder: Optional[str] = None,
    ) -> StateLock:
        lock = self._lock_file.acquire(timeout, operation=operation, holder=holder)
        self._loaded_for = None
        return lock

    def lock_info(self) -> Optional[LockInfo]:
        return self._lock_file.read_info()

    def force_unlock(self, lock_id: str) -> bool:
        return self._lock_file.force_unlock(lock_id)

    def _check_lock(self, lock: StateLock) -> None:
        if not isinstance(lock, StateLock):
            raise LockNotHeldError("A StateLock handle is required")
        if lock.released:
            raise LockNotHeldError(f"State lock {lock.lock_id} was already released")
        if lock.path != self.lock_path:
            raise LockNotHeldError(f"State lock {lock.lock_id} belongs to another store")
        if not self._lock_file.is_held_by(lock):
            raise LockNotHeldError(f"State lock {lock.lock_id} is no longer held")

    # === Reads ===

    def read_all(self, lock: StateLock) -> dict[str, StateRecord]:
        """Snapshot of all records. Requires the live lock."""
        self._check_lock(lock)
        self._load(lock)
        return {addr: copy.deepcopy(rec) for addr, rec in self._records.items()}

    def _load(self, lock: StateLock) -> None:
        if self._loaded_for == lock.lock_id:
            return

        records, serial = self._read_snapshot()
        seq = serial
        for entry in self._read_journal():
            if entry["seq"] <= serial:
                continue  # already folded into the snapshot
            if entry["seq"] <= seq:
                raise StateCorruptionError(
                    f"Journal sequence went backwards at seq {entry['seq']}",
                    self.journal_path,
                )
            seq = entry["seq"]
            if entry["op"] == "put":
                records[entry["address"]] = StateRecord.from_dict(entry["record"])
            elif entry["op"] == "delete":
                records.pop(entry["address"], None)
            else:
                raise StateCorruptionError(
                    f"Unknown journal operation '{entry['op']}'", self.journal_path
                )

        self._records = records
        self._serial = serial
        self._seq = seq
        self._loaded_for = lock.lock_id
        logger.debug(f"Loaded {len(records)} state records (serial {serial}, seq {seq})")

    def _read_snapshot(self) -> tuple[dict[str, StateRecord], int]:
        if not self.snapshot_path.exists():
            return {}, 0
        return self._parse_snapshot(self.snapshot_path.read_text(), self.snapshot_path)

    def _parse_snapshot(
        self,
        content: str,
        source: Union[Path, str],
    ) -> tuple[dict[str, StateRecord], int]:
        """Verify schema version and checksum of a snapshot document."""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise StateCorruptionError(f"Snapshot is not valid YAML: {e}", source)

        if not isinstance(data, dict):
            raise StateCorruptionError("Snapshot is not a mapping", source)

        version = data.get("schema_version")
        if version != SCHEMA_VERSION:
            raise StateCorruptionError(
                f"Unsupported state schema version {version!r} (expected {SCHEMA_VERSION})",
                source,
            )

        body = {
            "schema_version": version,
            "serial": data.get("serial", 0),
            "records": data.get("records") or {},
        }
        if data.get("checksum") != compute_checksum(body):
            raise StateCorruptionError("Snapshot checksum mismatch", source)

        try:
            records = {
                addr: StateRecord.from_dict(rec) for addr, rec in body["records"].items()
            }
        except TypeError as e:
            raise StateCorruptionError(f"Malformed record in snapshot: {e}", source)
        return records, int(body["serial"])

    def _read_journal(self) -> list[dict[str, Any]]:
        if not self.journal_path.exists():
            return []

        raw = self.journal_path.read_bytes()
        if not raw:
            return []
        if not raw.endswith(b"\n"):
            raise StateCorruptionError(
                "Journal ends with a partially written entry", self.journal_path
            )

        entries = []
        for lineno, line in enumerate(raw.decode("utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as e:
                raise StateCorruptionError(
                    f"Journal line {lineno} is not valid JSON: {e}", self.journal_path
                )
            checksum = entry.pop("checksum", None)
            if checksum != compute_checksum(entry):
                raise StateCorruptionError(
                    f"Journal line {lineno} checksum mismatch", self.journal_path
                )
            entries.append(entry)
        return entries

    # === Writes ===

    def write(self, lock: StateLock, address: str, record: StateRecord) -> None:
        """Upsert one record. Durable once this returns."""
        self._check_lock(lock)
        if record.address != address:
            raise ValueError(f"Record address {record.address} does not match {address}")
        self._load(lock)

        self._append({"op": "put", "address": address, "record": record.to_dict()})
        self._records[address] = copy.deepcopy(record)
        logger.debug(f"Wrote state record for {address}")

    def delete(self, lock: StateLock, address: str) -> bool:
        """Remove one record. Returns False if there was none."""
        self._check_lock(lock)
        self._load(lock)

        if address not in self._records:
            return False
        self._append({"op": "delete", "address": address, "record": None})
        del self._records[address]
        logger.debug(f"Deleted state record for {address}")
        return True

    def _append(self, entry: dict[str, Any]) -> None:
        entry = {"seq": self._seq + 1, **entry}
        entry["checksum"] = compute_checksum(entry)
        line = json.dumps(entry, sort_keys=True, default=str) + "\n"

        with open(self.journal_path, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
        self._seq += 1

    @timed("state_compact")
    def compact(self, lock: StateLock, message: Optional[str] = None) -> None:
        """Fold the journal into a new snapshot and truncate the journal."""
        self._check_lock(lock)
        self._load(lock)

        if self._seq == self._serial and self.snapshot_path.exists():
            return

        body = {
            "schema_version": SCHEMA_VERSION,
            "serial": self._seq,
            "records": {addr: rec.to_dict() for addr, rec in sorted(self._records.items())},
        }
        document = {
            "schema_version": body["schema_version"],
            "serial": body["serial"],
            "checksum": compute_checksum(body),
            "records": body["records"],
        }

        tmp_path = self.snapshot_path.with_suffix(".yaml.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(yaml.safe_dump(document, default_flow_style=False, sort_keys=False))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.snapshot_path)

        # Snapshot covers everything up to serial; replay skips older entries
        with open(self.journal_path, "w", encoding="utf-8") as f:
            f.flush()
            os.fsync(f.fileno())
        self._serial = self._seq

        logger.info(f"Compacted state: {len(self._records)} records at serial {self._serial}")

        if self.git_enabled and self.git:
            self.git.commit(
                message=message or f"State serial {self._serial}",
                files=["snapshot.yaml"],
                author=lock.info.holder,
            )

    # === History ===

    def history(self, limit: int = 20) -> list[dict]:
        """Versions of the state snapshot, newest first."""
        if not self.git_enabled or not self.git:
            return []
        return [c.to_dict() for c in self.git.get_history("snapshot.yaml", limit=limit)]

    def snapshot_at(self, revision: str = "HEAD") -> Optional[dict[str, StateRecord]]:
        """Records as of a git revision of the snapshot."""
        if not self.git_enabled or not self.git:
            return None

        content = self.git.get_file_at_revision("snapshot.yaml", revision)
        if content is None:
            return None

        records, _ = self._parse_snapshot(content, f"{self.snapshot_path} at {revision}")
        return records
