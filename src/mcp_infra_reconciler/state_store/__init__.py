"""State store package for recorded actual state.

This package provides:
- StateStore / FileStateStore: durable per-address records with a journal
- StateRecord: last-applied state of one resource
- StateLock: exclusive handle required by every read and write

Directory structure managed:
    ~/.stackcraft/state/
    ├── snapshot.yaml     # compacted records + checksum
    ├── journal.jsonl     # mutations since the last snapshot
    └── state.lock        # lock record while a run holds the store
"""

from .store import (
    StateStore,
    FileStateStore,
    StateRecord,
    StateCorruptionError,
    SCHEMA_VERSION,
    DEFAULT_STATE_DIR,
    compute_checksum,
    fingerprint_inputs,
)
from .lock import (
    StateLock,
    LockInfo,
    StateLockError,
    LockTimeoutError,
    LockNotHeldError,
)
from .git_manager import GitManager, CommitInfo, GitError

__all__ = [
    "StateStore",
    "FileStateStore",
    "StateRecord",
    "StateCorruptionError",
    "SCHEMA_VERSION",
    "DEFAULT_STATE_DIR",
    "compute_checksum",
    "fingerprint_inputs",
    "StateLock",
    "LockInfo",
    "StateLockError",
    "LockTimeoutError",
    "LockNotHeldError",
    "GitManager",
    "CommitInfo",
    "GitError",
]
