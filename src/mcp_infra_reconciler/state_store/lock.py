"""Exclusive lock over the state store.

The lock is a companion record (``state.lock``) created with O_EXCL next to
the state files. Whoever created the file holds the lock until it is removed.
The record names the holder so a blocked run can report who it waited on.
"""
import json
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class StateLockError(Exception):
    """Base class for state lock failures."""
    pass


class LockTimeoutError(StateLockError):
    """The lock could not be acquired within the timeout."""

    def __init__(self, message: str, holder: Optional["LockInfo"] = None):
        self.holder = holder
        super().__init__(message)


class LockNotHeldError(StateLockError):
    """A state operation was attempted without holding the live lock."""
    pass


@dataclass
class LockInfo:
    """Contents of the lock record."""
    lock_id: str
    holder: str
    operation: str
    pid: int
    hostname: str
    acquired_at: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "LockInfo":
        return cls(**json.loads(raw))

    def describe(self) -> str:
        return (
            f"lock {self.lock_id} held by {self.holder} "
            f"(pid {self.pid} on {self.hostname}, operation '{self.operation}', "
            f"since {self.acquired_at})"
        )


class StateLock:
    """Handle for an acquired lock.

    Pass it to every state store call. Use as a context manager so the lock
    is released on every exit path:

        with store.acquire_lock(timeout=30, operation="apply") as lock:
            records = store.read_all(lock)
    """

    def __init__(self, lock_file: "LockFile", info: LockInfo):
        self._lock_file = lock_file
        self.info = info
        self.released = False

    @property
    def lock_id(self) -> str:
        return self.info.lock_id

    @property
    def path(self) -> Path:
        return self._lock_file.path

    def release(self) -> None:
        """Release the lock. Safe to call more than once."""
        if self.released:
            return
        self._lock_file.release(self)
        self.released = True

    def __enter__(self) -> "StateLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"<StateLock {self.lock_id} {state}>"


class LockFile:
    """Lock record on the local filesystem."""

    def __init__(self, path: Path, poll_interval: float = 0.1):
        self.path = Path(path)
        self.poll_interval = poll_interval

    def acquire(
        self,
        timeout: float,
        operation: str = "",
        holder: Optional[str] = None,
    ) -> StateLock:
        """Acquire the lock, waiting up to ``timeout`` seconds.

        Raises:
            LockTimeoutError: If another holder keeps the lock past the timeout
        """
        info = LockInfo(
            lock_id=str(uuid.uuid4()),
            holder=holder or os.environ.get("USER", "unknown"),
            operation=operation,
            pid=os.getpid(),
            hostname=socket.gethostname(),
            acquired_at=datetime.now(timezone.utc).isoformat(),
        )
        deadline = time.monotonic() + max(timeout, 0)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if time.monotonic() >= deadline:
                    current = self.read_info()
                    detail = current.describe() if current else "unknown holder"
                    raise LockTimeoutError(
                        f"Timed out after {timeout}s waiting for state lock: {detail}",
                        holder=current,
                    )
                time.sleep(self.poll_interval)
                continue

            try:
                os.write(fd, info.to_json().encode())
                os.fsync(fd)
            finally:
                os.close(fd)

            logger.info(f"Acquired state lock {info.lock_id} for '{operation}'")
            return StateLock(self, info)

    def read_info(self) -> Optional[LockInfo]:
        """Read the current lock record, if any."""
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return None
        try:
            return LockInfo.from_json(raw)
        except (ValueError, TypeError):
            # Holder crashed mid-write; report it rather than guess
            logger.warning(f"Unreadable lock record at {self.path}")
            return None

    def is_held_by(self, lock: StateLock) -> bool:
        current = self.read_info()
        return current is not None and current.lock_id == lock.lock_id

    def release(self, lock: StateLock) -> None:
        """Remove the lock record if it still belongs to ``lock``."""
        if not self.is_held_by(lock):
            logger.warning(
                f"State lock {lock.lock_id} was no longer held at release "
                f"(force-unlocked?)"
            )
            return
        self.path.unlink()
        logger.info(f"Released state lock {lock.lock_id}")

    def force_unlock(self, lock_id: str) -> bool:
        """Remove a stale lock, only if its id matches ``lock_id``."""
        current = self.read_info()
        if current is None:
            if self.path.exists():
                raise StateLockError(
                    f"Lock record at {self.path} is unreadable; remove it manually"
                )
            return False
        if current.lock_id != lock_id:
            raise StateLockError(
                f"Lock id mismatch: given {lock_id}, current {current.lock_id}"
            )
        self.path.unlink()
        logger.warning(f"Force-unlocked state lock {lock_id} ({current.describe()})")
        return True
