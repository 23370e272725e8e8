"""Audit logging for provider operations.

Every provider call made during an apply is recorded with:
- Timestamped entries per resource address
- Before/after attributes
- Structured JSON log format in a separate audit log file
"""
import json
import logging
import os
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

audit_logger = logging.getLogger("stackcraft.audit")

DEFAULT_AUDIT_DIR = os.path.expanduser("~/.stackcraft")


def get_audit_file(log_dir: Optional[str] = None) -> str:
    return os.path.join(log_dir or DEFAULT_AUDIT_DIR, "audit.log")


def setup_audit_logging(log_dir: Optional[str] = None) -> str:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to ~/.stackcraft/

    Returns:
        Path of the audit log file
    """
    if log_dir is None:
        log_dir = DEFAULT_AUDIT_DIR

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    audit_file = get_audit_file(log_dir)

    audit_logger.setLevel(logging.INFO)
    audit_logger.handlers.clear()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)

    # Don't propagate to root logger
    audit_logger.propagate = False
    return audit_file


@dataclass
class ChangeRecord:
    """Record of a single provider operation."""
    timestamp: str
    run_id: str
    address: str
    operation: str  # create, update, delete
    user: str
    success: bool
    attempts: int = 1
    resource_id: Optional[str] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    error: Optional[str] = None

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), indent=None, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        """Parse from JSON string."""
        data = json.loads(json_str)
        return cls(**data)


class ChangeTracker:
    """Track and log provider operations for one apply run."""

    def __init__(self, run_id: str, user: Optional[str] = None):
        self.run_id = run_id
        self.user = user or os.environ.get("USER", "system")
        self.records: list[ChangeRecord] = []

    def log_change(
        self,
        address: str,
        operation: str,
        success: bool,
        attempts: int = 1,
        resource_id: Optional[str] = None,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> ChangeRecord:
        """Log a provider operation.

        Args:
            address: Resource address (e.g., "aws_vpc.main")
            operation: The provider operation performed
            success: Whether the operation succeeded
            attempts: Number of attempts made (retries included)
            resource_id: Provider-side identifier, when known
            before: Attributes before the change
            after: Attributes after the change
            error: Error message if failed

        Returns:
            The ChangeRecord that was logged
        """
        record = ChangeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            run_id=self.run_id,
            address=address,
            operation=operation,
            user=self.user,
            success=success,
            attempts=attempts,
            resource_id=resource_id,
            before=before,
            after=after,
            error=error,
        )

        self.records.append(record)
        audit_logger.info(record.to_json())
        return record


def get_recent_changes(
    log_file: Optional[str] = None,
    address: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Read recent changes from the audit log.

    Args:
        log_file: Path to audit log. Defaults to ~/.stackcraft/audit.log
        address: Filter by resource address
        operation: Filter by operation type
        limit: Maximum number of records to return

    Returns:
        List of ChangeRecords, most recent first
    """
    if log_file is None:
        log_file = get_audit_file()

    if not os.path.exists(log_file):
        return []

    records = []
    with open(log_file, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = ChangeRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if address and record.address != address:
                continue
            if operation and record.operation != operation:
                continue

            records.append(record)

    return list(reversed(records[-limit:]))
