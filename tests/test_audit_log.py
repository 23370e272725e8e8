"""Tests for audit logging."""
import logging

import pytest

from mcp_infra_reconciler.utils.audit_log import (
    ChangeRecord,
    ChangeTracker,
    audit_logger,
    get_recent_changes,
    setup_audit_logging,
)


@pytest.fixture
def audit_file(tmp_path):
    path = setup_audit_logging(str(tmp_path))
    yield path
    for handler in list(audit_logger.handlers):
        handler.close()
        audit_logger.removeHandler(handler)


class TestChangeTracker:
    """Tests for ChangeTracker and reading the log back."""

    def test_log_change(self, audit_file):
        tracker = ChangeTracker(run_id="run-1", user="alice")

        record = tracker.log_change(
            address="aws_vpc.main",
            operation="create",
            success=True,
            resource_id="vpc-1",
            after={"id": "vpc-1"},
        )

        assert record.user == "alice"
        assert tracker.records == [record]

    def test_read_back_most_recent_first(self, audit_file):
        """Entries are read back newest first."""
        tracker = ChangeTracker(run_id="run-1", user="alice")
        tracker.log_change(address="aws_vpc.main", operation="create", success=True)
        tracker.log_change(
            address="aws_subnet.public", operation="create", success=False,
            attempts=4, error="throttled",
        )
        for handler in audit_logger.handlers:
            handler.flush()

        records = get_recent_changes(audit_file)

        assert [r.address for r in records] == ["aws_subnet.public", "aws_vpc.main"]
        assert records[0].attempts == 4
        assert records[0].error == "throttled"

    def test_filters(self, audit_file):
        tracker = ChangeTracker(run_id="run-1")
        tracker.log_change(address="aws_vpc.main", operation="create", success=True)
        tracker.log_change(address="aws_vpc.main", operation="delete", success=True)
        tracker.log_change(address="aws_subnet.public", operation="delete", success=True)
        for handler in audit_logger.handlers:
            handler.flush()

        by_address = get_recent_changes(audit_file, address="aws_vpc.main")
        by_operation = get_recent_changes(audit_file, operation="delete", limit=1)

        assert len(by_address) == 2
        assert [r.address for r in by_operation] == ["aws_subnet.public"]

    def test_malformed_lines_skipped(self, tmp_path):
        path = tmp_path / "audit.log"
        good = ChangeRecord(
            timestamp="2024-01-01T00:00:00+00:00",
            run_id="run-1",
            address="aws_vpc.main",
            operation="create",
            user="alice",
            success=True,
        )
        path.write_text("not json\n" + good.to_json() + "\n")

        assert [r.address for r in get_recent_changes(str(path))] == ["aws_vpc.main"]

    def test_missing_file(self, tmp_path):
        assert get_recent_changes(str(tmp_path / "none.log")) == []

    def test_not_propagated(self, audit_file):
        assert audit_logger.propagate is False
        assert audit_logger.level == logging.INFO
