"""Tests for retry utilities."""
import logging

import pytest

from mcp_infra_reconciler.providers import PermanentProviderError, TransientProviderError
from mcp_infra_reconciler.utils.retry import with_retry


class TestWithRetry:
    """Tests for retry decorator."""

    @pytest.mark.asyncio
    async def test_success_no_retry(self):
        """A successful call is made once."""
        call_count = 0

        @with_retry(max_attempts=3)
        async def succeeding_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await succeeding_func() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, caplog):
        """Throttling is retried until the call goes through."""
        call_count = 0

        @with_retry(max_attempts=4, min_wait=0, max_wait=0)
        async def throttled():
            nonlocal call_count
            call_count += 1
            if call_count < 4:
                raise TransientProviderError("throttled", "aws_vpc", 429)
            return call_count

        with caplog.at_level(logging.WARNING, logger="mcp_infra_reconciler.utils.retry"):
            assert await throttled() == 4

        assert "Attempt 1 of throttled failed (status 429)" in caplog.text

    @pytest.mark.asyncio
    async def test_max_attempts_exceeded(self):
        """The last transient error is re-raised after the final attempt."""
        call_count = 0

        @with_retry(max_attempts=3, min_wait=0, max_wait=0)
        async def always_throttled():
            nonlocal call_count
            call_count += 1
            raise TransientProviderError(f"throttled {call_count}", "aws_vpc", 503)

        with pytest.raises(TransientProviderError, match="throttled 3"):
            await always_throttled()
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_permanent_errors_not_retried(self):
        """Permanent provider errors propagate on the first attempt."""
        call_count = 0

        @with_retry(max_attempts=3, min_wait=0, max_wait=0)
        async def rejected():
            nonlocal call_count
            call_count += 1
            raise PermanentProviderError("invalid", "aws_vpc", 400)

        with pytest.raises(PermanentProviderError):
            await rejected()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_custom_exceptions(self):
        call_count = 0

        @with_retry(max_attempts=2, min_wait=0, max_wait=0, exceptions=(ConnectionResetError,))
        async def flaky():
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise ConnectionResetError("reset")
            return "ok"

        assert await flaky() == "ok"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_arguments_passed_through(self):
        @with_retry(max_attempts=1)
        async def create(resource_type, inputs, *, dry=False):
            return resource_type, inputs, dry

        assert await create("aws_vpc", {"cidr_block": "10.0.0.0/16"}, dry=True) == (
            "aws_vpc", {"cidr_block": "10.0.0.0/16"}, True,
        )
