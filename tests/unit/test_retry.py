"""Unit tests for retry, budget, and cancellation primitives."""

import asyncio

import pytest

from e2e_agent.core.exceptions import OperationCancelled
from e2e_agent.core.retry import AttemptBudget, CancellationToken, RetryPolicy, check_cancelled


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_capped_exponential_delay(self):
        policy = RetryPolicy(max_attempts=5, base_delay_ms=1000, max_delay_ms=5000)

        assert [policy.delay_for(n) for n in range(5)] == [1000, 2000, 4000, 5000, 5000]

    def test_attempts_and_last(self):
        policy = RetryPolicy.no_backoff(3)

        assert list(policy.attempts()) == [0, 1, 2]
        assert not policy.is_last(1)
        assert policy.is_last(2)
        assert policy.delay_for(2) == 0

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    @pytest.mark.asyncio
    async def test_sleep_cancelled(self):
        """Test that a cancelled token interrupts the backoff."""
        token = CancellationToken()
        token.cancel("shutdown")
        policy = RetryPolicy(max_attempts=2, base_delay_ms=10_000, max_delay_ms=10_000)

        with pytest.raises(OperationCancelled, match="shutdown"):
            await asyncio.wait_for(policy.sleep(0, token), timeout=1)


class TestAttemptBudget:
    """Tests for AttemptBudget."""

    def test_consume_until_exhausted(self):
        budget = AttemptBudget(2)

        assert budget.consume("first")
        assert budget.consume("second")
        assert budget.exhausted
        assert budget.remaining == 0
        assert not budget.consume("third")
        assert budget.used == 2

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            AttemptBudget(0)


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel_keeps_first_reason(self):
        token = CancellationToken()

        token.cancel("first")
        token.cancel("second")

        assert token.cancelled
        assert token.reason == "first"

    def test_check_cancelled(self):
        check_cancelled(None)
        token = CancellationToken()
        check_cancelled(token)

        token.cancel()
        with pytest.raises(OperationCancelled):
            check_cancelled(token)

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel("stop")

        asyncio.ensure_future(cancel_soon())
        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(token.sleep(5), timeout=1)

    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        token = CancellationToken()

        await token.sleep(0.001)

        assert not token.cancelled
