"""Retry, attempt budget, and cancellation primitives.

All bounded loops in the agent (backend retries, per-step refinement,
self-healing attempts) take a :class:`RetryPolicy` so the bounds compose
visibly. :class:`AttemptBudget` caps the total number of correction calls
spent on a single failure across those layers, and :class:`CancellationToken`
is threaded through every suspension point.
"""

import asyncio

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from e2e_agent.core.exceptions import OperationCancelled


# =============================================================================
# CANCELLATION
# =============================================================================


class CancellationToken:
    """Cooperative cancellation signal backed by an :class:`asyncio.Event`.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel("user abort")
        >>> token.cancelled
        True
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.debug(f"Cancellation requested: {reason}")

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelled if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelled(f"Operation cancelled: {self.reason}")

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            OperationCancelled: If the token fires during the sleep.
        """
        if seconds <= 0:
            self.raise_if_cancelled()
            return

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({waiter}, timeout=seconds)
        finally:
            if not waiter.done():
                waiter.cancel()
        self.raise_if_cancelled()


def check_cancelled(token: CancellationToken | None) -> None:
    """Raise if an optional token has been cancelled."""
    if token is not None:
        token.raise_if_cancelled()


# =============================================================================
# RETRY POLICY
# =============================================================================


class RetryPolicy(BaseModel):
    """Bounded retry with capped exponential backoff.

    ``delay_for(n)`` is ``min(base_delay_ms * 2**n, max_delay_ms)`` where ``n``
    is the zero-based index of the attempt that just failed.

    Example:
        >>> policy = RetryPolicy(max_attempts=3, base_delay_ms=1000, max_delay_ms=5000)
        >>> [policy.delay_for(n) for n in range(4)]
        [1000, 2000, 4000, 5000]
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Total attempts allowed")
    base_delay_ms: int = Field(default=1000, ge=0, description="Backoff base")
    max_delay_ms: int = Field(default=5000, ge=0, description="Backoff cap")

    def delay_for(self, attempt: int) -> int:
        """Backoff delay in milliseconds after the given failed attempt."""
        return min(self.base_delay_ms * (2**attempt), self.max_delay_ms)

    def attempts(self) -> range:
        """Zero-based attempt indices."""
        return range(self.max_attempts)

    def is_last(self, attempt: int) -> bool:
        """Whether ``attempt`` is the final allowed attempt."""
        return attempt >= self.max_attempts - 1

    async def sleep(self, attempt: int, token: CancellationToken | None = None) -> None:
        """Wait out the backoff for ``attempt``, honouring cancellation."""
        seconds = self.delay_for(attempt) / 1000
        if token is not None:
            await token.sleep(seconds)
        elif seconds > 0:
            await asyncio.sleep(seconds)

    @classmethod
    def no_backoff(cls, max_attempts: int) -> "RetryPolicy":
        """Policy that retries immediately."""
        return cls(max_attempts=max_attempts, base_delay_ms=0, max_delay_ms=0)


# =============================================================================
# ATTEMPT BUDGET
# =============================================================================


class AttemptBudget:
    """Shared cap on model correction calls spent on one failure.

    The self-healing loop and selector refinement draw from the same budget,
    so nested loops can never multiply into an unbounded number of calls.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("Attempt budget limit must be at least 1")
        self.limit = limit
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def consume(self, label: str = "call") -> bool:
        """Take one unit from the budget.

        Returns:
            True if a unit was available, False if the budget is spent.
        """
        if self.exhausted:
            logger.warning(f"Attempt budget exhausted ({self.limit}) before {label}")
            return False
        self.used += 1
        logger.debug(f"Attempt budget: {label} ({self.used}/{self.limit})")
        return True
