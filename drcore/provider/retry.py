"""Deadline + exponential backoff with jitter for provider calls."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .errors import ProviderError, RetryExhausted, Throttled, Unavailable

logger = logging.getLogger("drcore.provider.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter: float = 0.2  # fraction of the computed delay
    call_timeout_s: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""
        delay = min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))
        if self.jitter > 0 and delay > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay


async def with_deadline(aw: Awaitable[T], timeout_s: float | None, operation: str = "") -> T:
    """Await *aw*; an expired deadline is reported as Unavailable."""
    try:
        return await asyncio.wait_for(aw, timeout=timeout_s)
    except asyncio.TimeoutError:
        raise Unavailable(f"no response within {timeout_s}s", operation=operation) from None


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy,
    operation: str = "",
    **kwargs: Any,
) -> T:
    """Call ``fn`` until it succeeds, fails non-transiently, or attempts run out.

    Conflict, NotFound, Unauthorized and InvalidArgument propagate on the
    first occurrence. Throttled and Unavailable (including deadline expiry)
    are retried; the final one is wrapped in RetryExhausted.
    """
    op = operation or getattr(fn, "__name__", "call")
    last_exc: ProviderError | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await with_deadline(fn(*args, **kwargs), policy.call_timeout_s, op)
        except ProviderError as exc:
            if not exc.transient:
                raise
            last_exc = exc
        logger.warning("%s attempt %d/%d failed: %s", op, attempt, policy.max_attempts, last_exc)
        if attempt < policy.max_attempts:
            delay = policy.delay_for(attempt)
            if isinstance(last_exc, Throttled) and last_exc.retry_after:
                delay = max(delay, last_exc.retry_after)
            await asyncio.sleep(delay)

    assert last_exc is not None
    logger.error("%s failed after %d attempts: %s", op, policy.max_attempts, last_exc)
    raise RetryExhausted(last_exc, policy.max_attempts, operation=op)
