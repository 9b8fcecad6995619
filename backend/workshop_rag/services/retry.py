"""Retry policy value object and a generic async retry helper built on tenacity."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from workshop_rag.core.errors import ProviderError

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """``max_attempts`` counts the first call; delays grow as ``base_delay * 2^(n-1)``."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: Optional[float] = None
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.jitter < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_retries(
        cls,
        max_retries: int,
        base_delay: float,
        *,
        max_delay: Optional[float] = None,
        jitter: float = 0.0,
    ) -> "RetryPolicy":
        return cls(max_attempts=max_retries + 1, base_delay=base_delay, max_delay=max_delay, jitter=jitter)

    @property
    def max_retries(self) -> int:
        return self.max_attempts - 1

    def delay_for(self, attempt: int) -> float:
        """Deterministic part of the wait after the ``attempt``-th failure."""

        delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def wait_strategy(self):
        upper = self.max_delay if self.max_delay is not None else float("inf")
        strategy = wait_exponential(multiplier=self.base_delay, exp_base=2, min=0, max=upper)
        if self.jitter:
            strategy = strategy + wait_random(0, self.jitter)
        return strategy


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (ProviderError,),
    sleep: SleepFn = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` is exhausted.

    Only exceptions in ``retry_on`` are retried; anything else propagates on the
    first attempt. After the last attempt the final exception is re-raised as-is.
    """

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        wait = state.next_action.sleep if state.next_action else 0.0
        _LOGGER.warning(
            "%s failed, retrying (%d/%d) in %.2fs: %s",
            description,
            state.attempt_number,
            policy.max_retries,
            wait,
            exc,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait_strategy(),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    return await retrying(operation)
