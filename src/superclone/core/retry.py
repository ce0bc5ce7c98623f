"""Retry policy with exponential backoff.

One policy object is applied uniformly by the reconciler to provider page
fetches and to git network operations instead of ad-hoc loops at each call
site.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from superclone.config.schema import RetryConfig
from superclone.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, BaseException, float], Awaitable[None] | None]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff retry policy.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay in seconds before the second attempt
        max_delay: Upper bound for any single delay
        multiplier: Growth factor between consecutive delays
        retry_on: Exception types that are retryable; anything else propagates
        sleep: Awaitable sleep function (replaced in tests)
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    retry_on: tuple[type[BaseException], ...] = ()
    sleep: Sleep = field(default=asyncio.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_config(
        cls,
        config: RetryConfig,
        retry_on: tuple[type[BaseException], ...],
        sleep: Optional[Sleep] = None,
    ) -> "RetryPolicy":
        """Build a policy from the [sync.retry] configuration section."""
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            multiplier=config.multiplier,
            retry_on=retry_on,
            sleep=sleep or asyncio.sleep,
        )

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Return the delay after the given (1-based) failed attempt.

        A ``retry_after`` hint on the error raises the delay, but never above
        max_delay.
        """
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        hint = getattr(exc, "retry_after", None)
        if isinstance(hint, (int, float)) and hint > delay:
            delay = float(hint)
        return min(delay, self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: Optional[RetryHook] = None,
    ) -> T:
        """Await ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            on_retry: Optional hook called with (attempt, error, delay) before
                each backoff sleep

        Returns:
            The operation result

        Raises:
            The last error when it is not retryable or attempts are exhausted
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except self.retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "retry_exhausted",
                        attempts=attempt,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    raise
                delay = self.delay_for(attempt, exc)
                logger.info(
                    "retry_scheduled",
                    attempt=attempt,
                    delay=delay,
                    error_type=type(exc).__name__,
                )
                if on_retry is not None:
                    result = on_retry(attempt, exc, delay)
                    if asyncio.iscoroutine(result):
                        await result
                await self.sleep(delay)
                attempt += 1
