"""
Retry utilities with exponential backoff.

Used for idempotent reads against the exchange and chain RPC nodes. Transfer
submission (signer transfer, exchange withdraw) is never retried here: a
retried submission could move funds twice.

Usage:
    from sardis_settlement.retry import retry_async, EXCHANGE_READ_RETRY

    balance = await retry_async(client.get_json, "/api/v3/account", config=EXCHANGE_READ_RETRY)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, Type, TypeVar

from .exceptions import TransientNetworkError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retryable_exceptions: Exception types that trigger retries
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple[Type[BaseException], ...] = (TransientNetworkError,)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt number (0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        return isinstance(exception, self.retryable_exceptions)


EXCHANGE_READ_RETRY = RetryConfig(max_retries=3, base_delay=0.5, max_delay=5.0, jitter=0.2)

NO_RETRY = RetryConfig(max_retries=0)


class RetryExhausted(TransientNetworkError):
    """Raised when all retry attempts have been exhausted."""

    error_code = "RETRY_EXHAUSTED"

    def __init__(self, message: str, attempts: int, original_exception: BaseException) -> None:
        super().__init__(message, details={"attempts": attempts})
        self.attempts = attempts
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Non-retryable exceptions propagate unchanged on the first failure.

    Raises:
        RetryExhausted: If every attempt failed with a retryable exception
    """
    if config is None:
        config = RetryConfig()

    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e):
                raise
            last_exception = e
            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        attempts=config.max_retries + 1,
        original_exception=last_exception,
    ) from last_exception
