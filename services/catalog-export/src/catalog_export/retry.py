"""
Retry utilities with exponential backoff and jitter.
A single RetryPolicy object is injected wherever remote calls are made, so every
Commerce source and storage backend shares one implementation of the backoff rules.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from catalog_export.exceptions import ExportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_retryable(exc: Exception) -> bool:
    """Export errors carry their own retryable flag; anything else is not retried."""
    return isinstance(exc, ExportError) and exc.retryable


class RetryPolicy:
    """Configuration and execution of retry behaviour."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
        jitter_range: Tuple[float, float] = (0.5, 1.5),
        retryable: Callable[[Exception], bool] = default_retryable,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.jitter_range = jitter_range
        self.retryable = retryable

    @classmethod
    def fixed(cls, max_attempts: int, delay: float, **kwargs) -> "RetryPolicy":
        """Policy that waits the same delay between every attempt."""
        return cls(max_attempts=max_attempts, base_delay=delay, exponential_base=1.0, **kwargs)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given zero-based attempt."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_factor = random.uniform(*self.jitter_range)
            delay *= jitter_factor

        return delay

    def should_retry(self, exc: Exception, attempt: int) -> bool:
        """Whether a failure on zero-based ``attempt`` deserves another try."""
        return attempt < self.max_attempts - 1 and self.retryable(exc)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "operation",
        on_retry: Optional[Callable[[Exception, int], None]] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails with a non-retryable error,
        or the attempt budget is spent. The last exception is re-raised.
        """
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt > 0:
                        logger.error(
                            f"All {attempt + 1} attempts failed for {description}: {e}"
                        )
                    raise

                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_attempts} failed for "
                    f"{description}: {e}. Retrying in {delay:.2f}s"
                )
                if on_retry:
                    on_retry(e, attempt + 1)
                await asyncio.sleep(delay)

        raise RuntimeError("Retry loop completed without success or exception")
