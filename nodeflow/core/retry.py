"""Bounded retry with backoff for async operations."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from nodeflow.core.graph_schema import NodeDefinition

logger = logging.getLogger(__name__)

RetryStrategy = Literal["linear", "exponential", "fibonacci"]


class RetryExhaustedError(Exception):
    """All retry attempts failed without a recorded error."""

    pass


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    enabled: bool = False
    max_retries: int = 3
    delay: float = 1.0  # seconds
    strategy: RetryStrategy = "exponential"
    retry_on_errors: list[str] | None = None  # substrings of retryable messages


@dataclass
class RetryResult:
    success: bool
    result: Any = None
    error: BaseException | None = None
    attempts: int = 0
    total_time: float = 0.0  # seconds


def _fibonacci(n: int) -> int:
    """fib(1) = fib(2) = 1."""
    a, b = 1, 1
    for _ in range(2, n):
        a, b = b, a + b
    return b


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RetryHandler:
    """Run an async callable with bounded retries."""

    @staticmethod
    def calculate_delay(attempt: int, base: float, strategy: RetryStrategy) -> float:
        """Delay before retry number `attempt` (1-indexed)."""
        if strategy == "linear":
            return base * attempt
        if strategy == "fibonacci":
            return base * _fibonacci(attempt)
        return base * 2 ** (attempt - 1)

    @staticmethod
    def is_retryable(error: BaseException, retry_on_errors: list[str] | None) -> bool:
        if not retry_on_errors:
            return True
        message = str(error)
        return any(pattern in message for pattern in retry_on_errors)

    @classmethod
    async def execute_with_retry(
        cls,
        fn: Callable[[], Awaitable[Any]],
        config: RetryConfig,
        on_retry: Callable[[int, BaseException], Any] | None = None,
    ) -> RetryResult:
        """
        Call fn until it succeeds or attempts run out.

        Attempt 0 is the first try; the loop ends once attempt > max_retries,
        so a function that always fails is called max_retries + 1 times.

        Returns:
            RetryResult; never raises for failures of fn
        """
        start = time.monotonic()
        attempt = 0
        last_error: BaseException | None = None

        while attempt <= config.max_retries:
            try:
                result = await fn()
                return RetryResult(
                    success=True,
                    result=result,
                    attempts=attempt + 1,
                    total_time=time.monotonic() - start,
                )
            except Exception as e:
                last_error = e
                attempt += 1

                if not cls.is_retryable(e, config.retry_on_errors):
                    logger.debug(f"Non-retryable error, giving up: {e}")
                    break
                if attempt > config.max_retries:
                    break

                delay = cls.calculate_delay(attempt, config.delay, config.strategy)
                logger.info(
                    f"Attempt {attempt} failed: {e}. Retrying in {delay:.2f}s "
                    f"({attempt}/{config.max_retries})"
                )
                if on_retry is not None:
                    await _maybe_await(on_retry(attempt, e))
                await asyncio.sleep(delay)

        return RetryResult(
            success=False,
            error=last_error,
            attempts=attempt,
            total_time=time.monotonic() - start,
        )

    @classmethod
    async def retry(
        cls,
        fn: Callable[[], Awaitable[Any]],
        max_attempts: int = 3,
        delay: float = 1.0,
        backoff: RetryStrategy = "exponential",
        on_retry: Callable[[int, BaseException], Any] | None = None,
    ) -> Any:
        """Return fn's result or re-raise its last error."""
        config = RetryConfig(
            enabled=True,
            max_retries=max(max_attempts - 1, 0),
            delay=delay,
            strategy=backoff,
        )
        result = await cls.execute_with_retry(fn, config, on_retry)
        if result.success:
            return result.result
        if result.error is not None:
            raise result.error
        raise RetryExhaustedError(f"Failed after {result.attempts} attempts")

    @staticmethod
    def parse_retry_config(definition: NodeDefinition) -> RetryConfig:
        return RetryConfig(
            enabled=definition.retry_on_fail,
            max_retries=definition.max_retries,
            delay=definition.retry_delay,
            strategy=definition.retry_strategy,
            retry_on_errors=definition.retry_on_errors,
        )
