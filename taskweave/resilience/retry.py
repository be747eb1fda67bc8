"""Retry utilities for handling transient failures.

Provides a retry policy with capped exponential backoff for async
operations. Only errors whose *code* is listed as retryable are retried; any
other error, or the error raised by the last attempt, propagates unmodified
(the very same exception object, with all of its attributes).

Key Exports:
    RetryConfig: Backoff configuration.
    with_retry: Run an async operation under a retry policy.
    async_retry: Decorator form of ``with_retry``.
    error_code: Resolve the code used to classify an exception.

Example:
    >>> config = RetryConfig(max_attempts=5, initial_delay=0.2)
    >>> data = await with_retry(lambda: store.read("state.json"), config)

Backoff Formula:
    delay(1) = initial_delay
    delay(n + 1) = min(delay(n) * backoff_multiplier, max_delay)

Composition:
    Wrap retry *inside* a circuit breaker so a burst of transient retries
    counts as a single failure of the outer call::

        await breaker.execute(lambda: with_retry(op, config))
"""

import asyncio
import errno
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, Field, model_validator

log = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_RETRYABLE_ERROR_CODES = frozenset({"EBUSY", "EAGAIN", "ETIMEDOUT"})


class RetryConfig(BaseModel):
    """Retry policy configuration. Delays are in seconds."""

    max_attempts: int = Field(default=3, ge=1, description="Total attempts including the first one")
    initial_delay: float = Field(default=0.1, ge=0.0, description="Delay before the first retry")
    max_delay: float = Field(default=5.0, ge=0.0, description="Upper bound for any single delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor between delays")
    retryable_error_codes: frozenset[str] = Field(
        default=DEFAULT_RETRYABLE_ERROR_CODES,
        description="Error codes that trigger a retry",
    )

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfig":
        """Reject an initial delay above the cap."""
        if self.initial_delay > self.max_delay:
            raise ValueError("initial_delay must not exceed max_delay")
        return self


def error_code(error: BaseException) -> str | None:
    """Resolve the code used to decide whether ``error`` is retryable.

    Resolution order: a string ``code`` attribute (taskweave errors and
    most library errors), then the errno name of an ``OSError``
    (``EBUSY``, ``EAGAIN``, ...).

    Args:
        error: Exception to classify

    Returns:
        The code, or None when the error carries none.
    """
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno)
    return None


def is_retryable(error: BaseException, retryable_error_codes: frozenset[str] | set[str]) -> bool:
    """Check whether ``error`` has a code listed in ``retryable_error_codes``."""
    code = error_code(error)
    return code is not None and code in retryable_error_codes


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    sleep: Sleep = asyncio.sleep,
    name: str | None = None,
) -> T:
    """Execute ``operation`` with retry logic and exponential backoff.

    Args:
        operation: Zero-argument callable returning an awaitable
        config: Retry policy; defaults to ``RetryConfig()``
        sleep: Awaitable sleep used between attempts (injectable for tests)
        name: Operation name used in log events

    Returns:
        The result of the first successful attempt.

    Raises:
        The original exception when it is not retryable or when the last
        attempt fails.
    """
    config = config or RetryConfig()
    op_name = name or getattr(operation, "__name__", "operation")
    delay = config.initial_delay

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e, config.retryable_error_codes):
                raise

            if attempt == config.max_attempts:
                log.error(
                    "retry_exhausted",
                    operation=op_name,
                    attempts=attempt,
                    error=str(e),
                )
                raise

            log.warning(
                "retry_attempt",
                operation=op_name,
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=delay,
                error_code=error_code(e),
            )
            await sleep(delay)
            delay = min(delay * config.backoff_multiplier, config.max_delay)

    # max_attempts >= 1 guarantees the loop returns or raises
    raise RuntimeError("Retry logic error")


def async_retry(
    config: RetryConfig | None = None,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Decorator form of :func:`with_retry`.

    Example:
        >>> @async_retry(RetryConfig(max_attempts=5))
        ... async def read_index() -> str:
        ...     return await store.read("tasks/index.json")
    """

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await with_retry(lambda: func(*args, **kwargs), config, name=func.__name__)

        return wrapper

    return decorator
