"""Retry helpers for calls to the payment gateway.

Exponential backoff with jitter via tenacity; retries are logged and the
last exception is re-raised once the attempt budget is spent.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import ParamSpec, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from propnova.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behaviour.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        initial_delay: Delay in seconds before the first retry.
        max_delay: Upper bound on any single delay.
        jitter_max: Maximum random jitter added to each delay.
        retry_exceptions: Exception types that trigger a retry.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    jitter_max: float = 0.5
    retry_exceptions: tuple[type[Exception], ...] = (Exception,)


def retry_with_backoff(
    config: RetryConfig | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorate a coroutine function with retry and exponential backoff."""
    config = config or RetryConfig()

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(config.max_attempts),
                    wait=wait_exponential_jitter(
                        initial=config.initial_delay,
                        max=config.max_delay,
                        jitter=config.jitter_max,
                    ),
                    retry=retry_if_exception_type(config.retry_exceptions),
                    reraise=True,
                ):
                    with attempt:
                        logger.debug(
                            "retry_attempt",
                            function=func.__name__,
                            attempt=attempt.retry_state.attempt_number,
                            max_attempts=config.max_attempts,
                        )
                        return await func(*args, **kwargs)
            except RetryError as e:
                logger.error(
                    "retry_exhausted",
                    function=func.__name__,
                    attempts=config.max_attempts,
                    last_exception=str(e.last_attempt.exception()),
                )
                raise

            raise RuntimeError("Retry loop exited unexpectedly")

        return wrapper

    return decorator


GATEWAY_VALIDATION_RETRY = RetryConfig(
    max_attempts=3,
    initial_delay=0.5,
    max_delay=5.0,
    jitter_max=0.5,
    retry_exceptions=(httpx.TransportError, httpx.HTTPStatusError),
)
