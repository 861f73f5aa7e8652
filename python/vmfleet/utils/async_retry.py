"""
vmfleet/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure,
with optional exponential backoff and a list of exception types that must
never be retried (e.g. authentication failures).
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    backoff: float = 1.0,
    give_up_on: Tuple[Type[BaseException], ...] = (),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. The first
    retry waits `delay` seconds, and each further retry multiplies the wait by
    `backoff`. Exceptions listed in `give_up_on` are re-raised immediately.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
            Values below 1 are treated as a single attempt.
        delay (float, optional):
            Delay in seconds before the first retry. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.
        backoff (float, optional):
            Multiplier applied to the delay after each failed attempt. Defaults to 1.0.
        give_up_on (Tuple[Type[BaseException], ...], optional):
            Exception types that are never retried.

    Returns:
        Callable[[Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]]:
            A decorator that, when applied to an async function, returns a wrapped
            version that retries on exceptions.
    """
    total_attempts = max(retries, 1)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int, wait: float) -> R:
                try:
                    return await func(*args, **kwargs)
                except give_up_on:
                    raise
                except Exception as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for function %r failed. Error: %s",
                            attempt_number,
                            total_attempts,
                            func.__qualname__,
                            exc,
                        )
                    if remaining > 1:
                        await asyncio.sleep(wait)
                        return await attempt(
                            remaining - 1, attempt_number + 1, wait * backoff
                        )

                    if noisy:
                        logger.error(
                            "All %d attempts failed for function %r",
                            total_attempts,
                            func.__qualname__,
                        )
                    raise

            return await attempt(total_attempts, 1, delay)

        return wrapper

    return decorator
