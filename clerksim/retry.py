"""
Retry with exponential backoff for AI service calls
"""
import asyncio
import inspect
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .config import BACKOFF_BASE_SECONDS, DEFAULT_MAX_RETRIES
from .errors import MaxRetriesExceededError, is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


def exponential_backoff(attempt: int, base: float = BACKOFF_BASE_SECONDS) -> float:
    """Delay in seconds before retry ``attempt`` (0-indexed): 1s, 2s, 4s, ..."""
    return (2 ** attempt) * base


async def invoke_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    *,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    backoff: Callable[[int], float] = exponential_backoff,
    sleep: Sleep = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException], Any]] = None,
) -> T:
    """
    Call ``fn`` up to ``max_retries`` times.

    Non-retryable errors propagate immediately. When every attempt fails with
    a retryable error, MaxRetriesExceededError is raised from the last one.
    """
    if max_retries < 1:
        raise ValueError(f"max_retries must be at least 1, got {max_retries}")
    last_error: Optional[BaseException] = None
    for attempt in range(max_retries):
        try:
            return await fn()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            if attempt == max_retries - 1:
                break
            delay = backoff(attempt)
            logger.info(f"Transient failure on attempt {attempt + 1}/{max_retries}, retrying in {delay}s: {e}")
            if on_retry is not None:
                outcome = on_retry(attempt + 1, e)
                if inspect.isawaitable(outcome):
                    await outcome
            await sleep(delay)

    logger.warning(f"Giving up after {max_retries} attempts: {last_error}")
    raise MaxRetriesExceededError(max_retries, last_error) from last_error


class ResilientInvoker:
    """Holds a retry policy so it can be shared by every AI call of a case."""

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        is_retryable: Callable[[BaseException], bool] = is_transient_error,
        backoff: Callable[[int], float] = exponential_backoff,
        sleep: Sleep = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.is_retryable = is_retryable
        self.backoff = backoff
        self.sleep = sleep

    async def invoke(self, fn: Callable[[], Awaitable[T]], max_retries: Optional[int] = None,
                     on_retry: Optional[Callable[[int, BaseException], Any]] = None) -> T:
        return await invoke_with_retry(
            fn,
            self.max_retries if max_retries is None else max_retries,
            is_retryable=self.is_retryable,
            backoff=self.backoff,
            sleep=self.sleep,
            on_retry=on_retry,
        )


def with_retries(max_retries: int = DEFAULT_MAX_RETRIES, **policy):
    """
    Decorator form of invoke_with_retry
    Usage:
        @with_retries(max_retries=3)
        async def call_service():
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await invoke_with_retry(lambda: func(*args, **kwargs), max_retries, **policy)

        return wrapper
    return decorator
