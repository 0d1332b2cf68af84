"""
Tests for retry with exponential backoff
"""
import asyncio

import pytest

from clerksim.errors import MaxRetriesExceededError, QuotaExceededError, RateLimitError
from clerksim.retry import ResilientInvoker, exponential_backoff, invoke_with_retry, with_retries

from conftest import SleepRecorder


class Flaky:
    """Fails with the given errors in order, then returns ``value``"""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def test_backoff_schedule_doubles():
    assert [exponential_backoff(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]


def test_succeeds_on_third_attempt_after_two_rate_limits():
    sleep = SleepRecorder()
    fn = Flaky([RateLimitError(), Exception("HTTP 429 Too Many Requests")])

    result = asyncio.run(invoke_with_retry(fn, 3, sleep=sleep))

    assert result == "ok"
    assert fn.attempts == 3
    assert sleep.delays == [1.0, 2.0]


def test_non_transient_error_fails_immediately():
    sleep = SleepRecorder()
    fn = Flaky([ValueError("bad request")])

    with pytest.raises(ValueError):
        asyncio.run(invoke_with_retry(fn, 3, sleep=sleep))

    assert fn.attempts == 1
    assert sleep.delays == []


def test_quota_error_is_never_retried():
    sleep = SleepRecorder()
    fn = Flaky([QuotaExceededError("QUOTA_EXCEEDED: Daily limit reached")])

    with pytest.raises(QuotaExceededError):
        asyncio.run(invoke_with_retry(fn, 3, sleep=sleep))

    assert fn.attempts == 1
    assert sleep.delays == []


def test_exhaustion_raises_distinct_error_chained_to_last_failure():
    sleep = SleepRecorder()
    last = RateLimitError("still rate limited")
    fn = Flaky([RateLimitError(), RateLimitError(), last])

    with pytest.raises(MaxRetriesExceededError) as excinfo:
        asyncio.run(invoke_with_retry(fn, 3, sleep=sleep))

    assert excinfo.value.attempts == 3
    assert excinfo.value.__cause__ is last
    assert excinfo.value.last_error is last
    assert sleep.delays == [1.0, 2.0]


def test_rate_limit_marker_in_message_is_retried():
    sleep = SleepRecorder()
    fn = Flaky([Exception("Rate limit reached for requests")])

    assert asyncio.run(invoke_with_retry(fn, 2, sleep=sleep)) == "ok"
    assert sleep.delays == [1.0]


def test_custom_predicate_and_retry_callback():
    sleep = SleepRecorder()
    seen = []
    fn = Flaky([ConnectionError("reset")])

    result = asyncio.run(invoke_with_retry(
        fn, 3,
        is_retryable=lambda e: isinstance(e, ConnectionError),
        sleep=sleep,
        on_retry=lambda attempt, error: seen.append((attempt, str(error))),
    ))

    assert result == "ok"
    assert seen == [(1, "reset")]


def test_invoker_uses_its_policy():
    sleep = SleepRecorder()
    invoker = ResilientInvoker(max_retries=2, sleep=sleep)
    fn = Flaky([RateLimitError(), RateLimitError()])

    with pytest.raises(MaxRetriesExceededError):
        asyncio.run(invoker.invoke(fn))

    assert fn.attempts == 2
    assert sleep.delays == [1.0]


def test_invoker_honours_explicit_attempt_count():
    invoker = ResilientInvoker(max_retries=3, sleep=SleepRecorder())
    fn = Flaky([RateLimitError(), RateLimitError()])

    with pytest.raises(MaxRetriesExceededError) as exc_info:
        asyncio.run(invoker.invoke(fn, max_retries=1))

    assert fn.attempts == 1
    assert exc_info.value.attempts == 1


def test_zero_attempts_is_rejected():
    invoker = ResilientInvoker(sleep=SleepRecorder())
    fn = Flaky([])

    with pytest.raises(ValueError):
        asyncio.run(invoker.invoke(fn, max_retries=0))

    assert fn.attempts == 0


def test_with_retries_decorator():
    sleep = SleepRecorder()
    calls = []

    @with_retries(max_retries=3, sleep=sleep)
    async def fetch(value):
        calls.append(value)
        if len(calls) < 2:
            raise RateLimitError()
        return value * 2

    assert asyncio.run(fetch(21)) == 42
    assert calls == [21, 21]
