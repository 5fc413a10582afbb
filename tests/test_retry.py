import pytest
from redis import exceptions as redis_errors
from sqlalchemy.exc import IntegrityError

from luckydraw import RetryPolicy, TransientError
from luckydraw.retry import is_transient


def flaky(failures, exc):
    calls = []

    async def op():
        calls.append(1)
        if len(calls) <= failures:
            raise exc
        return "done"

    return op, calls


async def test_transient_errors_are_retried_until_success():
    op, calls = flaky(2, redis_errors.ConnectionError("connection refused"))
    policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)

    assert await policy.run(op) == "done"
    assert len(calls) == 3


async def test_gives_up_after_max_attempts():
    op, calls = flaky(10, TransientError("deadline exceeded"))
    policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)

    with pytest.raises(TransientError):
        await policy.run(op)
    assert len(calls) == 3


async def test_permanent_errors_fail_fast():
    op, calls = flaky(1, ValueError("bad input"))

    with pytest.raises(ValueError):
        await RetryPolicy(base_delay=0).run(op)
    assert len(calls) == 1


def test_backoff_doubles_and_is_capped():
    policy = RetryPolicy()
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


async def test_waits_the_backoff_delay_between_attempts(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr("luckydraw.retry.asyncio.sleep", fake_sleep)
    op, _ = flaky(2, redis_errors.TimeoutError("slow"))

    await RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0).run(op)
    assert delays == [1.0, 2.0]


def test_integrity_errors_are_not_transient():
    assert not is_transient(IntegrityError("INSERT", {}, Exception("unique")))
    assert is_transient(redis_errors.ConnectionError())
