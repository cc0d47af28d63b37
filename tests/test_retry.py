import asyncio

import pytest

from voxrelay.errors import ConfigurationError, RateLimitError
from voxrelay.streaming.retry import RecoveryBudget, RetryPolicy


def test_retry_policy_schedule_is_bounded():
    p = RetryPolicy(max_attempts=4, base_delay_sec=1.0, multiplier=2.0, max_delay_sec=3.0)
    assert p.schedule() == (1.0, 2.0, 3.0)
    assert RetryPolicy(max_attempts=1).schedule() == ()


def test_retry_policy_retries_listed_errors_then_succeeds():
    sleeps = []
    calls = {"n": 0}

    async def fake_sleep(sec):
        sleeps.append(sec)

    async def fn():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RateLimitError("429")
        return "ok"

    out = asyncio.run(RetryPolicy(max_attempts=2, base_delay_sec=1.0).run(fn, (RateLimitError,), sleep=fake_sleep))
    assert out == "ok"
    assert calls["n"] == 2
    assert sleeps == [1.0]


def test_retry_policy_gives_up_after_max_attempts():
    calls = {"n": 0}

    async def fake_sleep(sec):
        return None

    async def fn():
        calls["n"] += 1
        raise RateLimitError("429")

    with pytest.raises(RateLimitError):
        asyncio.run(RetryPolicy(max_attempts=2).run(fn, (RateLimitError,), sleep=fake_sleep))
    assert calls["n"] == 2


def test_retry_policy_does_not_retry_other_errors():
    calls = {"n": 0}

    async def fn():
        calls["n"] += 1
        raise ConfigurationError("missing key")

    with pytest.raises(ConfigurationError):
        asyncio.run(RetryPolicy(max_attempts=3).run(fn, (RateLimitError,)))
    assert calls["n"] == 1


def test_recovery_budget_caps_and_resets():
    b = RecoveryBudget(max_consecutive=2)
    assert b.try_acquire() is True
    assert b.try_acquire() is True
    assert b.try_acquire() is False
    b.reset()
    assert b.try_acquire() is True
    assert RecoveryBudget(max_consecutive=0).try_acquire() is False
