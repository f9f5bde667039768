import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from monitoring.async_utils import KeyedLock, RetryPolicy, run_tasks_with_cleanup, with_timeout
from strategy.exceptions import ExchangeGatewayError


class Flaky:
    def __init__(self, failures, error=ExchangeGatewayError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("boom")
        return 'ok'


def test_retry_policy_retries_until_success():
    sleeps = []

    async def sleep(delay):
        sleeps.append(delay)

    flaky = Flaky(2)
    policy = RetryPolicy.fixed(3, 1.5, retry_on=(ExchangeGatewayError,))
    assert asyncio.run(policy.run(flaky, 'sell', sleep=sleep)) == 'ok'
    assert flaky.calls == 3
    assert sleeps == [1.5, 1.5]


def test_retry_policy_gives_up():
    async def sleep(delay):
        return None

    flaky = Flaky(5)
    with pytest.raises(ExchangeGatewayError):
        asyncio.run(RetryPolicy.fixed(3, 0.0, retry_on=(ExchangeGatewayError,)).run(flaky, sleep=sleep))
    assert flaky.calls == 3


def test_retry_policy_does_not_retry_other_errors():
    flaky = Flaky(1, error=ValueError)
    with pytest.raises(ValueError):
        asyncio.run(RetryPolicy.fixed(3, 0.0, retry_on=(ExchangeGatewayError,)).run(flaky))
    assert flaky.calls == 1


def test_with_timeout_raises_gateway_error():
    with pytest.raises(ExchangeGatewayError):
        asyncio.run(with_timeout(asyncio.sleep(1), 0.01, 'get_portfolio'))


def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    events = []

    async def worker(name, key):
        async with locks.acquire(key):
            events.append(f"{name}-in")
            await asyncio.sleep(0)
            events.append(f"{name}-out")

    async def _run():
        await asyncio.gather(worker('a', 'k'), worker('b', 'k'))

    asyncio.run(_run())
    assert events == ['a-in', 'a-out', 'b-in', 'b-out']
    assert len(locks) == 0


def test_run_tasks_with_cleanup_runs_cleanup():
    cleaned = []

    async def _cleanup():
        cleaned.append(True)

    async def _run():
        tasks = [asyncio.create_task(asyncio.sleep(0))]
        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    asyncio.run(_run())
    assert cleaned == [True]
