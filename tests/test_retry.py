import asyncio

import pytest

from robust_logs.retry import CallExecutor
from robust_logs.rpc import TransportError, UnknownRPCError

from conftest import FakeGateway


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []

    async def fake_sleep(delay, *args, **kwargs):
        recorded.append(delay)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return recorded


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [0, 1, 3])
async def test_succeeds_after_k_failures(sleeps, failures):
    gateway = FakeGateway(head=77)
    gateway.failures["eth_blockNumber"] = [TransportError("down")] * failures
    executor = CallExecutor(gateway, max_retries=3, retry_delay=1.0)

    assert await executor.execute("eth_blockNumber") == hex(77)
    assert len(gateway.calls) == failures + 1


@pytest.mark.asyncio
async def test_fails_with_last_error_after_max_retries_plus_one(sleeps):
    gateway = FakeGateway()
    errors = [TransportError(f"down {i}") for i in range(5)]
    gateway.failures["eth_blockNumber"] = list(errors)
    executor = CallExecutor(gateway, max_retries=3, retry_delay=1.0)

    with pytest.raises(TransportError) as exc_info:
        await executor.execute("eth_blockNumber")

    assert exc_info.value is errors[3]
    assert len(gateway.calls) == 4


@pytest.mark.asyncio
async def test_backoff_is_linear(sleeps):
    gateway = FakeGateway()
    gateway.failures["eth_blockNumber"] = [UnknownRPCError("boom")] * 4
    executor = CallExecutor(gateway, max_retries=3, retry_delay=0.5)

    with pytest.raises(UnknownRPCError):
        await executor.execute("eth_blockNumber")

    assert sleeps == [0.5, 1.0, 1.5]


@pytest.mark.asyncio
async def test_per_call_overrides(sleeps):
    gateway = FakeGateway()
    gateway.failures["eth_blockNumber"] = [TransportError("down")] * 2
    executor = CallExecutor(gateway, max_retries=3, retry_delay=1.0)

    with pytest.raises(TransportError):
        await executor.execute("eth_blockNumber", max_retries=1, retry_delay=2.0)

    assert len(gateway.calls) == 2
    assert sleeps == [2.0]


@pytest.mark.asyncio
async def test_params_are_not_mutated_between_attempts(sleeps):
    gateway = FakeGateway()
    gateway.failures["eth_getLogs"] = [TransportError("down")]
    executor = CallExecutor(gateway, max_retries=2, retry_delay=0)
    params = [{"fromBlock": "0x1", "toBlock": "0x2"}]

    await executor.execute("eth_getLogs", params)

    assert [call[1] for call in gateway.calls] == [params, params]


@pytest.mark.asyncio
async def test_tries_every_endpoint_before_waiting(sleeps):
    gateway = FakeGateway(endpoints=["http://a", "http://b", "http://c"])
    gateway.failures["eth_blockNumber"] = [TransportError("a down"), TransportError("b down")]
    executor = CallExecutor(gateway, max_retries=3, retry_delay=1.0)

    await executor.execute("eth_blockNumber")

    assert [call[2] for call in gateway.calls] == ["http://a", "http://b", "http://c"]
    assert sleeps == []


@pytest.mark.asyncio
async def test_all_endpoints_fail_for_every_attempt(sleeps):
    gateway = FakeGateway(endpoints=["http://a", "http://b"])
    gateway.failures["eth_blockNumber"] = [TransportError("down")] * 10
    executor = CallExecutor(gateway, max_retries=2, retry_delay=1.0)

    with pytest.raises(TransportError):
        await executor.execute("eth_blockNumber")

    assert len(gateway.calls) == 6
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_starting_endpoint_rotates_between_calls(sleeps):
    gateway = FakeGateway(endpoints=["http://a", "http://b"])
    executor = CallExecutor(gateway)

    await executor.execute("eth_blockNumber")
    await executor.execute("eth_blockNumber")
    await executor.execute("eth_blockNumber")

    assert [call[2] for call in gateway.calls] == ["http://a", "http://b", "http://a"]


@pytest.mark.asyncio
async def test_failed_attempts_are_tracked(sleeps):
    gateway = FakeGateway()
    gateway.failures["eth_blockNumber"] = [TransportError("down")]
    executor = CallExecutor(gateway, max_retries=1, retry_delay=0)

    assert await executor.get_block_number() == 1000

    stats = executor.error_tracker.get_stats()
    assert executor.failed_attempts == 1
    assert stats["total"] == 1
    assert stats["by_method"] == {"eth_blockNumber": 1}
    assert stats["by_kind"] == {"transport": 1}
