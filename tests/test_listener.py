import asyncio

import pytest

from robust_logs.fetcher import LogFetcher
from robust_logs.filters.listener import PollTask
from robust_logs.filters.registry import FilterKind, FilterRegistry, new_filter_id
from robust_logs.models import FilterDefinition
from robust_logs.retry import CallExecutor
from robust_logs.rpc import FilterNotFoundError, TransportError

from conftest import TOKEN, make_log, wait_until


def make_task(gateway, on_log=None, max_block_range=2000, polling_interval=4.0):
    executor = CallExecutor(gateway, max_retries=0, retry_delay=0)
    fetcher = LogFetcher(executor, max_block_range=max_block_range, chunk_delay=0)
    registry = FilterRegistry()
    definition = FilterDefinition(address=TOKEN, from_block=0)
    received = []
    return PollTask(
        filter_id=new_filter_id("listener"),
        definition=definition,
        on_log=on_log or received.append,
        fetcher=fetcher,
        registry=registry,
        polling_interval=polling_interval,
        lookback_blocks=10,
    ), registry, received


@pytest.mark.asyncio
async def test_first_cycle_uses_lookback_window(gateway):
    gateway.logs = [make_log(100), make_log(990), make_log(1000)]
    task, registry, received = make_task(gateway)

    assert await task.poll_once() == 4.0

    assert gateway.get_logs_ranges() == [(990, 1000)]
    assert [log.block_number for log in received] == [990, 1000]
    assert task.last_synced_block == 1000
    assert registry.get(task.filter_id).last_synced_block == 1000


@pytest.mark.asyncio
async def test_later_cycles_continue_from_high_water_mark(gateway):
    task, registry, _ = make_task(gateway)
    await task.poll_once()

    gateway.head = 1005
    await task.poll_once()
    gateway.head = 1012
    await task.poll_once()

    assert gateway.get_logs_ranges() == [(990, 1000), (1001, 1005), (1006, 1012)]
    assert task.last_synced_block == 1012


@pytest.mark.asyncio
async def test_no_new_blocks_skips_fetch(gateway):
    task, _, _ = make_task(gateway)
    await task.poll_once()

    assert await task.poll_once() == 4.0
    assert len(gateway.calls_for("eth_getLogs")) == 1
    assert task.last_synced_block == 1000


@pytest.mark.asyncio
async def test_high_water_mark_never_decreases(gateway):
    task, _, _ = make_task(gateway)
    seen = []
    for head in (1000, 1003, 999, 1003, 1010):
        gateway.head = head
        await task.poll_once()
        seen.append(task.last_synced_block)

    assert seen == sorted(seen)
    assert seen[-1] == 1010


@pytest.mark.asyncio
async def test_range_is_clamped_to_max_block_range(gateway):
    task, _, _ = make_task(gateway, max_block_range=2000)
    await task.poll_once()

    gateway.head = 10000
    await task.poll_once()

    assert gateway.get_logs_ranges()[-1] == (8001, 10000)
    assert len(gateway.get_logs_ranges()) == 2


@pytest.mark.asyncio
async def test_callback_errors_do_not_stop_delivery(gateway):
    gateway.logs = [make_log(995), make_log(996), make_log(997)]
    delivered = []

    def on_log(log):
        if log.block_number == 996:
            raise RuntimeError("consumer bug")
        delivered.append(log.block_number)

    task, _, _ = make_task(gateway, on_log=on_log)
    await task.poll_once()

    assert delivered == [995, 997]
    assert task.callback_errors == 1
    assert task.last_synced_block == 1000


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(gateway):
    gateway.logs = [make_log(995)]
    delivered = []

    async def on_log(log):
        await asyncio.sleep(0)
        delivered.append(log.block_number)

    task, _, _ = make_task(gateway, on_log=on_log)
    await task.poll_once()

    assert delivered == [995]


@pytest.mark.asyncio
async def test_fetch_error_backs_off_without_advancing(gateway):
    task, _, _ = make_task(gateway)
    await task.poll_once()

    gateway.head = 1010
    gateway.failures["eth_getLogs"] = [TransportError("down")]

    assert await task.poll_once() == 8.0
    assert task.last_synced_block == 1000
    assert task.fetch_errors == 1

    assert await task.poll_once() == 4.0
    assert gateway.get_logs_ranges()[-1] == (1001, 1010)


@pytest.mark.asyncio
async def test_entry_registered_only_after_first_successful_cycle(gateway):
    task, registry, _ = make_task(gateway)
    gateway.failures["eth_getLogs"] = [TransportError("down")]

    await task.poll_once()
    assert registry.get(task.filter_id) is None
    assert len(registry) == 0

    await task.poll_once()
    tracked = registry.get(task.filter_id)
    assert tracked.kind == FilterKind.LISTENER
    assert tracked.last_synced_block == 1000


@pytest.mark.asyncio
async def test_filter_not_found_keeps_normal_cadence(gateway):
    task, _, _ = make_task(gateway)
    gateway.failures["eth_blockNumber"] = [FilterNotFoundError("filter not found")]

    assert await task.poll_once() == 4.0
    assert task.last_synced_block is None


@pytest.mark.asyncio
async def test_reaped_entry_is_re_registered(gateway):
    task, registry, _ = make_task(gateway)
    await task.poll_once()
    registry.remove(task.filter_id)

    gateway.head = 1001
    await task.poll_once()

    tracked = registry.get(task.filter_id)
    assert tracked is not None
    assert tracked.kind == FilterKind.LISTENER
    assert tracked.last_synced_block == 1001


@pytest.mark.asyncio
async def test_cancel_during_in_flight_cycle_discards_result(gateway):
    gateway.logs = [make_log(995)]
    task, registry, received = make_task(gateway)

    def stop_then_answer(params):
        task.stop()
        return [make_log(995)]

    gateway.handlers["eth_getLogs"] = stop_then_answer

    assert await task.poll_once() == 0.0
    assert received == []
    assert task.last_synced_block is None


@pytest.mark.asyncio
async def test_run_loop_stops_promptly(gateway):
    task, _, received = make_task(gateway, polling_interval=60)
    gateway.logs = [make_log(1000)]

    task.start()
    await wait_until(lambda: task.cycles == 1 and received)
    task.stop()

    await asyncio.wait_for(task.task, timeout=1.0)
    assert task.cycles == 1
    assert not task.active
