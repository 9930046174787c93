import asyncio

import pytest

from robust_logs.config import ProviderConfig

TOKEN = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def make_log(block_number, log_index=0, address=TOKEN):
    return {
        "address": address,
        "topics": [TRANSFER_TOPIC],
        "data": "0x" + "00" * 32,
        "blockNumber": hex(block_number),
        "transactionHash": "0x" + f"{block_number:064x}",
        "transactionIndex": "0x0",
        "blockHash": "0x" + f"{block_number + 1:064x}",
        "logIndex": hex(log_index),
        "removed": False,
    }


class FakeGateway:
    """
    Scripted in-memory gateway.

    failures[method] is consumed in order on each call to that method:
    an exception is raised, None lets the call through.
    """

    def __init__(self, head=1000, endpoints=None):
        self.head = head
        self.endpoints = endpoints or []
        self.logs = []
        self.calls = []
        self.failures = {}
        self.handlers = {}

    async def send(self, method, params, endpoint=None):
        self.calls.append((method, params, endpoint))

        queue = self.failures.get(method)
        if queue:
            error = queue.pop(0)
            if error is not None:
                raise error

        if method in self.handlers:
            result = self.handlers[method](params)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        if method == "eth_blockNumber":
            return hex(self.head)
        if method == "eth_getLogs":
            lo = int(params[0]["fromBlock"], 16)
            hi = int(params[0]["toBlock"], 16)
            return [log for log in self.logs if lo <= int(log["blockNumber"], 16) <= hi]
        return None

    def calls_for(self, method):
        return [call for call in self.calls if call[0] == method]

    def get_logs_ranges(self):
        return [
            (int(params[0]["fromBlock"], 16), int(params[0]["toBlock"], 16))
            for _, params, _ in self.calls_for("eth_getLogs")
        ]


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fast_config():
    return ProviderConfig(
        retry_delay=0,
        chunk_delay=0,
        polling_interval=0.01,
        cleanup_interval=0.01,
        max_retries=1,
        shutdown_timeout=1.0,
    )
