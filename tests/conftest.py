import asyncio
import json
import os
import sys
from collections import defaultdict

import pytest
import pytest_asyncio

# Ensure repository root is on sys.path so `import scoreboard` works under pytest
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from scoreboard.gateway.transport import ConnectionState  # noqa: E402
from scoreboard.models import UpdateEnvelope  # noqa: E402
from scoreboard.producers.base import UpstreamProducer  # noqa: E402
from scoreboard.relay import build_relay  # noqa: E402

POLL = 0.01


class ScriptedProducer(UpstreamProducer):
    """Plays back a per-channel list of poll results.

    Items are dicts (changed fields), None (no change) or exceptions (raised).
    Once a script runs out every poll returns None. Channels in ``gates`` block
    every poll after the first until the gate is set; ``start_gates`` block start().
    """

    def __init__(self, scripts=None, fail_start=()):
        self.scripts = {ch: list(items) for ch, items in (scripts or {}).items()}
        self.fail_start = set(fail_start)
        self.gates: dict[str, asyncio.Event] = {}
        self.start_gates: dict[str, asyncio.Event] = {}
        self.polls: dict[str, int] = defaultdict(int)
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.stopped_at_close: list[str] | None = None

    async def start(self, channel_id):
        if channel_id in self.start_gates:
            await self.start_gates[channel_id].wait()
        if channel_id in self.fail_start:
            raise RuntimeError("upstream down")
        self.started.append(channel_id)
        return {"channel_id": channel_id}

    async def poll(self, handle):
        channel_id = handle["channel_id"]
        self.polls[channel_id] += 1
        gate = self.gates.get(channel_id)
        if gate is not None and self.polls[channel_id] > 1:
            await gate.wait()
        script = self.scripts.get(channel_id)
        item = script.pop(0) if script else None
        if isinstance(item, BaseException):
            raise item
        if item is None:
            return None
        return UpdateEnvelope(channel_id=channel_id, changed_fields=item)

    async def stop(self, handle):
        self.stopped.append(handle["channel_id"])

    async def aclose(self):
        self.stopped_at_close = list(self.stopped)


class RecordingTransport:
    def __init__(self):
        self.state = ConnectionState.OPEN
        self.sent: list[dict] = []
        self._hooks = []

    def write(self, payload: bytes) -> None:
        self.sent.append(json.loads(payload))

    def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        for hook in self._hooks:
            hook()

    def add_close_hook(self, hook) -> None:
        self._hooks.append(hook)

    def updates(self):
        return [m["changed_fields"] for m in self.sent if m["kind"] == "update"]


class FailingTransport(RecordingTransport):
    def write(self, payload: bytes) -> None:
        raise ConnectionResetError("peer gone")


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(POLL / 2)


async def collect(transport, count, timeout=1.0):
    """Read ``count`` decoded payloads from a QueueTransport."""
    out = []
    stream = transport.stream()

    async def take():
        async for payload in stream:
            out.append(json.loads(payload))
            if len(out) >= count:
                return

    try:
        await asyncio.wait_for(take(), timeout)
    finally:
        await stream.aclose()
    return out


def assert_counts_match(relay, *channels):
    for channel_id in channels:
        assert relay.sessions.reference_count(channel_id) == len(relay.registry.subscribers_of(channel_id))


@pytest.fixture
def producer():
    return ScriptedProducer()


@pytest_asyncio.fixture
async def relay(producer):
    r = build_relay(producer, poll_interval=POLL, stop_grace=0.2, start_timeout=0.5, queue_maxsize=8)
    yield r
    await r.aclose()
