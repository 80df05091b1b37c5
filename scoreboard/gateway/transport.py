"""
Per-client push transports.

A transport is the sink the broadcaster writes encoded envelopes into. The
HTTP layer drains it onto the wire (SSE or WebSocket). QueueTransport keeps one
bounded asyncio.Queue per client, so writes never block the broadcaster and
each client sees its envelopes in FIFO order.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import AsyncIterator, Callable, Protocol

from scoreboard.config import CLIENT_QUEUE_MAXSIZE
from scoreboard.errors import DeliveryFailed

log = logging.getLogger(__name__)

CloseHook = Callable[[], None]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Transport(Protocol):
    state: ConnectionState

    def write(self, payload: bytes) -> None: ...

    def close(self) -> None: ...

    def add_close_hook(self, hook: CloseHook) -> None: ...


class QueueTransport:
    """Connecting → Open → Closed. There is no way back from Closed."""

    def __init__(self, client_id: str, maxsize: int = CLIENT_QUEUE_MAXSIZE) -> None:
        self.client_id = client_id
        self.state = ConnectionState.CONNECTING
        self.created_at = time.monotonic()
        self.attached = False             # an HTTP stream is draining us
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self._hooks: list[CloseHook] = []

    def open(self) -> None:
        if self.state is not ConnectionState.CONNECTING:
            raise RuntimeError(f"Cannot open a {self.state.value} transport")
        self.state = ConnectionState.OPEN

    def write(self, payload: bytes) -> None:
        if self.state is not ConnectionState.OPEN:
            raise DeliveryFailed(self.client_id, f"connection is {self.state.value}")
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            raise DeliveryFailed(self.client_id, "send queue full") from None

    def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self._closed.set()
        hooks, self._hooks = self._hooks, []
        for hook in hooks:
            try:
                hook()
            except Exception:
                log.exception("Close hook failed for client %s", self.client_id)

    def add_close_hook(self, hook: CloseHook) -> None:
        self._hooks.append(hook)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def stream(self) -> AsyncIterator[bytes]:
        """Yield queued payloads until the transport closes."""
        while True:
            if not self._queue.empty():
                yield self._queue.get_nowait()
                continue
            if self.state is ConnectionState.CLOSED:
                return
            getter = asyncio.ensure_future(self._queue.get())
            closed = asyncio.ensure_future(self._closed.wait())
            try:
                done, _ = await asyncio.wait({getter, closed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for fut in (getter, closed):
                    if not fut.done():
                        fut.cancel()
            if getter in done:
                yield getter.result()
