"""Connection gateway: turns one push connection into registry and broadcaster calls."""
from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from typing import Optional

from scoreboard.broadcast.broadcaster import Broadcaster
from scoreboard.config import CLIENT_ID_MAX_LEN, CLIENT_QUEUE_MAXSIZE
from scoreboard.errors import DuplicateClient, SessionStartFailed
from scoreboard.gateway.transport import QueueTransport
from scoreboard.subscriptions.registry import SubscriptionRegistry

log = logging.getLogger(__name__)

_CLIENT_ID_RE = re.compile(r"[A-Za-z0-9_-]+")


class Gateway:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        broadcaster: Broadcaster,
        queue_maxsize: int = CLIENT_QUEUE_MAXSIZE,
    ) -> None:
        self._registry = registry
        self._broadcaster = broadcaster
        self._queue_maxsize = queue_maxsize
        self._connections: dict[str, QueueTransport] = {}
        self._pending: set[asyncio.Task] = set()

    def _assign_id(self, hint: Optional[str]) -> str:
        if hint is None:
            while True:
                client_id = str(uuid.uuid4())
                if client_id not in self._connections and client_id not in self._registry:
                    return client_id
        if len(hint) > CLIENT_ID_MAX_LEN or not _CLIENT_ID_RE.fullmatch(hint):
            raise ValueError(f"Invalid client id: {hint!r}")
        if hint in self._connections or hint in self._registry:
            raise DuplicateClient(hint)
        return hint

    async def accept(self, channel_id: str, client_id_hint: Optional[str] = None) -> str:
        """Open a stream for a new viewer of ``channel_id`` and return its id.

        On SessionStartFailed the viewer stays registered (and still gets the
        snapshot); the exception is re-raised with ``client_id`` filled in.
        """
        client_id = self._assign_id(client_id_hint)
        transport = QueueTransport(client_id, maxsize=self._queue_maxsize)
        transport.open()
        self._connections[client_id] = transport
        transport.add_close_hook(lambda: self._transport_closed(client_id))

        try:
            await self._registry.register(client_id, channel_id, transport)
        except SessionStartFailed as exc:
            exc.client_id = client_id
            self._broadcaster.send_snapshot(client_id)
            log.warning("Client %s joined %s but upstream is unavailable", client_id, channel_id)
            raise
        except Exception:
            if self._connections.get(client_id) is transport:
                del self._connections[client_id]
            transport.close()
            raise

        self._broadcaster.send_snapshot(client_id)
        log.info("Client %s connected to %s", client_id, channel_id)
        return client_id

    async def on_close(self, client_id: str) -> None:
        """Connection ended for any reason. Safe to call repeatedly."""
        transport = self._connections.pop(client_id, None)
        if transport is not None:
            transport.close()
        if await self._registry.deregister(client_id):
            log.info("Client %s disconnected", client_id)

    def _transport_closed(self, client_id: str) -> None:
        if client_id not in self._connections:
            return
        task = asyncio.get_running_loop().create_task(self.on_close(client_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ── Lookups / housekeeping ────────────────────────────────────────────────

    def transport_of(self, client_id: str) -> Optional[QueueTransport]:
        return self._connections.get(client_id)

    def connections(self) -> list[str]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    async def reap_unattached(self, max_age: float) -> list[str]:
        """Close connections whose stream was never attached within ``max_age``."""
        now = time.monotonic()
        stale = [
            cid for cid, t in self._connections.items()
            if not t.attached and now - t.created_at > max_age
        ]
        for client_id in stale:
            await self.on_close(client_id)
        return stale

    async def close_all(self) -> None:
        for client_id in list(self._connections):
            await self.on_close(client_id)
        await self.drain()

    async def drain(self) -> None:
        """Wait for close-hook deregistrations still in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
