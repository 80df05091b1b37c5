"""
In-memory fan-out broadcaster.

Reads the subscriber snapshot for a channel from the registry and writes the
encoded envelope into each client's transport. Writes are non-blocking queue
puts; a client whose write fails is closed and deregistered in a separate task
so the rest of the pass is unaffected.
"""
from __future__ import annotations

import asyncio
import logging

from scoreboard.errors import DeliveryFailed
from scoreboard.gateway.transport import ConnectionState
from scoreboard.models import UpdateEnvelope, ping_envelope
from scoreboard.sessions.manager import SessionManager
from scoreboard.subscriptions.registry import SubscriptionRegistry

log = logging.getLogger(__name__)


class Broadcaster:
    def __init__(self, registry: SubscriptionRegistry, sessions: SessionManager) -> None:
        self._registry = registry
        self._sessions = sessions
        self._pending: set[asyncio.Task] = set()

    def broadcast(self, envelope: UpdateEnvelope) -> int:
        """Deliver to every subscriber of the envelope's channel; return how many got it."""
        payload = envelope.encode()
        delivered = 0
        for client_id in self._registry.subscribers_of(envelope.channel_id):
            if self._deliver(client_id, payload):
                delivered += 1
        log.debug("Broadcast %s on %s to %d clients", envelope.kind, envelope.channel_id, delivered)
        return delivered

    def send_snapshot(self, client_id: str) -> bool:
        """Push the channel's last known state to one (newly joined) client."""
        channel_id = self._registry.channel_of(client_id)
        if channel_id is None:
            return False
        envelope = UpdateEnvelope(
            channel_id=channel_id,
            changed_fields=self._sessions.snapshot(channel_id),
            kind="snapshot",
        )
        return self._deliver(client_id, envelope.encode())

    def ping_all(self) -> int:
        sent = 0
        for channel_id in self._registry.channels():
            payload = ping_envelope(channel_id).encode()
            for client_id in self._registry.subscribers_of(channel_id):
                if self._deliver(client_id, payload):
                    sent += 1
        return sent

    def _deliver(self, client_id: str, payload: bytes) -> bool:
        transport = self._registry.transport_of(client_id)
        if transport is None or transport.state is not ConnectionState.OPEN:
            return False
        try:
            transport.write(payload)
        except Exception as exc:
            failure = exc if isinstance(exc, DeliveryFailed) else DeliveryFailed(client_id, str(exc))
            log.warning("%s; dropping client", failure)
            self._drop(client_id, transport)
            return False
        return True

    def _drop(self, client_id: str, transport) -> None:
        try:
            transport.close()
        except Exception:
            log.exception("Closing transport for %s failed", client_id)
        task = asyncio.get_running_loop().create_task(self._registry.deregister(client_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for deregistrations triggered by failed writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
