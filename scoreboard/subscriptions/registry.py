"""
Subscription registry, the single source of truth for who is watching what.

client_id → (channel_id, transport), channel_id → {client_id}. The maps are
private; callers only ever get snapshots. Every mutation runs inside the
channel's lock and touches the maps without suspending, so the session
manager's reference count matches the subscriber set. A mismatch is fatal to
that channel: its session is stopped and restarted from the registry's count.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from scoreboard.errors import DuplicateClient, SessionStartFailed
from scoreboard.gateway.transport import Transport
from scoreboard.sessions.manager import SessionManager

log = logging.getLogger(__name__)


class SubscriptionRegistry:
    def __init__(self, sessions: SessionManager) -> None:
        self._sessions = sessions
        self._channel_by_client: dict[str, str] = {}
        self._transport_by_client: dict[str, Transport] = {}
        self._clients_by_channel: dict[str, set[str]] = {}
        # One lock per channel, created on first access
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, channel_id: str) -> asyncio.Lock:
        if channel_id not in self._locks:
            self._locks[channel_id] = asyncio.Lock()
        return self._locks[channel_id]

    # ── Mutations ─────────────────────────────────────────────────────────────

    async def register(self, client_id: str, channel_id: str, transport: Transport) -> None:
        """Subscribe ``client_id`` to ``channel_id``.

        Starts the channel's upstream session before returning when this is
        the first subscriber, or when an earlier start failed. Raises
        DuplicateClient without touching state if the id is taken, and lets
        SessionStartFailed through with the subscription left in place.
        """
        if client_id in self._channel_by_client:
            raise DuplicateClient(client_id)

        async with self._lock_for(channel_id):
            if client_id in self._channel_by_client:
                raise DuplicateClient(client_id)
            self._channel_by_client[client_id] = channel_id
            self._transport_by_client[client_id] = transport
            subscribers = self._clients_by_channel.setdefault(channel_id, set())
            subscribers.add(client_id)
            counted = self._sessions.retain(channel_id)
            log.debug("Registered %s on %s (%d watching)", client_id, channel_id, len(subscribers))

            if counted != len(subscribers):
                await self._resync(channel_id, counted)
            elif len(subscribers) == 1 or not self._sessions.is_active(channel_id):
                await self._sessions.start_session(channel_id)

    async def deregister(self, client_id: str) -> bool:
        """Unsubscribe ``client_id``. Unknown ids are ignored.

        Returns True if a subscription was removed.
        """
        channel_id = self._channel_by_client.get(client_id)
        if channel_id is None:
            return False

        async with self._lock_for(channel_id):
            if self._channel_by_client.get(client_id) != channel_id:
                return False
            del self._channel_by_client[client_id]
            del self._transport_by_client[client_id]
            subscribers = self._clients_by_channel[channel_id]
            subscribers.discard(client_id)
            remaining = len(subscribers)
            if not remaining:
                del self._clients_by_channel[channel_id]
            counted = self._sessions.release(channel_id)
            log.debug("Deregistered %s from %s (%d watching)", client_id, channel_id, remaining)

            if counted != remaining:
                try:
                    await self._resync(channel_id, counted)
                except SessionStartFailed as exc:
                    log.warning("%s; next registration retries", exc)
            elif not remaining:
                await self._sessions.stop_session(channel_id)
        return True

    async def _resync(self, channel_id: str, counted: int) -> None:
        # Caller holds the channel lock.
        subscribers = len(self._clients_by_channel.get(channel_id, ()))
        log.error(
            "Session %s counts %d references but %d clients are subscribed",
            channel_id, counted, subscribers,
        )
        await self._sessions.resync(channel_id, subscribers)

    # ── Snapshots ─────────────────────────────────────────────────────────────

    def subscribers_of(self, channel_id: str) -> frozenset[str]:
        return frozenset(self._clients_by_channel.get(channel_id, ()))

    def channel_of(self, client_id: str) -> Optional[str]:
        return self._channel_by_client.get(client_id)

    def transport_of(self, client_id: str) -> Optional[Transport]:
        return self._transport_by_client.get(client_id)

    def channels(self) -> list[str]:
        return list(self._clients_by_channel)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._channel_by_client

    def __len__(self) -> int:
        return len(self._channel_by_client)
