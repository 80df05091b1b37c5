"""Builds the relay core and wires its components together."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from scoreboard.broadcast.broadcaster import Broadcaster
from scoreboard.config import (
    CLIENT_QUEUE_MAXSIZE, POLL_INTERVAL_SEC, PRODUCER,
    START_TIMEOUT_SEC, STOP_GRACE_SEC,
)
from scoreboard.gateway.gateway import Gateway
from scoreboard.producers.base import UpstreamProducer
from scoreboard.producers.http import HttpGameSheetProducer
from scoreboard.producers.simulated import SimulatedProducer
from scoreboard.sessions.manager import SessionManager
from scoreboard.subscriptions.registry import SubscriptionRegistry

log = logging.getLogger(__name__)


@dataclass
class Relay:
    sessions: SessionManager
    registry: SubscriptionRegistry
    broadcaster: Broadcaster
    gateway: Gateway

    async def aclose(self) -> None:
        await self.gateway.close_all()
        await self.broadcaster.drain()
        await self.sessions.shutdown()


def build_producer(kind: str = PRODUCER) -> UpstreamProducer:
    if kind == "simulated":
        return SimulatedProducer()
    if kind == "http":
        return HttpGameSheetProducer()
    raise ValueError(f"Unknown producer: {kind}")


def build_relay(
    producer: Optional[UpstreamProducer] = None,
    *,
    poll_interval: float = POLL_INTERVAL_SEC,
    stop_grace: Optional[float] = STOP_GRACE_SEC,
    start_timeout: float = START_TIMEOUT_SEC,
    queue_maxsize: int = CLIENT_QUEUE_MAXSIZE,
) -> Relay:
    if producer is None:
        producer = build_producer()
    sessions = SessionManager(
        producer,
        poll_interval=poll_interval,
        stop_grace=stop_grace,
        start_timeout=start_timeout,
    )
    registry = SubscriptionRegistry(sessions)
    broadcaster = Broadcaster(registry, sessions)
    sessions.bind(broadcaster.broadcast)
    gateway = Gateway(registry, broadcaster, queue_maxsize=queue_maxsize)
    log.info("Relay ready (%s producer)", type(producer).__name__)
    return Relay(sessions=sessions, registry=registry, broadcaster=broadcaster, gateway=gateway)
