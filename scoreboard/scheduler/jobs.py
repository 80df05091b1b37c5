"""
Housekeeping jobs run by APScheduler alongside the relay.

  every HEARTBEAT_INTERVAL_SEC → heartbeat_job()        ping every open stream
  every ATTACH_TIMEOUT_SEC / 4 → reap_unattached_job()  drop clients that never attached
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from scoreboard.config import ATTACH_TIMEOUT_SEC, HEARTBEAT_INTERVAL_SEC
from scoreboard.relay import Relay

log = logging.getLogger(__name__)


async def heartbeat_job(relay: Relay) -> int:
    """Keep idle streams alive; dead clients surface as failed writes."""
    sent = relay.broadcaster.ping_all()
    log.debug("heartbeat: pinged %d clients", sent)
    return sent


async def reap_unattached_job(relay: Relay, max_age: float = ATTACH_TIMEOUT_SEC) -> list[str]:
    """Close clients registered over POST whose event stream never opened."""
    reaped = await relay.gateway.reap_unattached(max_age)
    if reaped:
        log.info("reap_unattached: closed %d idle clients", len(reaped))
    return reaped


async def setup_scheduler(
    relay: Relay,
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SEC,
    attach_timeout: float = ATTACH_TIMEOUT_SEC,
) -> AsyncIOScheduler:
    """Initialise and start the scheduler with the housekeeping jobs."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        heartbeat_job,
        "interval",
        seconds=heartbeat_interval,
        args=[relay],
        id="heartbeat",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        reap_unattached_job,
        "interval",
        seconds=max(1.0, attach_timeout / 4),
        args=[relay, attach_timeout],
        id="reap_unattached",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    log.info("Scheduler started (heartbeat %.0fs, attach timeout %.0fs)", heartbeat_interval, attach_timeout)
    return scheduler
