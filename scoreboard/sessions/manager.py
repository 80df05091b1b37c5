"""
Upstream session manager: one producer task per watched channel.

Lifecycle per channel:
  Idle → Starting   start_session(): producer.start() + first poll (readiness)
  Starting → Running  first poll succeeded; periodic task launched
  Running → Stopping  stop_session(): stop signal set, task awaited (bounded)
  Stopping → Idle     state discarded, record dropped once unreferenced

Reference counts are driven by the subscription registry through retain(),
release() and resync(); nothing else should call them.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional

from scoreboard.config import POLL_INTERVAL_SEC, START_TIMEOUT_SEC
from scoreboard.errors import SessionStartFailed
from scoreboard.models import UpdateEnvelope
from scoreboard.producers.base import UpstreamProducer

log = logging.getLogger(__name__)

UpdateCallback = Callable[[UpdateEnvelope], Any]


class SessionStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ChannelSession:
    def __init__(self, channel_id: str) -> None:
        self.channel_id = channel_id
        self.status = SessionStatus.IDLE
        self.last_known_state: dict[str, Any] = {}
        self.reference_count = 0
        self.handle: Any = None
        self.task: Optional[asyncio.Task] = None
        self.stop_event: Optional[asyncio.Event] = None
        self.start_done: Optional[asyncio.Event] = None   # set once start_session() returns
        self.consecutive_failures = 0
        self.polls = 0

    def describe(self) -> dict:
        return {
            "channel_id": self.channel_id,
            "status": self.status.value,
            "reference_count": self.reference_count,
            "consecutive_failures": self.consecutive_failures,
            "polls": self.polls,
        }


class SessionManager:
    def __init__(
        self,
        producer: UpstreamProducer,
        on_update: Optional[UpdateCallback] = None,
        poll_interval: float = POLL_INTERVAL_SEC,
        stop_grace: Optional[float] = None,
        start_timeout: float = START_TIMEOUT_SEC,
    ) -> None:
        self.producer = producer
        self.poll_interval = poll_interval
        # Default grace is one polling interval.
        self.stop_grace = poll_interval if stop_grace is None else stop_grace
        self.start_timeout = start_timeout
        self._on_update = on_update
        self._sessions: dict[str, ChannelSession] = {}
        self._abandoned: set[asyncio.Task] = set()

    def bind(self, on_update: UpdateCallback) -> None:
        self._on_update = on_update

    # ── Reference counting (registry only) ────────────────────────────────────

    def retain(self, channel_id: str) -> int:
        session = self._sessions.get(channel_id)
        if session is None:
            session = self._sessions[channel_id] = ChannelSession(channel_id)
        session.reference_count += 1
        return session.reference_count

    def release(self, channel_id: str) -> int:
        """Drop one reference. Returns the new count, or -1 for an unmatched release."""
        session = self._sessions.get(channel_id)
        if session is None or session.reference_count == 0:
            log.error("Unmatched release for %s; subscriber accounting is broken", channel_id)
            return -1
        session.reference_count -= 1
        if session.reference_count == 0 and session.status is SessionStatus.IDLE:
            del self._sessions[channel_id]
        return session.reference_count

    async def resync(self, channel_id: str, subscribers: int) -> None:
        """Full stop, then restart counting from the registry's subscriber set.

        Used when the reference count and the registry disagree. Raises
        SessionStartFailed if the restart fails.
        """
        log.warning("Restarting session %s with %d subscribers", channel_id, subscribers)
        await self.stop_session(channel_id)
        session = self._sessions.get(channel_id)
        if session is None:
            if not subscribers:
                return
            session = self._sessions[channel_id] = ChannelSession(channel_id)
        session.reference_count = subscribers
        if not subscribers:
            self._forget_if_unused(session)
            return
        await self.start_session(channel_id)

    # ── Read side ─────────────────────────────────────────────────────────────

    def status(self, channel_id: str) -> SessionStatus:
        session = self._sessions.get(channel_id)
        return session.status if session else SessionStatus.IDLE

    def is_active(self, channel_id: str) -> bool:
        return self.status(channel_id) in (SessionStatus.STARTING, SessionStatus.RUNNING)

    def reference_count(self, channel_id: str) -> int:
        session = self._sessions.get(channel_id)
        return session.reference_count if session else 0

    def snapshot(self, channel_id: str) -> dict[str, Any]:
        session = self._sessions.get(channel_id)
        return dict(session.last_known_state) if session else {}

    def describe(self) -> list[dict]:
        return [s.describe() for s in self._sessions.values()]

    # ── Start / stop ──────────────────────────────────────────────────────────

    async def start_session(self, channel_id: str) -> None:
        session = self._sessions.get(channel_id)
        if session is None:
            session = self._sessions[channel_id] = ChannelSession(channel_id)
        if session.status in (SessionStatus.STARTING, SessionStatus.RUNNING):
            return
        if session.status is SessionStatus.STOPPING:
            raise SessionStartFailed(channel_id, "previous session is still stopping")

        session.status = SessionStatus.STARTING
        stop_event = session.stop_event = asyncio.Event()
        start_done = session.start_done = asyncio.Event()
        try:
            await self._start(session, stop_event)
        finally:
            start_done.set()

    async def _start(self, session: ChannelSession, stop_event: asyncio.Event) -> None:
        channel_id = session.channel_id
        handle = None
        try:
            handle = await asyncio.wait_for(self.producer.start(channel_id), self.start_timeout)
            envelope = await asyncio.wait_for(self.producer.poll(handle), self.start_timeout)
        except Exception as exc:
            session.status = SessionStatus.IDLE
            if handle is not None:
                await self._stop_handle(channel_id, handle)
            self._forget_if_unused(session)
            reason = str(exc) or type(exc).__name__
            log.warning("Session %s failed to start: %s", channel_id, reason)
            raise SessionStartFailed(channel_id, reason) from exc

        if stop_event.is_set():
            # stop_session() ran while we were starting
            await self._stop_handle(channel_id, handle)
            self._reset(session)
            return

        session.handle = handle
        session.consecutive_failures = 0
        session.status = SessionStatus.RUNNING
        if envelope is not None:
            self._apply(session, envelope)
        session.task = asyncio.create_task(
            self._run(session, handle, stop_event), name=f"producer:{channel_id}"
        )
        log.info("Session %s running (poll every %.1fs)", channel_id, self.poll_interval)

    async def stop_session(self, channel_id: str) -> None:
        session = self._sessions.get(channel_id)
        if session is None or session.status in (SessionStatus.IDLE, SessionStatus.STOPPING):
            return

        starting = session.status is SessionStatus.STARTING
        session.status = SessionStatus.STOPPING
        if session.stop_event is not None:
            session.stop_event.set()
        if starting:
            # start_session() finishes the teardown once its await returns
            if session.start_done is not None:
                try:
                    await asyncio.wait_for(session.start_done.wait(), timeout=self.stop_grace)
                except asyncio.TimeoutError:
                    log.warning(
                        "Session %s still starting after %.1fs; not waiting any longer",
                        channel_id, self.stop_grace,
                    )
            return

        task, session.task = session.task, None
        if task is not None and task is not asyncio.current_task():
            done, _ = await asyncio.wait({task}, timeout=self.stop_grace)
            if done:
                if not task.cancelled() and task.exception() is not None:
                    log.error("Producer task for %s crashed", channel_id, exc_info=task.exception())
            else:
                log.warning(
                    "Producer for %s still busy after %.1fs; abandoning it", channel_id, self.stop_grace
                )
                self._abandoned.add(task)
                task.add_done_callback(self._abandoned.discard)

        self._reset(session)
        log.info("Session %s stopped", channel_id)

    async def shutdown(self) -> None:
        for channel_id in list(self._sessions):
            await self.stop_session(channel_id)
        for task in list(self._abandoned):
            task.cancel()
        if self._abandoned:
            await asyncio.gather(*self._abandoned, return_exceptions=True)
        await self.producer.aclose()

    # ── Producer loop ─────────────────────────────────────────────────────────

    async def _run(self, session: ChannelSession, handle: Any, stop_event: asyncio.Event) -> None:
        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                    break
                except asyncio.TimeoutError:
                    pass
                await self._poll_once(session, handle, stop_event)
        finally:
            await self._stop_handle(session.channel_id, handle)

    async def _poll_once(self, session: ChannelSession, handle: Any, stop_event: asyncio.Event) -> None:
        channel_id = session.channel_id
        try:
            envelope = await self.producer.poll(handle)
        except Exception as exc:
            if stop_event.is_set():
                return
            session.consecutive_failures += 1
            log.warning(
                "Poll failed for %s (%d in a row), retrying next tick: %s",
                channel_id, session.consecutive_failures, exc,
            )
            return

        if stop_event.is_set():
            log.debug("Discarding late poll result for %s", channel_id)
            return
        if session.consecutive_failures:
            log.info("Upstream for %s recovered after %d failures", channel_id, session.consecutive_failures)
            session.consecutive_failures = 0
        session.polls += 1
        if envelope is not None:
            self._apply(session, envelope)

    def _apply(self, session: ChannelSession, envelope: UpdateEnvelope) -> None:
        session.last_known_state.update(envelope.changed_fields)
        if self._on_update is None:
            return
        try:
            self._on_update(envelope)
        except Exception:
            log.exception("Update handler failed for %s", session.channel_id)

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _stop_handle(self, channel_id: str, handle: Any) -> None:
        try:
            await self.producer.stop(handle)
        except Exception:
            log.exception("producer.stop failed for %s", channel_id)

    def _reset(self, session: ChannelSession) -> None:
        session.handle = None
        session.task = None
        session.last_known_state = {}
        session.consecutive_failures = 0
        session.status = SessionStatus.IDLE
        self._forget_if_unused(session)

    def _forget_if_unused(self, session: ChannelSession) -> None:
        if session.reference_count == 0 and self._sessions.get(session.channel_id) is session:
            del self._sessions[session.channel_id]
