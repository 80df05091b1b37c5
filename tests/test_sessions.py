import asyncio
import logging

import pytest

from conftest import POLL, RecordingTransport, ScriptedProducer, assert_counts_match, wait_until
from scoreboard.errors import SessionStartFailed, UpstreamPollError
from scoreboard.relay import build_relay
from scoreboard.sessions.manager import SessionManager, SessionStatus


@pytest.mark.asyncio
async def test_start_is_noop_when_running():
    producer = ScriptedProducer()
    sessions = SessionManager(producer, poll_interval=POLL, stop_grace=0.5)
    sessions.retain("G1")

    await sessions.start_session("G1")
    await sessions.start_session("G1")

    assert producer.started == ["G1"]
    assert sessions.status("G1") is SessionStatus.RUNNING
    await sessions.shutdown()


@pytest.mark.asyncio
async def test_readiness_poll_seeds_last_known_state():
    producer = ScriptedProducer({"G1": [{"home_team_goals": 0, "period": 1}]})
    seen = []
    sessions = SessionManager(producer, on_update=seen.append, poll_interval=POLL, stop_grace=0.5)
    sessions.retain("G1")

    await sessions.start_session("G1")

    assert sessions.snapshot("G1") == {"home_team_goals": 0, "period": 1}
    assert [e.changed_fields for e in seen] == [{"home_team_goals": 0, "period": 1}]
    await sessions.shutdown()


@pytest.mark.asyncio
async def test_stop_is_idempotent():
    producer = ScriptedProducer()
    sessions = SessionManager(producer, poll_interval=POLL, stop_grace=0.5)

    await sessions.stop_session("never-started")
    sessions.retain("G1")
    await sessions.start_session("G1")
    await sessions.stop_session("G1")
    await sessions.stop_session("G1")

    assert sessions.status("G1") is SessionStatus.IDLE
    assert producer.stopped == ["G1"]
    await sessions.shutdown()


@pytest.mark.asyncio
async def test_start_failure_returns_to_idle_and_retries_on_next_registration():
    producer = ScriptedProducer(fail_start={"G1"})
    relay = build_relay(producer, poll_interval=POLL, start_timeout=0.5)
    try:
        with pytest.raises(SessionStartFailed) as excinfo:
            await relay.registry.register("c1", "G1", RecordingTransport())
        assert excinfo.value.channel_id == "G1"
        assert "upstream down" in excinfo.value.reason

        # Subscriber stays; session is back to Idle
        assert relay.sessions.status("G1") is SessionStatus.IDLE
        assert relay.registry.subscribers_of("G1") == {"c1"}
        assert_counts_match(relay, "G1")

        producer.fail_start.clear()
        await relay.registry.register("c2", "G1", RecordingTransport())

        assert relay.sessions.status("G1") is SessionStatus.RUNNING
        assert producer.started == ["G1"]
        assert_counts_match(relay, "G1")
    finally:
        await relay.aclose()


@pytest.mark.asyncio
async def test_failed_readiness_poll_releases_handle():
    producer = ScriptedProducer({"G1": [UpstreamPollError("G1", "boom")]})
    sessions = SessionManager(producer, poll_interval=POLL, stop_grace=0.5)

    with pytest.raises(SessionStartFailed):
        await sessions.start_session("G1")

    assert producer.stopped == ["G1"]
    assert sessions.status("G1") is SessionStatus.IDLE
    assert sessions.describe() == []


@pytest.mark.asyncio
async def test_consecutive_poll_errors_keep_session_running(caplog):
    errors = [UpstreamPollError("G1", "timeout") for _ in range(3)]
    producer = ScriptedProducer({"G1": [{"home_team_goals": 0}, *errors, {"home_team_goals": 1}]})
    relay = build_relay(producer, poll_interval=POLL)
    viewer = RecordingTransport()
    try:
        with caplog.at_level(logging.WARNING, logger="scoreboard.sessions.manager"):
            await relay.registry.register("c1", "G1", viewer)
            await wait_until(lambda: {"home_team_goals": 1} in viewer.updates())

        assert relay.sessions.status("G1") is SessionStatus.RUNNING
        assert relay.registry.subscribers_of("G1") == {"c1"}
        failures = [r for r in caplog.records if "Poll failed" in r.getMessage()]
        assert len(failures) == 3
        assert relay.sessions.describe()[0]["consecutive_failures"] == 0
    finally:
        await relay.aclose()


@pytest.mark.asyncio
async def test_no_polls_after_last_subscriber_leaves():
    producer = ScriptedProducer()
    relay = build_relay(producer, poll_interval=POLL)
    try:
        await relay.registry.register("c1", "G1", RecordingTransport())
        await wait_until(lambda: producer.polls["G1"] >= 3)
        await relay.registry.deregister("c1")
        polls = producer.polls["G1"]

        await asyncio.sleep(POLL * 5)

        assert producer.polls["G1"] == polls
        assert relay.sessions.status("G1") is SessionStatus.IDLE
    finally:
        await relay.aclose()


@pytest.mark.asyncio
async def test_hung_poll_is_abandoned_and_late_result_discarded(caplog):
    producer = ScriptedProducer({"G1": [{"home_team_goals": 0}, {"home_team_goals": 99}]})
    gate = producer.gates["G1"] = asyncio.Event()
    seen = []
    sessions = SessionManager(producer, on_update=seen.append, poll_interval=POLL, stop_grace=0.05)
    sessions.retain("G1")
    await sessions.start_session("G1")
    await wait_until(lambda: producer.polls["G1"] >= 2)

    sessions.release("G1")
    loop = asyncio.get_running_loop()
    began = loop.time()
    with caplog.at_level(logging.WARNING, logger="scoreboard.sessions.manager"):
        await sessions.stop_session("G1")

    assert loop.time() - began < 0.5
    assert sessions.status("G1") is SessionStatus.IDLE
    assert any("abandoning" in r.getMessage() for r in caplog.records)

    gate.set()
    await wait_until(lambda: producer.stopped == ["G1"])

    assert [e.changed_fields for e in seen] == [{"home_team_goals": 0}]
    assert sessions.snapshot("G1") == {}
    await sessions.shutdown()


@pytest.mark.asyncio
async def test_shutdown_stops_every_session():
    producer = ScriptedProducer()
    sessions = SessionManager(producer, poll_interval=POLL, stop_grace=0.5)
    for channel_id in ("G1", "G2"):
        sessions.retain(channel_id)
        await sessions.start_session(channel_id)

    await sessions.shutdown()

    assert sorted(producer.stopped) == ["G1", "G2"]
    assert sessions.status("G1") is SessionStatus.IDLE
    assert sessions.status("G2") is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_shutdown_waits_for_session_still_starting():
    producer = ScriptedProducer()
    gate = producer.start_gates["G1"] = asyncio.Event()
    sessions = SessionManager(producer, poll_interval=POLL, stop_grace=1.0)
    sessions.retain("G1")
    starting = asyncio.create_task(sessions.start_session("G1"))
    await wait_until(lambda: sessions.status("G1") is SessionStatus.STARTING)

    closing = asyncio.create_task(sessions.shutdown())
    await asyncio.sleep(POLL * 3)
    assert not closing.done()

    gate.set()
    await asyncio.wait_for(closing, 1.0)
    await starting

    assert producer.stopped_at_close == ["G1"]
    assert sessions.status("G1") is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_stop_gives_up_on_start_after_grace(caplog):
    producer = ScriptedProducer()
    gate = producer.start_gates["G1"] = asyncio.Event()
    sessions = SessionManager(producer, poll_interval=POLL, stop_grace=0.05)
    sessions.retain("G1")
    starting = asyncio.create_task(sessions.start_session("G1"))
    await wait_until(lambda: sessions.status("G1") is SessionStatus.STARTING)

    with caplog.at_level(logging.WARNING, logger="scoreboard.sessions.manager"):
        await asyncio.wait_for(sessions.stop_session("G1"), 1.0)

    assert any("still starting" in r.getMessage() for r in caplog.records)
    gate.set()
    await starting
    assert producer.stopped == ["G1"]
    assert sessions.status("G1") is SessionStatus.IDLE
    await sessions.shutdown()


def test_unmatched_release_is_reported(caplog):
    sessions = SessionManager(ScriptedProducer(), poll_interval=POLL)

    with caplog.at_level(logging.ERROR, logger="scoreboard.sessions.manager"):
        assert sessions.release("G1") == -1

    assert sessions.reference_count("G1") == 0
    assert any("Unmatched release" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_count_mismatch_on_register_restarts_session(relay, producer, caplog):
    await relay.registry.register("c1", "G1", RecordingTransport())
    await relay.registry.register("c2", "G1", RecordingTransport())
    relay.sessions.release("G1")  # reference dropped outside the registry

    with caplog.at_level(logging.ERROR, logger="scoreboard.subscriptions.registry"):
        await relay.registry.register("c3", "G1", RecordingTransport())

    assert any("counts 2 references but 3" in r.getMessage() for r in caplog.records)
    assert producer.started == ["G1", "G1"]
    assert producer.stopped == ["G1"]
    assert relay.sessions.status("G1") is SessionStatus.RUNNING
    assert_counts_match(relay, "G1")


@pytest.mark.asyncio
async def test_count_mismatch_on_deregister_restarts_session(relay, producer):
    await relay.registry.register("c1", "G1", RecordingTransport())
    await relay.registry.register("c2", "G1", RecordingTransport())
    relay.sessions.release("G1")

    await relay.registry.deregister("c1")

    assert producer.started == ["G1", "G1"]
    assert relay.sessions.status("G1") is SessionStatus.RUNNING
    assert relay.registry.subscribers_of("G1") == {"c2"}
    assert_counts_match(relay, "G1")


@pytest.mark.asyncio
async def test_unmatched_release_on_last_deregister_stops_session(relay, producer):
    await relay.registry.register("c1", "G1", RecordingTransport())
    relay.sessions.release("G1")
    assert relay.sessions.status("G1") is SessionStatus.RUNNING

    await relay.registry.deregister("c1")

    assert producer.stopped == ["G1"]
    assert relay.sessions.status("G1") is SessionStatus.IDLE
    assert relay.sessions.describe() == []
