from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from soultravel_runner.emergency import EmergencyResolver
from soultravel_runner.errors import NoActiveSession, SafetyPreconditionFailure, SessionAlreadyActive
from soultravel_runner.gate import SafetyProtocolSet
from soultravel_runner.ledger import ProgressLedger
from soultravel_runner.session import SessionController, SessionStatus
from soultravel_runner.storage import InMemoryStore
from soultravel_runner.telemetry import TelemetryLogger
from soultravel_runner.timer import LoopTimer, ManualTimer


def _controller(
    max_duration: int = 3600,
    store: InMemoryStore | None = None,
    telemetry: TelemetryLogger | None = None,
) -> tuple[SessionController, ManualTimer, InMemoryStore, list[tuple[str, dict]]]:
    timer = ManualTimer()
    store = store or InMemoryStore()
    events: list[tuple[str, dict]] = []

    def notify(event: str, payload: dict) -> None:
        events.append((event, payload))

    ledger = ProgressLedger("u1", store, notify=notify, telemetry=telemetry)
    controller = SessionController(
        "u1",
        timer=timer,
        resolver=EmergencyResolver(store, telemetry=telemetry),
        ledger=ledger,
        max_duration=max_duration,
        notify=notify,
        telemetry=telemetry,
    )
    return controller, timer, store, events


def _start(controller: SessionController, **overrides):  # type: ignore[no-untyped-def]
    return controller.start(
        overrides.pop("technique", "rope"),
        overrides.pop("protocols", SafetyProtocolSet()),
        health_clearance=overrides.pop("health_clearance", True),
        environment_ok=overrides.pop("environment_ok", True),
        **overrides,
    )


def _names(events: list[tuple[str, dict]]) -> list[str]:
    return [name for name, _ in events]


def test_denied_start_creates_no_session_and_no_timer() -> None:
    controller, timer, store, events = _controller()
    with pytest.raises(SafetyPreconditionFailure) as info:
        _start(controller, protocols=SafetyProtocolSet(grounding=False))
    assert info.value.failed_checks == ["grounding"]
    assert info.value.to_dict()["code"] == "SAFETY_PRECONDITION_FAILED"
    assert controller.status is SessionStatus.IDLE
    assert controller.session is None
    assert timer.running() == []
    assert events == []
    assert store.incidents == []


def test_failed_health_clearance_logs_incident() -> None:
    controller, _, store, _ = _controller()
    with pytest.raises(SafetyPreconditionFailure) as info:
        _start(controller, health_clearance=False, environment_ok=False)
    assert info.value.failed_checks == ["health_clearance", "environment"]
    assert len(store.incidents) == 1
    assert store.incidents[0]["incidentType"] == "precondition_failed"
    assert store.incidents[0]["severity"] == "medium"


def test_start_snapshots_protocols_and_notifies() -> None:
    controller, timer, _, events = _controller()
    protocols = SafetyProtocolSet()
    session = _start(controller, protocols=protocols)
    assert session.status is SessionStatus.ACTIVE
    assert session.max_duration == 3600
    assert session.safety_protocol_snapshot == protocols
    assert session.safety_protocol_snapshot is not protocols
    assert len(timer.running()) == 1
    assert _names(events) == ["sessionStarted"]


def test_warning_fires_once_at_three_quarters() -> None:
    controller, timer, _, events = _controller(max_duration=12)
    session = _start(controller)
    timer.advance(8)
    assert session.status is SessionStatus.ACTIVE
    timer.advance(1)
    assert session.current_duration == 9
    assert session.status is SessionStatus.WARNING
    assert controller.status is SessionStatus.WARNING
    timer.advance(2)
    assert _names(events).count("warningThresholdReached") == 1
    assert session.status is SessionStatus.WARNING


def test_short_session_warns_once_then_stops_cleanly() -> None:
    controller, timer, _, events = _controller(max_duration=10)
    session = _start(controller)
    timer.advance(9)
    assert session.status is SessionStatus.WARNING
    assert _names(events).count("warningThresholdReached") == 1
    controller.stop()
    assert session.status is SessionStatus.COMPLETED
    assert session.current_duration == 9
    assert controller.ledger.ledger.total_sessions == 1
    assert controller.ledger.ledger.total_minutes == 0
    assert timer.running() == []


def test_reaching_max_duration_terminates_in_same_tick() -> None:
    controller, timer, store, events = _controller(max_duration=12)
    session = _start(controller)
    timer.advance(12)
    assert session.status is SessionStatus.EMERGENCY_TERMINATED
    assert session.emergency_type == "duration_exceeded"
    assert session.current_duration == 12
    assert timer.running() == []
    assert controller.status is SessionStatus.IDLE
    assert store.incidents[-1]["incidentType"] == "duration_exceeded"
    assert store.incidents[-1]["severity"] == "medium"
    assert "emergencyTriggered" in _names(events)

    timer.advance(5)
    assert session.current_duration == 12
    assert len(store.incidents) == 1


def test_default_max_duration_is_one_hour() -> None:
    controller, timer, _, _ = _controller()
    session = _start(controller)
    timer.advance(3599)
    assert session.is_active
    timer.advance(1)
    assert session.status is SessionStatus.EMERGENCY_TERMINATED
    assert session.current_duration == 3600


def test_stop_completes_and_records_once() -> None:
    controller, timer, _, events = _controller()
    session = _start(controller)
    timer.advance(125)
    stopped = controller.stop()
    assert stopped is session
    assert session.status is SessionStatus.COMPLETED
    assert session.outcome == "completed"
    assert session.current_duration == 125
    assert session.end_time is not None
    assert timer.running() == []

    ledger = controller.ledger.ledger
    assert ledger.total_sessions == 1
    assert ledger.total_minutes == 2
    assert ledger.sessions[0]["outcome"] == "completed"
    assert "sessionCompleted" in _names(events)
    assert ("milestoneAchieved", {"milestone": "first_session", "level": "beginner"}) in events

    assert controller.stop() is session
    assert controller.emergency("disorientation") is session
    assert session.status is SessionStatus.COMPLETED
    assert ledger.total_sessions == 1


def test_max_duration_wins_tie_with_stop() -> None:
    controller, timer, store, _ = _controller(max_duration=10)
    session = _start(controller)
    timer.advance(10, deliver=False)
    controller.stop()
    assert session.status is SessionStatus.EMERGENCY_TERMINATED
    assert session.emergency_type == "duration_exceeded"
    assert session.current_duration == 10
    assert store.incidents[-1]["incidentType"] == "duration_exceeded"


def test_stop_counts_queued_seconds() -> None:
    controller, timer, _, _ = _controller(max_duration=100)
    session = _start(controller)
    timer.advance(5)
    timer.advance(3, deliver=False)
    controller.stop()
    assert session.status is SessionStatus.COMPLETED
    assert session.current_duration == 8


def test_user_emergency_terminates_with_script() -> None:
    controller, timer, store, events = _controller()
    session = _start(controller)
    timer.advance(30)
    controller.emergency("negative_encounter")
    assert session.status is SessionStatus.EMERGENCY_TERMINATED
    assert session.outcome == "emergency"
    assert session.emergency_type == "adverse_encounter"
    assert session.current_duration == 30
    assert session.emergency_response is not None
    assert "end_session" in session.emergency_response.auto_actions
    assert "log_incident" in session.emergency_response.auto_actions
    assert store.incidents[-1]["severity"] == "high"
    triggered = [payload for name, payload in events if name == "emergencyTriggered"]
    assert triggered[0]["type"] == "adverse_encounter"

    timer.advance(10)
    assert session.current_duration == 30
    controller.emergency("disorientation")
    assert len(store.incidents) == 1
    assert controller.ledger.ledger.total_sessions == 1


def test_second_start_while_active_is_refused() -> None:
    controller, timer, _, _ = _controller()
    first = _start(controller)
    timer.advance(7)
    with pytest.raises(SessionAlreadyActive):
        _start(controller)
    assert first.current_duration == 7
    assert first.status is SessionStatus.ACTIVE
    assert controller.session is first
    assert len(timer.running()) == 1
    timer.advance(1)
    assert first.current_duration == 8
    controller.stop()
    second = _start(controller)
    assert second.id != first.id
    assert len(timer.running()) == 1


def test_stop_without_session_raises() -> None:
    controller, _, _, _ = _controller()
    with pytest.raises(NoActiveSession):
        controller.stop()


def test_tick_subscribers_receive_elapsed() -> None:
    controller, timer, _, _ = _controller()
    seen: list[int] = []
    unsubscribe = controller.subscribe(lambda session, elapsed: seen.append(elapsed))
    _start(controller)
    timer.advance(2)
    unsubscribe()
    timer.advance(2)
    assert seen == [1, 2]


def test_duration_is_monotonic_and_capped() -> None:
    controller, timer, _, _ = _controller(max_duration=20)
    session = _start(controller)
    observed: list[int] = []
    controller.subscribe(lambda current, elapsed: observed.append(current.current_duration))
    timer.advance(4)
    timer.advance(30, deliver=False)
    timer.advance(0)
    assert observed == sorted(observed)
    assert max(observed) == 20
    assert session.current_duration == 20


def test_persistence_failure_keeps_outcome(tmp_path: Path) -> None:
    store = InMemoryStore()
    events_path = tmp_path / "events.jsonl"
    controller, timer, _, _ = _controller(store=store, telemetry=TelemetryLogger(events_path))
    session = _start(controller)
    store.fail_writes = True
    timer.advance(61)
    controller.stop()
    assert session.status is SessionStatus.COMPLETED
    assert controller.ledger.ledger.total_sessions == 1
    assert controller.ledger.ledger.total_minutes == 1
    types = [json.loads(line)["event_type"] for line in events_path.read_text(encoding="utf-8").splitlines()]
    assert "persistence.failed" in types
    assert "session.completed" in types


def test_raising_tick_listener_does_not_stop_max_duration(tmp_path: Path) -> None:
    events_path = tmp_path / "events.jsonl"
    telemetry = TelemetryLogger(events_path)
    controller, timer, store, _ = _controller(max_duration=5, telemetry=telemetry)
    seen: list[int] = []

    def listener(session, elapsed: int) -> None:  # type: ignore[no-untyped-def]
        seen.append(elapsed)
        if elapsed == 2:
            raise RuntimeError("listener blew up")

    controller.subscribe(listener)
    session = _start(controller)
    timer.advance(5)
    assert seen == [1, 2, 3, 4, 5]
    assert session.status is SessionStatus.EMERGENCY_TERMINATED
    assert session.emergency_type == "duration_exceeded"
    assert timer.running() == []
    flagged = [event["data"] for event in telemetry.iter_events("risk.flagged")]
    assert {"reason": "callback_failed", "callback": "tick_listener", "error_type": "RuntimeError"} in flagged
    assert store.incidents[-1]["incidentType"] == "duration_exceeded"


def test_raising_notify_sink_keeps_stop_and_emergency_outcomes() -> None:
    timer = ManualTimer()
    store = InMemoryStore()

    def notify(event: str, payload: dict) -> None:
        raise RuntimeError(f"sink down for {event}")

    controller = SessionController(
        "u1",
        timer=timer,
        resolver=EmergencyResolver(store),
        ledger=ProgressLedger("u1", store, notify=notify),
        notify=notify,
    )
    first = _start(controller)
    timer.advance(3)
    assert controller.stop() is first
    assert first.status is SessionStatus.COMPLETED
    assert controller.ledger.ledger.total_sessions == 1
    assert controller.ledger.ledger.milestones["first_session"] is True

    second = _start(controller)
    timer.advance(2)
    controller.emergency("disorientation")
    assert second.status is SessionStatus.EMERGENCY_TERMINATED
    assert controller.ledger.ledger.total_sessions == 2
    assert timer.running() == []


def test_raising_listener_on_loop_timer_still_reaches_max_duration() -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        store = InMemoryStore()
        timer = LoopTimer(interval=0.01)
        controller = SessionController(
            "u1",
            timer=timer,
            resolver=EmergencyResolver(store),
            ledger=ProgressLedger("u1", store),
            max_duration=5,
        )

        def listener(session, elapsed: int) -> None:  # type: ignore[no-untyped-def]
            if elapsed == 2:
                raise RuntimeError("listener blew up")

        controller.subscribe(listener)
        session = _start(controller)
        await asyncio.sleep(0.2)
        return session, timer

    session, timer = asyncio.run(scenario())
    assert session.is_terminal
    assert session.emergency_type == "duration_exceeded"
    assert session.current_duration == 5
    assert timer.running() == []


def test_invalid_controller_limits() -> None:
    timer = ManualTimer()
    store = InMemoryStore()
    with pytest.raises(ValueError):
        SessionController(
            "u1",
            timer=timer,
            resolver=EmergencyResolver(store),
            ledger=ProgressLedger("u1", store),
            max_duration=0,
        )
