from __future__ import annotations

"""Session lifecycle state machine driven by a timer engine and gated by the safety gate."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable

from .emergency import DURATION_EXCEEDED, PRECONDITION_FAILED, EmergencyResolver, EmergencyResponse
from .errors import NoActiveSession, SafetyPreconditionFailure, SessionAlreadyActive
from .gate import DEFAULT_WARNING_RATIO, INCIDENT_CHECKS, SafetyProtocolSet, evaluate, monitor
from .ledger import Notifier, ProgressLedger
from .telemetry import TelemetryLogger, report_callback_failure
from .timer import TimerEngine, TimerHandle


DEFAULT_MAX_DURATION = 3600

TickListener = Callable[["Session", int], None]


class SessionStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    WARNING = "warning"
    COMPLETED = "completed"
    EMERGENCY_TERMINATED = "emergency_terminated"


ACTIVE_STATES = {SessionStatus.ACTIVE, SessionStatus.WARNING}
TERMINAL_STATES = {SessionStatus.COMPLETED, SessionStatus.EMERGENCY_TERMINATED}


def _new_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


@dataclass
class Session:
    """One timed practice attempt; frozen in practice once terminal."""

    user_id: str
    technique: str
    max_duration: int
    safety_protocol_snapshot: SafetyProtocolSet
    id: str = field(default_factory=_new_session_id)
    start_time: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    current_duration: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    warned: bool = False
    end_time: datetime | None = None
    emergency_type: str | None = None
    emergency_response: EmergencyResponse | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def outcome(self) -> str | None:
        if self.status is SessionStatus.COMPLETED:
            return "completed"
        if self.status is SessionStatus.EMERGENCY_TERMINATED:
            return "emergency"
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "technique": self.technique,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "currentDuration": self.current_duration,
            "maxDuration": self.max_duration,
            "status": self.status.value,
            "outcome": self.outcome,
            "warned": self.warned,
            "emergencyType": self.emergency_type,
            "safetyProtocolSnapshot": self.safety_protocol_snapshot.to_dict(),
        }


class SessionController:
    """Owns the lifecycle of one user's sessions.

    At most one session is active at a time. Terminal transitions stop the
    timer before anything else runs, hand the session to the progress ledger
    exactly once, and return the controller to idle.
    """

    def __init__(
        self,
        user_id: str,
        *,
        timer: TimerEngine,
        resolver: EmergencyResolver,
        ledger: ProgressLedger,
        max_duration: int = DEFAULT_MAX_DURATION,
        warning_ratio: float = DEFAULT_WARNING_RATIO,
        notify: Notifier | None = None,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        if max_duration <= 0:
            raise ValueError("max_duration must be positive.")
        if not 0 < warning_ratio <= 1:
            raise ValueError("warning_ratio must be in (0, 1].")
        self.user_id = user_id
        self.timer = timer
        self.resolver = resolver
        self.ledger = ledger
        self.max_duration = max_duration
        self.warning_ratio = warning_ratio
        self.notify = notify
        self.telemetry = telemetry
        self.session: Session | None = None
        self._handle: TimerHandle | None = None
        self._listeners: list[TickListener] = []

    @property
    def status(self) -> SessionStatus:
        if self.session is None or not self.session.is_active:
            return SessionStatus.IDLE
        return self.session.status

    @property
    def active_session(self) -> Session | None:
        if self.session is not None and self.session.is_active:
            return self.session
        return None

    def subscribe(self, listener: TickListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def start(
        self,
        technique: str,
        protocols: SafetyProtocolSet,
        *,
        health_clearance: bool = False,
        environment_ok: bool = False,
        max_duration: int | None = None,
    ) -> Session:
        active = self.active_session
        if active is not None:
            raise SessionAlreadyActive(active.id)

        gate = evaluate(protocols, health_clearance, environment_ok)
        if not gate.allowed:
            self._record_denial(list(gate.failed_checks))
            raise SafetyPreconditionFailure(list(gate.failed_checks))

        limit = max_duration if max_duration is not None else self.max_duration
        if limit <= 0:
            raise ValueError("max_duration must be positive.")
        session = Session(
            user_id=self.user_id,
            technique=technique,
            max_duration=limit,
            safety_protocol_snapshot=SafetyProtocolSet(**protocols.to_dict()),
        )
        self.session = session
        self._handle = self.timer.start(self._on_tick)
        self._emit("sessionStarted", session, technique=technique, maxDuration=limit)
        self._log("session.started", session, technique=technique, max_duration=limit)
        return session

    def stop(self) -> Session:
        """End the session normally; a no-op on an already terminal session."""

        session = self._require_session()
        if session.is_terminal:
            return session
        reached = self._reached_duration(session)
        if reached >= session.max_duration:
            # max-duration termination wins a tie with a graceful stop
            self._terminate_for_duration(session)
            return session
        self._halt_timer()
        session.current_duration = reached
        self._finish(session, SessionStatus.COMPLETED)
        self._emit("sessionCompleted", session, duration=session.current_duration)
        self._log("session.completed", session, duration=session.current_duration)
        return session

    def emergency(self, incident_type: str) -> Session:
        """Force-terminate with the emergency script for `incident_type`."""

        session = self._require_session()
        if session.is_terminal:
            return session
        reached = self._reached_duration(session)
        self._halt_timer()
        session.current_duration = reached
        response, _ = self.resolver.escalate(
            user_id=self.user_id,
            session_id=session.id,
            incident_type=incident_type,
            severity="high",
        )
        self._close_emergency(session, response)
        return session

    def _on_tick(self, elapsed: int) -> None:
        session = self.session
        if session is None or not session.is_active:
            return
        session.current_duration = max(session.current_duration, min(elapsed, session.max_duration))
        action = monitor(session.current_duration, session.max_duration, self.warning_ratio)
        if action == "force_end":
            self._terminate_for_duration(session)
        elif action == "warning" and not session.warned:
            session.warned = True
            session.status = SessionStatus.WARNING
            self._emit("warningThresholdReached", session, duration=session.current_duration)
            self._log("session.warning", session, duration=session.current_duration)
        for listener in list(self._listeners):
            try:
                listener(session, session.current_duration)
            except Exception as exc:  # noqa: BLE001
                report_callback_failure(self.telemetry, callback="tick_listener", user_id=self.user_id, exc=exc)

    def _terminate_for_duration(self, session: Session) -> None:
        self._halt_timer()
        session.current_duration = session.max_duration
        response, _ = self.resolver.escalate(
            user_id=self.user_id,
            session_id=session.id,
            incident_type=DURATION_EXCEEDED,
            severity="medium",
            description=f"Session reached its maximum duration of {session.max_duration} seconds.",
        )
        self._close_emergency(session, response)

    def _close_emergency(self, session: Session, response: EmergencyResponse) -> None:
        session.emergency_type = response.incident_type
        session.emergency_response = response
        self._finish(session, SessionStatus.EMERGENCY_TERMINATED)
        self._emit(
            "emergencyTriggered",
            session,
            type=response.incident_type,
            steps=list(response.steps),
            autoActions=list(response.auto_actions),
        )
        self._log("session.emergency", session, incident_type=response.incident_type, duration=session.current_duration)

    def _finish(self, session: Session, status: SessionStatus) -> None:
        session.status = status
        session.end_time = datetime.now(tz=UTC)
        self.ledger.record_session_end(session)

    def _reached_duration(self, session: Session) -> int:
        reached = session.current_duration
        if self._handle is not None:
            reached = max(reached, self._handle.elapsed())
        return min(reached, session.max_duration)

    def _halt_timer(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self.timer.stop(handle)

    def _require_session(self) -> Session:
        if self.session is None:
            raise NoActiveSession(self.user_id)
        return self.session

    def _record_denial(self, failed_checks: list[str]) -> None:
        self._log_raw("session.denied", failed_checks=failed_checks)
        environmental = [check for check in failed_checks if check in INCIDENT_CHECKS]
        if environmental:
            self.resolver.log_incident(
                user_id=self.user_id,
                incident_type=PRECONDITION_FAILED,
                severity="medium",
                description=f"Session start refused: {', '.join(environmental)}",
            )

    def _emit(self, event: str, session: Session, **payload: Any) -> None:
        if self.notify is None:
            return
        try:
            self.notify(event, {"sessionId": session.id, "status": session.status.value, **payload})
        except Exception as exc:  # noqa: BLE001
            report_callback_failure(self.telemetry, callback=event, user_id=self.user_id, exc=exc)

    def _log(self, event_type: str, session: Session, **data: Any) -> None:
        self._log_raw(event_type, session_id=session.id, **data)

    def _log_raw(self, event_type: str, **data: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.log_event(event_type, actor_id=self.user_id, data=data)
