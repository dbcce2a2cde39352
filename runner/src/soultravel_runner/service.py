from __future__ import annotations

"""Caller-facing practice service: one session controller and ledger per user."""

import hashlib
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

from . import emergency
from .emergency import EmergencyResolver
from .errors import NoActiveSession, ProtocolsLocked, SessionAlreadyActive
from .gate import SafetyProtocolSet, protocol_status
from .ledger import (
    CHALLENGE_IDS,
    FEATURE_REQUIREMENTS,
    ChallengeScorer,
    DetailScorer,
    ProgressLedger,
    can_access,
    challenge_status,
    progress_stats,
)
from .paths import ensure_home_dirs, practice_home
from .redaction import scrub_text
from .session import Session, SessionController, TickListener
from .settings import Settings, load_settings, settings_path
from .storage import JsonFileStore, ProgressStore
from .telemetry import TelemetryLogger
from .timer import LoopTimer, TimerEngine


MAX_NOTIFICATIONS = 100
MAX_TECHNIQUE_CHARS = 80
MAX_USER_ID_CHARS = 128

NotificationSink = Callable[[str, str, dict[str, Any]], None]


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class UserContext:
    user_id: str
    controller: SessionController
    ledger: ProgressLedger
    protocols: SafetyProtocolSet = field(default_factory=SafetyProtocolSet)
    notifications: deque = field(default_factory=lambda: deque(maxlen=MAX_NOTIFICATIONS))


@dataclass
class PracticeService:
    """Stateful local service wiring the gate, controller, resolver and ledger per user."""

    home: Path
    dirs: dict[str, Path]
    settings: Settings
    store: ProgressStore
    telemetry: TelemetryLogger
    timer: TimerEngine
    scorer: ChallengeScorer = field(default_factory=DetailScorer)
    sink: NotificationSink | None = None
    users: dict[str, UserContext] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        *,
        timer: TimerEngine | None = None,
        store: ProgressStore | None = None,
        scorer: ChallengeScorer | None = None,
        sink: NotificationSink | None = None,
    ) -> "PracticeService":
        """Instantiate a service from the local home directory and record startup."""

        home = practice_home()
        dirs = ensure_home_dirs(home)
        settings = load_settings(settings_path(home))
        telemetry = TelemetryLogger(events_path=dirs["telemetry"] / "events.jsonl")
        service = cls(
            home=home,
            dirs=dirs,
            settings=settings,
            store=store or JsonFileStore(dirs["ledgers"], dirs["incidents"]),
            telemetry=telemetry,
            timer=timer or LoopTimer(interval=settings.tick_interval_seconds),
            scorer=scorer or DetailScorer(),
            sink=sink,
        )
        telemetry.log_event(
            "runner.started",
            actor_id="system:runner",
            data={
                "home_path_hash": hashlib.sha256(str(home).encode("utf-8")).hexdigest(),
                "max_duration_seconds": settings.max_duration_seconds,
            },
        )
        return service

    def _context(self, user_id: str) -> UserContext:
        user_id = self._normalize_user_id(user_id)
        context = self.users.get(user_id)
        if context is not None:
            return context

        def _notify(event: str, payload: dict[str, Any]) -> None:
            self._deliver_notification(user_id, event, payload)

        ledger = ProgressLedger(
            user_id,
            self.store,
            scorer=self.scorer,
            notify=_notify,
            telemetry=self.telemetry,
            default_level=self.settings.default_level,
        )
        controller = SessionController(
            user_id,
            timer=self.timer,
            resolver=EmergencyResolver(self.store, telemetry=self.telemetry),
            ledger=ledger,
            max_duration=self.settings.max_duration_seconds,
            warning_ratio=self.settings.warning_ratio,
            notify=_notify,
            telemetry=self.telemetry,
        )
        context = UserContext(user_id=user_id, controller=controller, ledger=ledger)
        self.users[user_id] = context
        return context

    def _normalize_user_id(self, user_id: str) -> str:
        value = (user_id or "").strip()
        if not value:
            raise ValueError("user_id is required.")
        if len(value) > MAX_USER_ID_CHARS:
            raise ValueError(f"user_id must be {MAX_USER_ID_CHARS} characters or fewer.")
        return value

    def _deliver_notification(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        context = self.users.get(user_id)
        if context is not None:
            context.notifications.append({"event": event, "ts": _now_iso(), **payload})
        if self.sink is not None:
            self.sink(user_id, event, payload)

    def get_protocols(self, user_id: str) -> dict[str, bool]:
        return self._context(user_id).protocols.to_dict()

    def set_protocols(self, user_id: str, changes: dict[str, Any]) -> dict[str, bool]:
        """Update protocol flags; refused while a session is active."""

        context = self._context(user_id)
        active = context.controller.active_session
        if active is not None:
            raise ProtocolsLocked(active.id)
        context.protocols = context.protocols.replace(**{str(k): bool(v) for k, v in changes.items()})
        self.telemetry.log_event(
            "protocols.updated",
            actor_id=context.user_id,
            data={"inactive": context.protocols.inactive()},
        )
        return context.protocols.to_dict()

    def get_protocol_status(self, user_id: str) -> dict[str, Any]:
        return protocol_status(self._context(user_id).protocols)

    def start_session(
        self,
        user_id: str,
        technique: str,
        *,
        protocols: dict[str, Any] | None = None,
        health_clearance: bool = False,
        environment_ok: bool = False,
        max_duration: int | None = None,
    ) -> dict[str, Any]:
        context = self._context(user_id)
        active = context.controller.active_session
        if active is not None:
            raise SessionAlreadyActive(active.id)
        technique_id = scrub_text(technique, max_chars=MAX_TECHNIQUE_CHARS)
        if not technique_id:
            raise ValueError("technique is required.")
        if protocols is not None:
            self.set_protocols(context.user_id, protocols)
        session = context.controller.start(
            technique_id,
            context.protocols,
            health_clearance=health_clearance,
            environment_ok=environment_ok,
            max_duration=max_duration,
        )
        return session.to_dict()

    def end_session(self, user_id: str) -> dict[str, Any]:
        context = self._context(user_id)
        session = context.controller.stop()
        return self._session_outcome(context, session)

    def trigger_emergency(self, user_id: str, incident_type: str) -> dict[str, Any]:
        context = self._context(user_id)
        session = context.controller.emergency(incident_type)
        return self._session_outcome(context, session)

    def _session_outcome(self, context: UserContext, session: Session) -> dict[str, Any]:
        outcome: dict[str, Any] = {
            "session": session.to_dict(),
            "progress": progress_stats(context.ledger.ledger),
        }
        if session.emergency_response is not None:
            outcome["protocol"] = session.emergency_response.to_dict()
        return outcome

    def subscribe_ticks(self, user_id: str, listener: TickListener) -> Callable[[], None]:
        return self._context(user_id).controller.subscribe(listener)

    def get_session(self, user_id: str) -> dict[str, Any]:
        context = self._context(user_id)
        session = context.controller.session
        if session is None:
            raise NoActiveSession(context.user_id)
        payload = session.to_dict()
        payload["controllerStatus"] = context.controller.status.value
        return payload

    def submit_challenge_response(
        self,
        user_id: str,
        challenge_id: str,
        response: str,
        *,
        notes: str = "",
    ) -> dict[str, Any]:
        context = self._context(user_id)
        result = context.ledger.record_challenge(challenge_id, response, notes)
        payload = result.to_dict()
        payload["status"] = challenge_status(result)
        return payload

    def get_progress(self, user_id: str) -> dict[str, Any]:
        ledger = self._context(user_id).ledger.ledger
        return {
            "ledger": ledger.to_dict(),
            "stats": progress_stats(ledger),
            "challenges": {cid: challenge_status(ledger.challenges.get(cid)) for cid in CHALLENGE_IDS},
            "access": {feature: can_access(ledger, feature) for feature in FEATURE_REQUIREMENTS},
        }

    def list_incidents(self, user_id: str) -> list[dict[str, Any]]:
        return self.store.list_incidents(self._normalize_user_id(user_id))

    def list_notifications(self, user_id: str, *, clear: bool = False) -> list[dict[str, Any]]:
        context = self._context(user_id)
        rows = list(context.notifications)
        if clear:
            context.notifications.clear()
        return rows

    def emergency_protocol(self, incident_type: str) -> dict[str, Any]:
        return emergency.resolve(incident_type).to_dict()

    def telemetry_status(self) -> dict[str, Any]:
        return self.telemetry.status()
