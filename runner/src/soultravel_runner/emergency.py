from __future__ import annotations

"""Emergency protocol lookup and safety incident logging."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from .errors import PersistenceFailure
from .redaction import scrub_text
from .telemetry import TelemetryLogger, report_persistence_failure

if TYPE_CHECKING:
    from .storage import ProgressStore


RETURN_DIFFICULTY = "return_difficulty"
ADVERSE_ENCOUNTER = "adverse_encounter"
DISORIENTATION = "disorientation"
DURATION_EXCEEDED = "duration_exceeded"
PRECONDITION_FAILED = "precondition_failed"

FALLBACK_INCIDENT_TYPE = DISORIENTATION
MANDATORY_ACTIONS = ("end_session", "log_incident")
VALID_SEVERITY = ("low", "medium", "high")

EMERGENCY_PROTOCOLS: dict[str, dict[str, list[str]]] = {
    RETURN_DIFFICULTY: {
        "steps": [
            "Focus on physical body sensations.",
            "Visualize the silver cord connection.",
            "Move fingers and toes.",
            "Open eyes slowly.",
        ],
        "auto_actions": ["end_session", "log_incident", "activate_grounding", "notify_support"],
    },
    ADVERSE_ENCOUNTER: {
        "steps": [
            "Activate white light protection.",
            "Call upon spirit guides.",
            "Return to physical body immediately.",
            "Ground with deep breathing.",
        ],
        "auto_actions": ["end_session", "log_incident", "activate_protection", "emergency_contact"],
    },
    DISORIENTATION: {
        "steps": [
            "Stop all projection activity.",
            "Focus on breathing.",
            "Ground with physical sensations.",
            "Seek immediate support if needed.",
        ],
        "auto_actions": ["end_session", "log_incident", "activate_grounding", "emergency_contact"],
    },
    DURATION_EXCEEDED: {
        "steps": [
            "Session reached its maximum duration and was ended for safety.",
            "Focus on breathing and physical sensations.",
            "Ground yourself before resuming any activity.",
        ],
        "auto_actions": ["end_session", "log_incident", "activate_grounding"],
    },
}

INCIDENT_ALIASES = {
    "difficulty_returning": RETURN_DIFFICULTY,
    "return_difficulty": RETURN_DIFFICULTY,
    "negative_encounter": ADVERSE_ENCOUNTER,
    "adverse_encounter": ADVERSE_ENCOUNTER,
    "disorientation": DISORIENTATION,
    "duration_exceeded": DURATION_EXCEEDED,
    "max_duration": DURATION_EXCEEDED,
}


@dataclass(frozen=True)
class EmergencyResponse:
    incident_type: str
    steps: tuple[str, ...]
    auto_actions: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.incident_type, "steps": list(self.steps), "auto_actions": list(self.auto_actions)}


@dataclass(frozen=True)
class SafetyIncident:
    user_id: str
    incident_type: str
    description: str
    severity: str
    session_id: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(tz=UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "sessionId": self.session_id,
            "incidentType": self.incident_type,
            "description": self.description,
            "severity": self.severity,
            "timestamp": self.timestamp,
        }


def normalize_incident_type(incident_type: str | None) -> str:
    key = (incident_type or "").strip().lower().replace("-", "_").replace(" ", "_")
    return INCIDENT_ALIASES.get(key, FALLBACK_INCIDENT_TYPE)


def resolve(incident_type: str | None) -> EmergencyResponse:
    """Map any incident type to its script; unknown types get the disorientation script."""

    canonical = normalize_incident_type(incident_type)
    entry = EMERGENCY_PROTOCOLS[canonical]
    actions = list(MANDATORY_ACTIONS)
    actions.extend(action for action in entry["auto_actions"] if action not in actions)
    return EmergencyResponse(incident_type=canonical, steps=tuple(entry["steps"]), auto_actions=tuple(actions))


class EmergencyResolver:
    """Resolves emergencies and appends the matching incident through the store."""

    def __init__(self, store: "ProgressStore", telemetry: TelemetryLogger | None = None) -> None:
        self.store = store
        self.telemetry = telemetry

    def escalate(
        self,
        *,
        user_id: str,
        incident_type: str,
        session_id: str | None = None,
        severity: str = "high",
        description: str | None = None,
    ) -> tuple[EmergencyResponse, SafetyIncident]:
        response = resolve(incident_type)
        incident = self.log_incident(
            user_id=user_id,
            session_id=session_id,
            incident_type=response.incident_type,
            severity=severity,
            description=description or f"Emergency protocol activated: {response.incident_type}",
        )
        return response, incident

    def log_incident(
        self,
        *,
        user_id: str,
        incident_type: str,
        severity: str,
        description: str,
        session_id: str | None = None,
    ) -> SafetyIncident:
        if severity not in VALID_SEVERITY:
            raise ValueError(f"severity must be one of {list(VALID_SEVERITY)}.")
        incident = SafetyIncident(
            user_id=user_id,
            session_id=session_id,
            incident_type=incident_type,
            description=scrub_text(description, max_chars=500),
            severity=severity,
        )
        try:
            self.store.append_incident(incident.to_dict())
        except (OSError, PersistenceFailure) as exc:
            report_persistence_failure(self.telemetry, operation="append_incident", user_id=user_id, exc=exc)
        if self.telemetry is not None:
            self.telemetry.log_event(
                "incident.logged",
                actor_id=user_id,
                data={
                    "incident_type": incident_type,
                    "severity": severity,
                    "session_id": session_id,
                },
            )
        return incident
