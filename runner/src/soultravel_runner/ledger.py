from __future__ import annotations

"""Per-user progress ledger: session totals, challenge results and milestones."""

import random
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Callable, Protocol

from .errors import PersistenceFailure
from .redaction import scrub_text
from .telemetry import TelemetryLogger, report_callback_failure, report_persistence_failure

if TYPE_CHECKING:
    from .session import Session
    from .storage import ProgressStore


CHALLENGE_IDS = (
    "room_observation",
    "neighbor_activity",
    "distant_location",
    "time_verification",
    "object_movement",
)
SUCCESS_ACCURACY = 70
LEVELS = ("beginner", "intermediate", "advanced")
MAX_NOTES_CHARS = 1000
MAX_SESSION_HISTORY = 100

# milestone name -> predicate over the ledger
MILESTONE_RULES: dict[str, Callable[["UserProgressLedger"], bool]] = {
    "first_session": lambda ledger: ledger.total_sessions >= 1,
    "ten_sessions": lambda ledger: ledger.total_sessions >= 10,
    "first_hour": lambda ledger: ledger.total_minutes >= 60,
    "first_challenge": lambda ledger: ledger.completed_challenges() >= 1,
    "accurate_observer": lambda ledger: any(
        result.completed and result.accuracy >= SUCCESS_ACCURACY for result in ledger.challenges.values()
    ),
    "all_challenges": lambda ledger: all(
        cid in ledger.challenges and ledger.challenges[cid].completed for cid in CHALLENGE_IDS
    ),
}

LEVEL_RULES: dict[str, Callable[["UserProgressLedger"], bool]] = {
    "intermediate": lambda ledger: ledger.total_sessions >= 10 and ledger.completed_challenges() >= 3,
    "advanced": lambda ledger: ledger.total_sessions >= 25 and bool(ledger.milestones.get("all_challenges")),
}

FEATURE_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "basic_projection": (),
    "intermediate_projection": ("first_session", "ten_sessions"),
    "advanced_techniques": ("all_challenges", "accurate_observer"),
    "community_features": ("first_hour", "first_challenge"),
}

Notifier = Callable[[str, dict[str, Any]], None]


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class ChallengeResult:
    challenge_id: str
    completed: bool
    accuracy: int
    attempts: int
    notes: str = ""
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "challengeId": self.challenge_id,
            "completed": self.completed,
            "accuracy": self.accuracy,
            "attempts": self.attempts,
            "notes": self.notes,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, challenge_id: str, payload: dict[str, Any]) -> "ChallengeResult":
        return cls(
            challenge_id=str(payload.get("challengeId") or challenge_id),
            completed=bool(payload.get("completed", False)),
            accuracy=_clamp_accuracy(payload.get("accuracy", 0)),
            attempts=int(payload.get("attempts", 0)),
            notes=str(payload.get("notes") or ""),
            timestamp=str(payload.get("timestamp") or _now_iso()),
        )


@dataclass
class UserProgressLedger:
    user_id: str
    total_sessions: int = 0
    total_minutes: int = 0
    level: str = "beginner"
    challenges: dict[str, ChallengeResult] = field(default_factory=dict)
    milestones: dict[str, bool] = field(default_factory=dict)
    sessions: list[dict[str, Any]] = field(default_factory=list)

    def completed_challenges(self) -> int:
        return sum(1 for result in self.challenges.values() if result.completed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalSessions": self.total_sessions,
            "totalMinutes": self.total_minutes,
            "level": self.level,
            "challenges": {cid: result.to_dict() for cid, result in sorted(self.challenges.items())},
            "milestones": dict(sorted(self.milestones.items())),
            "sessions": list(self.sessions),
        }

    @classmethod
    def from_dict(cls, user_id: str, payload: dict[str, Any], *, default_level: str = "beginner") -> "UserProgressLedger":
        challenges_raw = payload.get("challenges") or {}
        milestones_raw = payload.get("milestones") or {}
        sessions_raw = payload.get("sessions") or []
        level = payload.get("level")
        return cls(
            user_id=user_id,
            total_sessions=int(payload.get("totalSessions", 0)),
            total_minutes=int(payload.get("totalMinutes", 0)),
            level=level if level in LEVELS else default_level,
            challenges={
                str(cid): ChallengeResult.from_dict(str(cid), row)
                for cid, row in challenges_raw.items()
                if isinstance(row, dict)
            },
            milestones={str(name): bool(flag) for name, flag in milestones_raw.items()},
            sessions=[row for row in sessions_raw if isinstance(row, dict)],
        )


class ChallengeScorer(Protocol):
    def score(self, response: str) -> int: ...


class DetailScorer:
    """Deterministic default: points per distinct descriptive word."""

    def __init__(self, points_per_detail: int = 10) -> None:
        self.points_per_detail = points_per_detail

    def score(self, response: str) -> int:
        details = {word.lower() for word in re.findall(r"[A-Za-z]{3,}", response or "")}
        return _clamp_accuracy(len(details) * self.points_per_detail)


class LengthBlendScorer:
    """Response length blended with a random offset."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    def score(self, response: str) -> int:
        return _clamp_accuracy(min(len(response or "") / 10 + self.rng.random() * 30, 100))


def _clamp_accuracy(value: Any) -> int:
    try:
        parsed = round(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, int(parsed)))


def check_milestones(ledger: UserProgressLedger) -> UserProgressLedger:
    """Set every milestone whose rule now holds; flags already true stay true."""

    for name, rule in MILESTONE_RULES.items():
        if not ledger.milestones.get(name) and rule(ledger):
            ledger.milestones[name] = True
    current = LEVELS.index(ledger.level) if ledger.level in LEVELS else 0
    for level in LEVELS[current + 1 :]:
        if LEVEL_RULES[level](ledger):
            ledger.level = level
    return ledger


def challenge_status(result: ChallengeResult | None) -> str:
    if result is None:
        return "not_attempted"
    if result.completed and result.accuracy >= SUCCESS_ACCURACY:
        return "success"
    return "attempted"


def progress_stats(ledger: UserProgressLedger) -> dict[str, Any]:
    scored = [result.accuracy for result in ledger.challenges.values() if result.completed and result.accuracy]
    return {
        "completedChallenges": ledger.completed_challenges(),
        "totalChallenges": len(CHALLENGE_IDS),
        "averageAccuracy": round(sum(scored) / len(scored)) if scored else 0,
        "totalSessions": ledger.total_sessions,
        "totalHours": round(ledger.total_minutes / 60, 1),
        "level": ledger.level,
    }


def can_access(ledger: UserProgressLedger, feature: str) -> bool:
    if feature not in FEATURE_REQUIREMENTS:
        raise ValueError(f"Unknown feature: {feature}")
    return all(ledger.milestones.get(name) for name in FEATURE_REQUIREMENTS[feature])


class ProgressLedger:
    """Single writer for one user's ledger; persists after every mutation."""

    def __init__(
        self,
        user_id: str,
        store: "ProgressStore",
        *,
        scorer: ChallengeScorer | None = None,
        notify: Notifier | None = None,
        telemetry: TelemetryLogger | None = None,
        default_level: str = "beginner",
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.scorer = scorer or DetailScorer()
        self.notify = notify
        self.telemetry = telemetry
        try:
            stored = store.load(user_id)
        except (ValueError, OSError) as exc:
            report_persistence_failure(telemetry, operation="load_ledger", user_id=user_id, exc=exc)
            stored = None
        if stored is None:
            self.ledger = UserProgressLedger(user_id=user_id, level=default_level)
        else:
            self.ledger = UserProgressLedger.from_dict(user_id, stored, default_level=default_level)
        self._recorded_sessions = {str(row.get("id")) for row in self.ledger.sessions if row.get("id")}

    def record_session_end(self, session: "Session") -> UserProgressLedger:
        if not session.is_terminal:
            raise ValueError("Only terminal sessions can be recorded.")
        if session.id in self._recorded_sessions:
            return self.ledger
        self._recorded_sessions.add(session.id)
        self.ledger.total_sessions += 1
        self.ledger.total_minutes += session.current_duration // 60
        self.ledger.sessions.append(session.to_dict())
        # totals keep counting; only the detailed history is bounded
        del self.ledger.sessions[:-MAX_SESSION_HISTORY]
        self._commit()
        return self.ledger

    def record_challenge(self, challenge_id: str, response: str, notes: str = "") -> ChallengeResult:
        challenge_id = (challenge_id or "").strip()
        if not challenge_id:
            raise ValueError("challenge_id is required.")
        previous = self.ledger.challenges.get(challenge_id)
        result = ChallengeResult(
            challenge_id=challenge_id,
            completed=bool((response or "").strip()),
            accuracy=_clamp_accuracy(self.scorer.score(response or "")),
            attempts=(previous.attempts if previous else 0) + 1,
            notes=scrub_text(notes, max_chars=MAX_NOTES_CHARS),
        )
        self.ledger.challenges[challenge_id] = result
        if self.telemetry is not None:
            self.telemetry.log_event(
                "challenge.recorded",
                actor_id=self.user_id,
                data={
                    "challenge_id": challenge_id,
                    "accuracy": result.accuracy,
                    "attempts": result.attempts,
                    "status": challenge_status(result),
                },
            )
        self._commit()
        return result

    def _commit(self) -> None:
        before = {name for name, flag in self.ledger.milestones.items() if flag}
        check_milestones(self.ledger)
        for name in sorted(name for name, flag in self.ledger.milestones.items() if flag and name not in before):
            if self.notify is not None:
                try:
                    self.notify("milestoneAchieved", {"milestone": name, "level": self.ledger.level})
                except Exception as exc:  # noqa: BLE001
                    report_callback_failure(self.telemetry, callback="milestoneAchieved", user_id=self.user_id, exc=exc)
            if self.telemetry is not None:
                self.telemetry.log_event("milestone.achieved", actor_id=self.user_id, data={"milestone": name})
        try:
            self.store.save(self.user_id, self.ledger.to_dict())
        except (OSError, PersistenceFailure) as exc:
            report_persistence_failure(self.telemetry, operation="save_ledger", user_id=self.user_id, exc=exc)
