from __future__ import annotations

import random
from pathlib import Path

import pytest

from soultravel_runner.gate import SafetyProtocolSet
from soultravel_runner.ledger import (
    CHALLENGE_IDS,
    MAX_SESSION_HISTORY,
    ChallengeResult,
    DetailScorer,
    LengthBlendScorer,
    ProgressLedger,
    UserProgressLedger,
    can_access,
    challenge_status,
    check_milestones,
    progress_stats,
)
from soultravel_runner.session import Session, SessionStatus
from soultravel_runner.storage import InMemoryStore, JsonFileStore
from soultravel_runner.telemetry import TelemetryLogger


DETAILED = "blue curtains, wooden desk, brass lamp, green plant near window"


class _FixedRandom:
    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


def _session(duration: int, status: SessionStatus = SessionStatus.COMPLETED) -> Session:
    session = Session(user_id="u1", technique="rope", max_duration=3600, safety_protocol_snapshot=SafetyProtocolSet())
    session.current_duration = duration
    session.status = status
    return session


def test_detail_scorer_counts_distinct_words() -> None:
    scorer = DetailScorer()
    assert scorer.score("red chair by the window, red lamp") == 50
    assert scorer.score("") == 0
    assert scorer.score(" ".join(f"word{chr(97 + i)}xyz" for i in range(20))) == 100


def test_length_blend_scorer_is_bounded() -> None:
    assert LengthBlendScorer(_FixedRandom(0.0)).score("x" * 250) == 25  # type: ignore[arg-type]
    assert LengthBlendScorer(_FixedRandom(0.99)).score("x" * 5000) == 100  # type: ignore[arg-type]
    value = LengthBlendScorer(random.Random(7)).score("a short note")
    assert 0 <= value <= 100


def test_record_session_end_requires_terminal_session() -> None:
    ledger = ProgressLedger("u1", InMemoryStore())
    with pytest.raises(ValueError):
        ledger.record_session_end(_session(30, SessionStatus.ACTIVE))


def test_record_session_end_is_exactly_once() -> None:
    store = InMemoryStore()
    ledger = ProgressLedger("u1", store)
    session = _session(125)
    ledger.record_session_end(session)
    ledger.record_session_end(session)
    assert ledger.ledger.total_sessions == 1
    assert ledger.ledger.total_minutes == 2
    assert store.ledgers["u1"]["totalSessions"] == 1
    assert ledger.ledger.milestones["first_session"] is True


def test_duplicate_guard_survives_reload() -> None:
    store = InMemoryStore()
    session = _session(60)
    ProgressLedger("u1", store).record_session_end(session)
    reloaded = ProgressLedger("u1", store)
    reloaded.record_session_end(session)
    assert reloaded.ledger.total_sessions == 1
    assert reloaded.ledger.total_minutes == 1


def test_record_challenge_overwrites_and_counts_attempts() -> None:
    ledger = ProgressLedger("u1", InMemoryStore())
    first = ledger.record_challenge("room_observation", "dim")
    assert first.attempts == 1
    assert challenge_status(first) == "attempted"
    second = ledger.record_challenge("room_observation", DETAILED, notes="second try")
    assert second.attempts == 2
    assert second.accuracy >= 70
    assert challenge_status(second) == "success"
    assert ledger.ledger.challenges["room_observation"] is second
    assert ledger.ledger.milestones["accurate_observer"] is True


def test_blank_response_is_not_completed() -> None:
    ledger = ProgressLedger("u1", InMemoryStore())
    result = ledger.record_challenge("time_verification", "   ")
    assert result.completed is False
    assert result.accuracy == 0
    assert "first_challenge" not in ledger.ledger.milestones


def test_record_challenge_requires_id() -> None:
    with pytest.raises(ValueError):
        ProgressLedger("u1", InMemoryStore()).record_challenge(" ", "text")


def test_all_challenges_milestone_and_notifications() -> None:
    events: list[tuple[str, dict]] = []
    ledger = ProgressLedger("u1", InMemoryStore(), notify=lambda name, payload: events.append((name, payload)))
    for challenge_id in CHALLENGE_IDS:
        ledger.record_challenge(challenge_id, DETAILED)
    milestones = [payload["milestone"] for name, payload in events if name == "milestoneAchieved"]
    assert milestones.count("first_challenge") == 1
    assert milestones.count("accurate_observer") == 1
    assert milestones[-1] == "all_challenges"


def test_milestones_never_unset() -> None:
    ledger = UserProgressLedger(user_id="u1", milestones={"ten_sessions": True})
    check_milestones(ledger)
    assert ledger.milestones["ten_sessions"] is True


def test_level_promotion_is_monotonic() -> None:
    ledger = UserProgressLedger(user_id="u1", total_sessions=10)
    for challenge_id in CHALLENGE_IDS[:3]:
        ledger.challenges[challenge_id] = ChallengeResult(challenge_id, True, 80, 1)
    check_milestones(ledger)
    assert ledger.level == "intermediate"

    ledger.total_sessions = 25
    for challenge_id in CHALLENGE_IDS[3:]:
        ledger.challenges[challenge_id] = ChallengeResult(challenge_id, True, 80, 1)
    check_milestones(ledger)
    assert ledger.level == "advanced"

    ledger.challenges.clear()
    check_milestones(ledger)
    assert ledger.level == "advanced"


def test_progress_stats() -> None:
    ledger = UserProgressLedger(user_id="u1", total_sessions=4, total_minutes=90)
    ledger.challenges["room_observation"] = ChallengeResult("room_observation", True, 80, 1)
    ledger.challenges["object_movement"] = ChallengeResult("object_movement", True, 60, 2)
    stats = progress_stats(ledger)
    assert stats["completedChallenges"] == 2
    assert stats["totalChallenges"] == 5
    assert stats["averageAccuracy"] == 70
    assert stats["totalHours"] == 1.5
    assert stats["level"] == "beginner"


def test_feature_access() -> None:
    ledger = UserProgressLedger(user_id="u1")
    assert can_access(ledger, "basic_projection") is True
    assert can_access(ledger, "intermediate_projection") is False
    ledger.milestones.update({"first_session": True, "ten_sessions": True})
    assert can_access(ledger, "intermediate_projection") is True
    with pytest.raises(ValueError):
        can_access(ledger, "teleportation")


def test_ledger_document_shape() -> None:
    store = InMemoryStore()
    ledger = ProgressLedger("u1", store)
    ledger.record_session_end(_session(600))
    ledger.record_challenge("neighbor_activity", DETAILED)
    document = store.ledgers["u1"]
    assert set(document) == {"totalSessions", "totalMinutes", "level", "challenges", "milestones", "sessions"}
    assert document["challenges"]["neighbor_activity"]["attempts"] == 1
    assert document["sessions"][0]["technique"] == "rope"


def test_session_history_is_bounded_but_totals_are_not() -> None:
    store = InMemoryStore()
    ledger = ProgressLedger("u1", store)
    sessions = [_session(60) for _ in range(MAX_SESSION_HISTORY + 5)]
    for session in sessions:
        ledger.record_session_end(session)
    assert len(ledger.ledger.sessions) == MAX_SESSION_HISTORY
    assert ledger.ledger.sessions[-1]["id"] == sessions[-1].id
    assert ledger.ledger.sessions[0]["id"] == sessions[5].id
    assert ledger.ledger.total_sessions == MAX_SESSION_HISTORY + 5
    assert ledger.ledger.total_minutes == MAX_SESSION_HISTORY + 5
    assert len(store.ledgers["u1"]["sessions"]) == MAX_SESSION_HISTORY

    ledger.record_session_end(sessions[-1])
    assert ledger.ledger.total_sessions == MAX_SESSION_HISTORY + 5


def test_corrupt_stored_ledger_starts_fresh(tmp_path: Path) -> None:
    store = JsonFileStore(tmp_path / "ledgers", tmp_path / "incidents")
    store.ledger_path("u1").parent.mkdir(parents=True)
    store.ledger_path("u1").write_text("{broken", encoding="utf-8")
    telemetry = TelemetryLogger(tmp_path / "events.jsonl")

    ledger = ProgressLedger("u1", store, telemetry=telemetry)
    assert ledger.ledger.total_sessions == 0
    failed = [event["data"] for event in telemetry.iter_events("persistence.failed")]
    assert failed == [{"operation": "load_ledger", "error_type": "ValueError"}]

    ledger.record_session_end(_session(120))
    assert store.load("u1")["totalSessions"] == 1
    assert store.quarantine_path("u1").read_text(encoding="utf-8") == "{broken"


def test_raising_milestone_notifier_still_saves() -> None:
    store = InMemoryStore()

    def notify(event: str, payload: dict) -> None:
        raise RuntimeError("sink down")

    ledger = ProgressLedger("u1", store, notify=notify)
    ledger.record_session_end(_session(60))
    assert ledger.ledger.milestones["first_session"] is True
    assert store.ledgers["u1"]["totalSessions"] == 1
