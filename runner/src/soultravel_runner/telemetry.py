from __future__ import annotations

"""Append-only JSONL event log with payload sanitization."""

import json
import platform
import sys
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any

from .redaction import contains_pii, contains_secret, strip_controls


SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "runner.started",
    "session.started",
    "session.denied",
    "session.warning",
    "session.completed",
    "session.emergency",
    "incident.logged",
    "challenge.recorded",
    "milestone.achieved",
    "protocols.updated",
    "persistence.failed",
    "risk.flagged",
}
VALID_SOURCES = {"cli", "api", "service"}
MAX_STRING_LENGTH = 200


def _utc_now_rfc3339() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _safe_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


@dataclass(frozen=True)
class BuildInfo:
    """Static runtime metadata attached to every event."""

    runner_version: str
    python_version: str
    platform: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "runner_version": self.runner_version,
            "python_version": self.python_version,
            "platform": self.platform,
        }


@dataclass(frozen=True)
class SanitizeStats:
    redacted_fields: int = 0
    truncated_fields: int = 0

    def __add__(self, other: "SanitizeStats") -> "SanitizeStats":
        return SanitizeStats(
            redacted_fields=self.redacted_fields + other.redacted_fields,
            truncated_fields=self.truncated_fields + other.truncated_fields,
        )


def _sanitize_text(value: str) -> tuple[str, SanitizeStats]:
    cleaned = strip_controls(value).strip()
    if contains_secret(cleaned) or contains_pii(cleaned):
        return "[redacted]", SanitizeStats(redacted_fields=1)
    if len(cleaned) > MAX_STRING_LENGTH:
        return f"{cleaned[:MAX_STRING_LENGTH]}...[truncated]", SanitizeStats(truncated_fields=1)
    return cleaned, SanitizeStats()


def sanitize_event_data(data: Any) -> tuple[Any, SanitizeStats]:
    """Recursively sanitize payloads for secrets, PII and control characters."""

    if isinstance(data, dict):
        sanitized: dict[str, Any] = {}
        stats = SanitizeStats()
        for key, value in data.items():
            key_text, key_stats = _sanitize_text(str(key))
            value_sanitized, value_stats = sanitize_event_data(value)
            sanitized[key_text] = value_sanitized
            stats = stats + key_stats + value_stats
        return sanitized, stats
    if isinstance(data, (list, tuple)):
        items: list[Any] = []
        stats = SanitizeStats()
        for item in data:
            item_sanitized, item_stats = sanitize_event_data(item)
            items.append(item_sanitized)
            stats = stats + item_stats
        return items, stats
    if data is None or isinstance(data, (int, float, bool)):
        return data, SanitizeStats()
    return _sanitize_text(str(data))


def detect_runner_version() -> str:
    try:
        return package_version("soultravel-runner")
    except PackageNotFoundError:
        return "0.1.0"


class TelemetryLogger:
    """Append-only event logger; write failures never reach the caller."""

    def __init__(self, events_path: Path) -> None:
        self.events_path = events_path
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        self.build = BuildInfo(
            runner_version=detect_runner_version(),
            python_version=sys.version.split()[0],
            platform=platform.platform(),
        )

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(_safe_json(payload))
            handle.write("\n")

    def log_event(
        self,
        event_type: str,
        *,
        data: dict[str, Any],
        actor_id: str | None = None,
        source: str = "service",
        _emit_sanitize_flag: bool = True,
    ) -> None:
        """Write one sanitized event, plus a `risk.flagged` event when fields were redacted."""

        try:
            if event_type not in VALID_EVENT_TYPES:
                data = {"reason": "invalid_event_type", "requested": event_type}
                event_type = "risk.flagged"
            sanitized, stats = sanitize_event_data(data)
            actor, _ = _sanitize_text(actor_id or "unknown")
            self._append_jsonl(
                {
                    "schema_version": SCHEMA_VERSION,
                    "event_id": str(uuid.uuid4()),
                    "ts": _utc_now_rfc3339(),
                    "event_type": event_type,
                    "actor_id": actor or "unknown",
                    "source": source if source in VALID_SOURCES else "service",
                    "build": self.build.to_dict(),
                    "data": sanitized,
                }
            )
            if _emit_sanitize_flag and (stats.redacted_fields or stats.truncated_fields):
                self.log_event(
                    "risk.flagged",
                    actor_id=actor_id,
                    source=source,
                    data={
                        "reason": "telemetry_sanitized",
                        "trigger_event_type": event_type,
                        "fields_redacted_count": stats.redacted_fields,
                        "fields_truncated_count": stats.truncated_fields,
                    },
                    _emit_sanitize_flag=False,
                )
        except Exception as exc:  # noqa: BLE001
            print(f"[telemetry] failed to append event: {exc}", file=sys.stderr)

    def iter_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events: list[dict[str, Any]] = []
        with self.events_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(payload, dict):
                    continue
                if event_type is not None and payload.get("event_type") != event_type:
                    continue
                events.append(payload)
        return events

    def status(self) -> dict[str, Any]:
        events = self.iter_events()
        counts = Counter(str(event.get("event_type")) for event in events)
        return {
            "events_path": str(self.events_path),
            "events_total": len(events),
            "events_by_type": dict(sorted(counts.items())),
            "last_event_ts": events[-1].get("ts") if events else None,
        }


def report_persistence_failure(
    telemetry: TelemetryLogger | None,
    *,
    operation: str,
    user_id: str,
    exc: BaseException,
) -> None:
    """Record a failed durable write without interrupting the caller."""

    if telemetry is None:
        print(f"[persistence] {operation} failed for {user_id}: {exc}", file=sys.stderr)
        return
    telemetry.log_event(
        "persistence.failed",
        actor_id=user_id,
        data={"operation": operation, "error_type": exc.__class__.__name__},
    )


def report_callback_failure(
    telemetry: TelemetryLogger | None,
    *,
    callback: str,
    user_id: str,
    exc: BaseException,
) -> None:
    """Record a subscriber or sink that raised; the session keeps running."""

    if telemetry is None:
        print(f"[callback] {callback} failed for {user_id}: {exc!r}", file=sys.stderr)
        return
    telemetry.log_event(
        "risk.flagged",
        actor_id=user_id,
        data={"reason": "callback_failed", "callback": callback, "error_type": exc.__class__.__name__},
    )
