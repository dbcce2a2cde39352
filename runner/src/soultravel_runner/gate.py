from __future__ import annotations

"""Pre-session safety gate and per-tick duration monitoring."""

from dataclasses import asdict, dataclass, fields
from typing import Any


PROTOCOL_NAMES = ("white_light", "spirit_guides", "grounding", "intention")
HEALTH_CHECK = "health_clearance"
ENVIRONMENT_CHECK = "environment"
# failures that also produce a logged safety incident
INCIDENT_CHECKS = (HEALTH_CHECK, ENVIRONMENT_CHECK)
DEFAULT_WARNING_RATIO = 0.75


@dataclass(frozen=True)
class SafetyProtocolSet:
    """The four named precautions a user activates before practice."""

    white_light: bool = True
    spirit_guides: bool = True
    grounding: bool = True
    intention: bool = True

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "SafetyProtocolSet":
        if not payload:
            return cls()
        unknown = sorted(set(payload) - set(PROTOCOL_NAMES))
        if unknown:
            raise ValueError(f"Unknown safety protocol(s): {', '.join(unknown)}")
        return cls(**{name: bool(value) for name, value in payload.items()})

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)

    def replace(self, **changes: bool) -> "SafetyProtocolSet":
        merged = self.to_dict()
        for name, value in changes.items():
            if name not in merged:
                raise ValueError(f"Unknown safety protocol: {name}")
            merged[name] = bool(value)
        return SafetyProtocolSet(**merged)

    def inactive(self) -> list[str]:
        return [item.name for item in fields(self) if not getattr(self, item.name)]


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    failed_checks: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "failed_checks": list(self.failed_checks)}


def evaluate(protocols: SafetyProtocolSet, health_clearance: bool, environment_ok: bool) -> GateResult:
    """Return allow/deny plus every named check that failed.

    Protocol flags are reported in declaration order, followed by the health
    and environment checks.
    """

    failed = protocols.inactive()
    if not health_clearance:
        failed.append(HEALTH_CHECK)
    if not environment_ok:
        failed.append(ENVIRONMENT_CHECK)
    return GateResult(allowed=not failed, failed_checks=tuple(failed))


def protocol_status(protocols: SafetyProtocolSet) -> dict[str, Any]:
    active = len(PROTOCOL_NAMES) - len(protocols.inactive())
    total = len(PROTOCOL_NAMES)
    if active == total:
        status, message = "optimal", "All protocols active - optimal safety."
    elif active >= total * 0.75:
        status, message = "good", "Good safety coverage."
    else:
        status, message = "warning", "Insufficient safety protocols."
    return {"status": status, "active": active, "total": total, "message": message, "inactive": protocols.inactive()}


def monitor(current_duration: int, max_duration: int, warning_ratio: float = DEFAULT_WARNING_RATIO) -> str:
    """Classify elapsed time as `continue`, `warning` or `force_end`."""

    if current_duration >= max_duration:
        return "force_end"
    if current_duration >= max_duration * warning_ratio:
        return "warning"
    return "continue"
