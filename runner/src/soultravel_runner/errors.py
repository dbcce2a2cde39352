from __future__ import annotations

"""Structured session errors with stable codes for API and CLI responses."""

from typing import Any


class SessionError(ValueError):
    """Caller-facing session error carrying a stable code and optional hint."""

    code = "SESSION_ERROR"

    def __init__(self, message: str, *, hint: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


class SafetyPreconditionFailure(SessionError):
    code = "SAFETY_PRECONDITION_FAILED"

    def __init__(self, failed_checks: list[str]) -> None:
        super().__init__(
            f"Safety requirements not met: {', '.join(failed_checks)}",
            hint="Address the listed checks and retry.",
            failed_checks=list(failed_checks),
        )
        self.failed_checks = list(failed_checks)


class SessionAlreadyActive(SessionError):
    code = "SESSION_ALREADY_ACTIVE"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "A session is already active for this user.",
            hint="End the active session before starting a new one.",
            session_id=session_id,
        )
        self.session_id = session_id


class ProtocolsLocked(SessionError):
    code = "PROTOCOLS_LOCKED"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Safety protocols cannot change while a session is active.",
            session_id=session_id,
        )


class NoActiveSession(SessionError):
    code = "NO_ACTIVE_SESSION"

    def __init__(self, user_id: str) -> None:
        super().__init__("No active session for this user.", user_id=user_id)


class PersistenceFailure(RuntimeError):
    """Storage write failed; the in-memory transition stays authoritative."""

    def __init__(self, operation: str, user_id: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed for {user_id}{detail}")
        self.operation = operation
        self.user_id = user_id
