from __future__ import annotations

"""HTTP API surface for practice sessions, protocols and progress."""

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import NoActiveSession, ProtocolsLocked, SafetyPreconditionFailure, SessionAlreadyActive, SessionError
from .redaction import scrub_text
from .service import PracticeService
from .telemetry import SCHEMA_VERSION, detect_runner_version


TRACE_HEADER = "X-Soultravel-Trace-Id"


class ProtocolsRequest(BaseModel):
    """Partial update of the four safety protocol flags."""

    white_light: bool | None = None
    spirit_guides: bool | None = None
    grounding: bool | None = None
    intention: bool | None = None

    def changes(self) -> dict[str, bool]:
        return {name: value for name, value in self.model_dump().items() if value is not None}


class StartSessionRequest(BaseModel):
    """Payload for `/session/start`; both preconditions must be confirmed explicitly."""

    technique: str = Field(min_length=1, max_length=80)
    protocols: ProtocolsRequest | None = None
    health_clearance: bool = False
    environment_ok: bool = False
    max_duration: int | None = Field(default=None, ge=1, le=86400)


class EmergencyRequest(BaseModel):
    type: str = Field(min_length=1, max_length=80)


class ChallengeRequest(BaseModel):
    response: str = Field(default="", max_length=10000)
    notes: str = Field(default="", max_length=2000)


def _status_for(exc: SessionError) -> int:
    if isinstance(exc, SafetyPreconditionFailure):
        return 422
    if isinstance(exc, (SessionAlreadyActive, ProtocolsLocked)):
        return 409
    if isinstance(exc, NoActiveSession):
        return 404
    return 400


def _error(exc: SessionError) -> JSONResponse:
    return JSONResponse(status_code=_status_for(exc), content=exc.to_dict())


def create_app(service: PracticeService) -> FastAPI:
    """Create API routes backed by `PracticeService`."""

    app = FastAPI(title="Soul Travel Runner API", version="0.1")

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get("x-soultravel-trace-id") or "").strip()
        trace_id = scrub_text(incoming, max_chars=120) if incoming else f"api:{uuid4()}"
        if not trace_id or trace_id == "[redacted]":
            trace_id = f"api:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            service.telemetry.log_event(
                "risk.flagged",
                actor_id="api:unknown",
                source="api",
                data={
                    "reason": "api_internal_error",
                    "endpoint": request.url.path,
                    "error_type": exc.__class__.__name__,
                    "trace_id": trace_id,
                },
            )
            response = JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "Internal server error",
                    "trace_id": trace_id,
                },
            )
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.get("/v1/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": detect_runner_version(),
            "schema_versions": {"telemetry": SCHEMA_VERSION},
            "settings": service.settings.to_dict(),
        }

    # user-state handlers are async so they share the server loop with LoopTimer ticks
    @app.get("/v1/users/{user_id}/protocols")
    async def get_protocols(user_id: str) -> dict[str, Any]:
        try:
            return service.get_protocols(user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.put("/v1/users/{user_id}/protocols")
    async def put_protocols(user_id: str, request: ProtocolsRequest) -> dict[str, Any]:
        try:
            return service.set_protocols(user_id, request.changes())
        except SessionError as exc:
            return _error(exc)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/v1/users/{user_id}/protocols/status")
    async def get_protocol_status(user_id: str) -> dict[str, Any]:
        try:
            return service.get_protocol_status(user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/v1/users/{user_id}/session")
    async def get_session(user_id: str) -> dict[str, Any]:
        try:
            return service.get_session(user_id)
        except SessionError as exc:
            return _error(exc)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/v1/users/{user_id}/session/start")
    async def start_session(user_id: str, request: StartSessionRequest) -> dict[str, Any]:
        try:
            return service.start_session(
                user_id,
                request.technique,
                protocols=request.protocols.changes() if request.protocols else None,
                health_clearance=request.health_clearance,
                environment_ok=request.environment_ok,
                max_duration=request.max_duration,
            )
        except SessionError as exc:
            return _error(exc)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/v1/users/{user_id}/session/end")
    async def end_session(user_id: str) -> dict[str, Any]:
        try:
            return service.end_session(user_id)
        except SessionError as exc:
            return _error(exc)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/v1/users/{user_id}/session/emergency")
    async def trigger_emergency(user_id: str, request: EmergencyRequest) -> dict[str, Any]:
        try:
            return service.trigger_emergency(user_id, request.type)
        except SessionError as exc:
            return _error(exc)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/v1/users/{user_id}/challenges/{challenge_id}")
    async def submit_challenge(user_id: str, challenge_id: str, request: ChallengeRequest) -> dict[str, Any]:
        try:
            return service.submit_challenge_response(user_id, challenge_id, request.response, notes=request.notes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/v1/users/{user_id}/progress")
    async def get_progress(user_id: str) -> dict[str, Any]:
        try:
            return service.get_progress(user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/v1/users/{user_id}/incidents")
    async def list_incidents(user_id: str) -> list[dict[str, Any]]:
        try:
            return service.list_incidents(user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/v1/users/{user_id}/notifications")
    async def list_notifications(user_id: str, clear: bool = Query(default=False)) -> list[dict[str, Any]]:
        try:
            return service.list_notifications(user_id, clear=clear)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/v1/emergency-protocols/{incident_type}")
    def get_emergency_protocol(incident_type: str) -> dict[str, Any]:
        return service.emergency_protocol(incident_type)

    return app
