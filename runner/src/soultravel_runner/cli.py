from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any

import uvicorn

from .api import create_app
from .errors import SessionError
from .gate import PROTOCOL_NAMES
from .ledger import CHALLENGE_IDS
from .service import PracticeService
from .session import Session


def _service() -> PracticeService:
    return PracticeService.create()


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


async def _run_session(service: PracticeService, args: argparse.Namespace) -> dict[str, Any]:
    """Start a session on the running loop and wait until it ends or `--stop-after` elapses."""

    def _on_tick(session: Session, elapsed: int) -> None:
        if not args.quiet:
            print(f"[{elapsed}s/{session.max_duration}s] {session.status.value}", file=sys.stderr)

    unsubscribe = service.subscribe_ticks(args.user, _on_tick)
    try:
        service.start_session(
            args.user,
            args.technique,
            protocols={name: False for name in args.off} if args.off else None,
            health_clearance=args.health_clearance,
            environment_ok=args.environment_ok,
            max_duration=args.max_duration,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + args.stop_after if args.stop_after is not None else None
        poll = min(0.25, service.settings.tick_interval_seconds)
        while service.get_session(args.user)["controllerStatus"] != "idle":
            if deadline is not None and loop.time() >= deadline:
                break
            await asyncio.sleep(poll)
        # stop() on an already terminated session returns its recorded outcome
        return service.end_session(args.user)
    finally:
        unsubscribe()


def main() -> int:
    parser = argparse.ArgumentParser(description="Soul Travel practice runner CLI")
    sub = parser.add_subparsers(dest="command", required=True)
    default_user = os.environ.get("SOULTRAVEL_USER_ID", "local")

    session_cmd = sub.add_parser("session", help="Practice session operations")
    session_sub = session_cmd.add_subparsers(dest="session_command", required=True)
    session_run = session_sub.add_parser("run", help="Run one timed session in the foreground")
    session_run.add_argument("--user", default=default_user, help="User identifier")
    session_run.add_argument("--technique", required=True, help="Technique identifier")
    session_run.add_argument("--max-duration", type=int, default=None, help="Maximum duration in seconds")
    session_run.add_argument("--health-clearance", action="store_true", help="Confirm health clearance")
    session_run.add_argument("--environment-ok", action="store_true", help="Confirm a safe environment")
    session_run.add_argument("--off", action="append", default=[], choices=PROTOCOL_NAMES, help="Deactivate a protocol")
    session_run.add_argument("--stop-after", type=float, default=None, help="End the session after N seconds")
    session_run.add_argument("--quiet", action="store_true", help="Do not print ticks")

    progress_cmd = sub.add_parser("progress", help="Print the progress ledger")
    progress_cmd.add_argument("--user", default=default_user)

    challenge_cmd = sub.add_parser("challenge", help="Verification challenges")
    challenge_sub = challenge_cmd.add_subparsers(dest="challenge_command", required=True)
    challenge_submit = challenge_sub.add_parser("submit", help="Record a challenge response")
    challenge_submit.add_argument("--user", default=default_user)
    challenge_submit.add_argument("--challenge", required=True, choices=CHALLENGE_IDS)
    challenge_submit.add_argument("--response", required=True, help="Observation text")
    challenge_submit.add_argument("--notes", default="")

    incidents_cmd = sub.add_parser("incidents", help="List logged safety incidents")
    incidents_cmd.add_argument("--user", default=default_user)

    protocols_cmd = sub.add_parser("protocols", help="Safety protocol operations")
    protocols_sub = protocols_cmd.add_subparsers(dest="protocols_command", required=True)
    protocols_status = protocols_sub.add_parser("status", help="Rate a protocol set")
    protocols_status.add_argument("--user", default=default_user)
    protocols_status.add_argument("--off", action="append", default=[], choices=PROTOCOL_NAMES)

    emergency_cmd = sub.add_parser("emergency", help="Emergency protocols")
    emergency_sub = emergency_cmd.add_subparsers(dest="emergency_command", required=True)
    emergency_show = emergency_sub.add_parser("show", help="Show the script for an incident type")
    emergency_show.add_argument("--type", required=True, dest="incident_type")

    telemetry_cmd = sub.add_parser("telemetry", help="Telemetry operations")
    telemetry_sub = telemetry_cmd.add_subparsers(dest="telemetry_command", required=True)
    telemetry_sub.add_parser("status", help="Show telemetry status")

    api_cmd = sub.add_parser("api", help="Run local API server")
    api_cmd.add_argument("--host", default="127.0.0.1")
    api_cmd.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()
    service = _service()

    if args.command == "session" and args.session_command == "run":
        try:
            result = asyncio.run(_run_session(service, args))
        except KeyboardInterrupt:
            result = service.end_session(args.user)
        except SessionError as exc:
            _print(exc.to_dict())
            return 2
        _print(result)
        return 0

    if args.command == "progress":
        _print(service.get_progress(args.user))
        return 0

    if args.command == "challenge" and args.challenge_command == "submit":
        _print(service.submit_challenge_response(args.user, args.challenge, args.response, notes=args.notes))
        return 0

    if args.command == "incidents":
        _print(service.list_incidents(args.user))
        return 0

    if args.command == "protocols" and args.protocols_command == "status":
        if args.off:
            service.set_protocols(args.user, {name: False for name in args.off})
        _print(service.get_protocol_status(args.user))
        return 0

    if args.command == "emergency" and args.emergency_command == "show":
        _print(service.emergency_protocol(args.incident_type))
        return 0

    if args.command == "telemetry" and args.telemetry_command == "status":
        _print(service.telemetry_status())
        return 0

    if args.command == "api":
        app = create_app(service)
        uvicorn.run(app, host=args.host, port=args.port, log_level="info")
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
