from __future__ import annotations

import os
from pathlib import Path


def practice_home() -> Path:
    configured = os.environ.get("SOULTRAVEL_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".soultravel"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    state = base / "state"
    ledgers = state / "ledgers"
    incidents = base / "incidents"
    telemetry = base / "telemetry"
    for path in (base, state, ledgers, incidents, telemetry):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "state": state, "ledgers": ledgers, "incidents": incidents, "telemetry": telemetry}
