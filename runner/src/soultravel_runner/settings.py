from __future__ import annotations

"""Session settings loaded from YAML and validated against a JSON schema."""

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .ledger import LEVELS


SETTINGS_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "max_duration_seconds": {"type": "integer", "minimum": 1, "maximum": 86400},
        "warning_ratio": {"type": "number", "exclusiveMinimum": 0, "maximum": 1},
        "tick_interval_seconds": {"type": "number", "exclusiveMinimum": 0},
        "default_level": {"type": "string", "enum": list(LEVELS)},
    },
}


@dataclass(frozen=True)
class Settings:
    max_duration_seconds: int = 3600
    warning_ratio: float = 0.75
    tick_interval_seconds: float = 1.0
    default_level: str = "beginner"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def settings_path(home: Path) -> Path:
    configured = os.environ.get("SOULTRAVEL_SETTINGS", "").strip()
    if configured:
        return Path(configured).expanduser().resolve()
    return home / "settings.yaml"


def load_settings(path: Path) -> Settings:
    """Read settings from `path`; a missing file yields the defaults."""

    if not path.exists():
        return Settings()
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Settings file is not valid YAML: {path}") from exc
    if payload is None:
        return Settings()
    if not isinstance(payload, dict):
        raise ValueError(f"Settings file must be a mapping: {path}")
    errors = sorted(Draft202012Validator(SETTINGS_SCHEMA).iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Settings validation failed for {path} at {where}: {first.message}")
    return Settings(**payload)
