from __future__ import annotations

"""Persistence port for progress ledgers and safety incidents."""

import hashlib
import json
import re
import time
from pathlib import Path
from typing import Any, Protocol

from .errors import PersistenceFailure


SAFE_USER_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


class ProgressStore(Protocol):
    def load(self, user_id: str) -> dict[str, Any] | None: ...

    def save(self, user_id: str, ledger: dict[str, Any]) -> None: ...

    def append_incident(self, record: dict[str, Any]) -> None: ...

    def list_incidents(self, user_id: str) -> list[dict[str, Any]]: ...


class InMemoryStore:
    """Dict-backed store; `fail_writes` simulates an unavailable backend."""

    def __init__(self) -> None:
        self.ledgers: dict[str, dict[str, Any]] = {}
        self.incidents: list[dict[str, Any]] = []
        self.fail_writes = False
        self.save_count = 0

    def load(self, user_id: str) -> dict[str, Any] | None:
        stored = self.ledgers.get(user_id)
        return json.loads(json.dumps(stored)) if stored is not None else None

    def save(self, user_id: str, ledger: dict[str, Any]) -> None:
        if self.fail_writes:
            raise PersistenceFailure("save", user_id)
        self.ledgers[user_id] = json.loads(json.dumps(ledger))
        self.save_count += 1

    def append_incident(self, record: dict[str, Any]) -> None:
        if self.fail_writes:
            raise PersistenceFailure("append_incident", str(record.get("userId")))
        self.incidents.append(dict(record))

    def list_incidents(self, user_id: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self.incidents if row.get("userId") == user_id]


def _file_key(user_id: str) -> str:
    if SAFE_USER_ID.match(user_id):
        return user_id
    return "u_" + hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]


def _load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def _save_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    payload = json.dumps(value, indent=2)
    for attempt in range(5):
        temp_path.write_text(payload, encoding="utf-8")
        try:
            temp_path.replace(path)
            return
        except PermissionError:
            if attempt == 4:
                raise
            # On Windows, AV/indexers can briefly lock newly-written temp files.
            time.sleep(0.02 * (attempt + 1))


class JsonFileStore:
    """One JSON ledger document and one JSONL incident log per user."""

    def __init__(self, ledgers_dir: Path, incidents_dir: Path) -> None:
        self.ledgers_dir = ledgers_dir
        self.incidents_dir = incidents_dir

    def ledger_path(self, user_id: str) -> Path:
        return self.ledgers_dir / f"{_file_key(user_id)}.json"

    def incident_path(self, user_id: str) -> Path:
        return self.incidents_dir / f"{_file_key(user_id)}.jsonl"

    def load(self, user_id: str) -> dict[str, Any] | None:
        path = self.ledger_path(user_id)
        try:
            payload = _load_json(path, None)
        except json.JSONDecodeError as exc:
            self._quarantine(path)
            raise ValueError(f"Ledger file is not valid JSON: {path}") from exc
        if payload is not None and not isinstance(payload, dict):
            self._quarantine(path)
            raise ValueError(f"Ledger file must be a JSON object: {path}")
        return payload

    def quarantine_path(self, user_id: str) -> Path:
        return self.ledger_path(user_id).with_suffix(".json.corrupt")

    def _quarantine(self, path: Path) -> None:
        # unreadable ledgers move aside; the next save starts a fresh document
        path.replace(path.with_suffix(".json.corrupt"))

    def save(self, user_id: str, ledger: dict[str, Any]) -> None:
        try:
            _save_json(self.ledger_path(user_id), ledger)
        except OSError as exc:
            raise PersistenceFailure("save", user_id, exc) from exc

    def append_incident(self, record: dict[str, Any]) -> None:
        user_id = str(record.get("userId") or "unknown")
        path = self.incident_path(user_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8", newline="\n") as handle:
                handle.write(json.dumps(record, sort_keys=True))
                handle.write("\n")
        except OSError as exc:
            raise PersistenceFailure("append_incident", user_id, exc) from exc

    def list_incidents(self, user_id: str) -> list[dict[str, Any]]:
        path = self.incident_path(user_id)
        if not path.exists():
            return []
        rows: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                rows.append(payload)
        return rows
