"""Durable storage of a node's term, vote, log and key-value data."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from raftkv.types import LogEntry, _as_int


def _initial_log() -> list[LogEntry]:
    return [LogEntry(index=0, term=0, command="", status="committed",
                     timestamp=datetime.now(timezone.utc))]


@dataclass
class PersistedState:
    """What a node writes to disk and reads back on start."""

    current_term: int = 0
    voted_for: int = -1
    log: list[LogEntry] = field(default_factory=_initial_log)
    kv_store: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form of the state."""
        return {
            "currentTerm": self.current_term,
            "votedFor": self.voted_for,
            "log": [entry.to_dict() for entry in self.log],
            "kvStore": dict(self.kv_store),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PersistedState:
        """Build state from decoded JSON, keeping defaults for absent fields."""
        state = cls(
            current_term=_as_int(data.get("currentTerm"), 0),
            voted_for=_as_int(data.get("votedFor"), -1),
        )
        entries = data.get("log")
        if isinstance(entries, list):
            state.log = [LogEntry.from_dict(entry) for entry in entries]
        kv = data.get("kvStore")
        if isinstance(kv, Mapping):
            state.kv_store = {k: v for k, v in kv.items() if isinstance(v, str)}
        return state


def state_file_path(directory: str | os.PathLike[str], node_id: int) -> Path:
    """Return the path of a node's state file."""
    return Path(directory) / f"node{node_id}.state"


def save_state(directory: str | os.PathLike[str], node_id: int, state: PersistedState) -> None:
    """Write state atomically: to a temporary file first, then renamed into place."""
    temp_file = Path(directory) / f"node{node_id}.tmp"
    temp_file.write_text(json.dumps(state.to_dict()), encoding="utf-8")
    os.replace(temp_file, state_file_path(directory, node_id))


def load_state(directory: str | os.PathLike[str], node_id: int) -> PersistedState | None:
    """Read a node's saved state, or return None when none has been saved.

    Raises ValueError when the file holds something other than a JSON object.
    """
    try:
        text = state_file_path(directory, node_id).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("state file does not hold a JSON object")
    return PersistedState.from_dict(data)