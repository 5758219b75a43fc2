"""Core Raft data types: node states, log entries and RPC messages."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt ](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)

_IMPORTANT_PATTERNS = (
    "becoming leader",
    "becoming follower",
    "starting election",
    "received vote",
    "requesting vote",
    "granted vote",
    "denied vote",
    "election timeout",
    "applied log entry",
    "state changed",
    "timer reset",
    "error",
    "Error",
    "failed",
)


class State(str, Enum):
    """Role a node plays in the cluster."""

    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"

    def __str__(self) -> str:
        return self.value

    def __format__(self, spec: str) -> str:
        return format(self.value, spec)


def _as_int(value: Any, default: int) -> int:
    """Read a JSON number as an int, truncating floats; anything else gives default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return default


def _parse_rfc3339(text: str) -> datetime:
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f"not an RFC 3339 timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micros = int((fraction or "")[:6].ljust(6, "0"))
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        hours, mins = int(zone[1:3]), int(zone[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=mins))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tz
    )


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, bool) or value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)):
        seconds, nanos = divmod(int(value), 1_000_000_000)
        return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(
            microseconds=nanos // 1000
        )
    if isinstance(value, str):
        try:
            return _parse_rfc3339(value)
        except ValueError:
            return datetime.now(timezone.utc)
    return datetime.now(timezone.utc)


@dataclass
class LogEntry:
    """One entry of the replicated log."""

    index: int = 0
    term: int = 0
    command: str = ""
    status: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form used in persisted state."""
        ts = self.timestamp if self.timestamp.tzinfo else self.timestamp.astimezone()
        return {
            "Index": self.index,
            "Term": self.term,
            "Command": self.command,
            "Status": self.status,
            "Timestamp": ts.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> LogEntry:
        """Build an entry from decoded JSON, tolerating missing or odd fields."""
        if not isinstance(data, Mapping):
            return cls(timestamp=_ZERO_TIME)
        command = data.get("Command")
        status = data.get("Status")
        return cls(
            index=_as_int(data.get("Index"), 0),
            term=_as_int(data.get("Term"), 0),
            command=command if isinstance(command, str) else "",
            status=status if isinstance(status, str) else "",
            timestamp=_parse_timestamp(data.get("Timestamp")),
        )


@dataclass
class RequestVoteArgs:
    term: int
    candidate_id: int
    last_log_index: int
    last_log_term: int


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    term: int
    leader_id: int
    prev_log_index: int
    prev_log_term: int
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesReply:
    term: int = 0
    success: bool = False
    conflict_index: int = 0
    conflict_term: int = 0


def is_important_event(msg: str) -> bool:
    """Tell whether a log message is worth echoing to the terminal."""
    return any(pattern in msg for pattern in _IMPORTANT_PATTERNS)