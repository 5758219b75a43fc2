from datetime import datetime, timedelta, timezone

import pytest

from raftkv.types import (
    AppendEntriesArgs,
    LogEntry,
    State,
    is_important_event,
)


@pytest.mark.parametrize("state", list(State))
def test_state_round_trips_through_its_value(state):
    assert State(state.value) is state
    assert str(state) == state.value


def test_state_formats_with_width():
    state = State("leader")
    assert f"{state:<9}|" == "leader   |"


def test_log_entry_round_trip():
    entry = LogEntry(
        index=4,
        term=2,
        command="PUT name Alice",
        status="uncommitted",
        timestamp=datetime(2024, 5, 6, 7, 8, 9, 123456, tzinfo=timezone.utc),
    )
    assert LogEntry.from_dict(entry.to_dict()) == entry


def test_log_entry_dict_keys():
    entry = LogEntry(index=1, term=1, command="APPEND greeting , World!", status="committed")
    assert set(entry.to_dict()) == {"Index", "Term", "Command", "Status", "Timestamp"}


def test_from_dict_truncates_float_numbers():
    entry = LogEntry.from_dict({"Index": 3.0, "Term": 2.7, "Command": "PUT a b"})
    assert entry.index == 3
    assert entry.term == 2
    assert entry.command == "PUT a b"
    assert entry.status == ""


def test_from_dict_ignores_wrong_types():
    entry = LogEntry.from_dict({"Index": "x", "Term": True, "Command": 5, "Status": None})
    assert (entry.index, entry.term, entry.command, entry.status) == (0, 0, "", "")


def test_from_dict_numeric_timestamp_is_nanoseconds():
    entry = LogEntry.from_dict({"Timestamp": 0})
    assert entry.timestamp == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_from_dict_parses_rfc3339_with_nanoseconds():
    entry = LogEntry.from_dict({"Timestamp": "2024-01-02T03:04:05.123456789Z"})
    assert entry.timestamp == datetime(2024, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc)


def test_from_dict_parses_offset():
    entry = LogEntry.from_dict({"Timestamp": "2024-01-02T05:04:05+02:00"})
    assert entry.timestamp == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_from_dict_bad_or_missing_timestamp_uses_now():
    before = datetime.now(timezone.utc)
    bad = LogEntry.from_dict({"Timestamp": "yesterday"})
    missing = LogEntry.from_dict({})
    after = datetime.now(timezone.utc)
    assert before <= bad.timestamp <= after
    assert before - timedelta(seconds=1) <= missing.timestamp <= after


def test_from_dict_non_mapping_gives_zero_entry():
    entry = LogEntry.from_dict("garbage")
    assert entry.index == 0 and entry.command == ""
    assert entry.timestamp.year == 1


def test_append_entries_args_entries_are_independent():
    first = AppendEntriesArgs(term=1, leader_id=1, prev_log_index=0, prev_log_term=0)
    second = AppendEntriesArgs(term=1, leader_id=2, prev_log_index=0, prev_log_term=0)
    first.entries.append(LogEntry())
    assert second.entries == []


@pytest.mark.parametrize(
    "msg",
    [
        "Sending heartbeat to node 2",
        "Becoming leader for term 3",
        "Granted vote to node 2 for term 1",
    ],
)
def test_unimportant_events(msg):
    assert is_important_event(msg) is False