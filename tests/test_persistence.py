import json
from datetime import datetime, timezone

import pytest

from raftkv.persistence import PersistedState, load_state, save_state, state_file_path
from raftkv.types import LogEntry


def _sample_state():
    stamp = datetime(2024, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)
    return PersistedState(
        current_term=3,
        voted_for=2,
        log=[
            LogEntry(0, 0, "", "committed", stamp),
            LogEntry(1, 3, "PUT name Alice", "uncommitted", stamp),
            LogEntry(2, 3, "APPEND greeting , World!", "applied", stamp),
        ],
        kv_store={"name": "Alice", "greeting": "Hello, World!"},
    )


def test_state_file_path_name(tmp_path):
    path = state_file_path(tmp_path, 3)
    assert path.parent == tmp_path
    assert path.name == "node3.state"


def test_save_and_load_round_trip(tmp_path):
    state = _sample_state()
    save_state(tmp_path, 1, state)
    assert load_state(tmp_path, 1) == state


def test_save_leaves_no_temporary_file(tmp_path):
    save_state(tmp_path, 2, _sample_state())
    assert sorted(p.name for p in tmp_path.iterdir()) == ["node2.state"]


def test_save_overwrites_previous_state(tmp_path):
    save_state(tmp_path, 1, _sample_state())
    newer = PersistedState(current_term=9, voted_for=-1, log=[], kv_store={})
    save_state(tmp_path, 1, newer)
    assert load_state(tmp_path, 1) == newer


def test_load_missing_returns_none(tmp_path):
    assert load_state(tmp_path, 5) is None


def test_load_invalid_json_raises(tmp_path):
    state_file_path(tmp_path, 1).write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        load_state(tmp_path, 1)


def test_load_non_object_raises(tmp_path):
    state_file_path(tmp_path, 1).write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_state(tmp_path, 1)


def test_to_dict_keys_and_json_serialisable():
    data = _sample_state().to_dict()
    assert set(data) == {"currentTerm", "votedFor", "log", "kvStore"}
    assert json.loads(json.dumps(data)) == data


def test_from_dict_defaults_when_empty():
    state = PersistedState.from_dict({})
    assert state.current_term == 0
    assert state.voted_for == -1
    assert len(state.log) == 1
    assert state.log[0].status == "committed"
    assert state.kv_store == {}


def test_from_dict_coerces_numbers_and_filters_values():
    state = PersistedState.from_dict(
        {"currentTerm": 4.0, "votedFor": 3.0, "kvStore": {"a": "1", "b": 2, "c": None}}
    )
    assert state.current_term == 4
    assert state.voted_for == 3
    assert state.kv_store == {"a": "1"}


def test_from_dict_keeps_placeholder_for_bad_log_entries():
    state = PersistedState.from_dict({"log": [{"Index": 0, "Term": 1}, "junk"]})
    assert len(state.log) == 2
    assert state.log[0].term == 1
    assert state.log[1].command == ""
    assert state.log[1].timestamp.year == 1


def test_default_logs_are_independent():
    first = PersistedState()
    second = PersistedState()
    first.log.append(LogEntry(index=1, term=1, command="PUT a b"))
    assert len(second.log) == 1