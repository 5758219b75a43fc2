import pytest

from raftkv.statemachine import KVStore


def test_put_then_get():
    store = KVStore()
    store.put("name", "Alice")
    assert store.get("name") == "Alice"


def test_get_missing_returns_empty_string():
    assert KVStore().get("nothing") == ""


def test_append_to_existing_value():
    store = KVStore()
    store.put("greeting", "Hello")
    result = store.append("greeting", ", World!")
    assert result == "Hello, World!"
    assert store.get("greeting") == "Hello, World!"


def test_append_to_missing_key_creates_it():
    store = KVStore()
    assert store.append("name", " Smith") == " Smith"
    assert "name" in store


def test_apply_put_keeps_spaces_in_value():
    store = KVStore()
    assert store.apply_command("PUT city New York") == "New York"
    assert store.get("city") == "New York"


def test_apply_append_command():
    store = KVStore({"greeting": "Hello"})
    store.apply_command("APPEND greeting , World!")
    assert store.get("greeting") == "Hello, World!"


def test_apply_empty_command_is_noop():
    store = KVStore()
    assert store.apply_command("") is None
    assert store.snapshot() == {}


def test_apply_short_command_raises():
    store = KVStore()
    with pytest.raises(ValueError):
        store.apply_command("PUT key")
    assert len(store) == 0


def test_apply_unknown_command_is_ignored():
    store = KVStore({"a": "1"})
    assert store.apply_command("DELETE a b") is None
    assert store.snapshot() == {"a": "1"}


def test_apply_sequence_matches_direct_calls():
    commands = ["PUT name Alice", "PUT age 30", "APPEND name  Smith", "APPEND age 1"]
    applied = KVStore()
    for command in commands:
        applied.apply_command(command)
    direct = KVStore()
    direct.put("name", "Alice")
    direct.put("age", "30")
    direct.append("name", " Smith")
    direct.append("age", "1")
    assert applied.snapshot() == direct.snapshot()


def test_snapshot_is_a_copy():
    store = KVStore({"name": "Alice"})
    snap = store.snapshot()
    snap["name"] = "changed"
    assert store.get("name") == "Alice"


def test_constructor_copies_input():
    source = {"age": "30"}
    store = KVStore(source)
    source["age"] = "31"
    assert store.get("age") == "30"