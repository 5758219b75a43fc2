"""The key-value state machine that committed log commands are applied to."""

from __future__ import annotations

from collections.abc import Mapping


class KVStore:
    """String-to-string store driven by PUT and APPEND commands."""

    def __init__(self, data: Mapping[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(data or {})

    def put(self, key: str, value: str) -> None:
        """Set key to value."""
        self._data[key] = value

    def append(self, key: str, value: str) -> str:
        """Concatenate value onto the key's current value and return the result."""
        new_value = self._data.get(key, "") + value
        self._data[key] = new_value
        return new_value

    def get(self, key: str) -> str:
        """Return the key's value, or an empty string when it is unset."""
        return self._data.get(key, "")

    def apply_command(self, command: str) -> str | None:
        """Apply a "PUT key value" or "APPEND key value" command.

        Returns the key's new value, or None when nothing changed. An empty
        command and unknown command types are ignored; a command with fewer
        than three parts raises ValueError.
        """
        if not command:
            return None
        parts = command.split(" ", 2)
        if len(parts) < 3:
            raise ValueError(f"Invalid command format: {command}")
        kind, key, value = parts
        if kind == "PUT":
            self.put(key, value)
            return value
        if kind == "APPEND":
            return self.append(key, value)
        return None

    def snapshot(self) -> dict[str, str]:
        """Return a copy of the stored data."""
        return dict(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)