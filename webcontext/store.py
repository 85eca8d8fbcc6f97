"""A thread-safe key/value store scoped to a single request."""

from __future__ import annotations

import datetime as _dt
import threading
from collections.abc import Callable, Iterator, Mapping
from typing import Any


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def _is_str_keyed(value: Any) -> bool:
    return isinstance(value, dict) and all(isinstance(key, str) for key in value)


class KeyStore:
    """Key/value pairs shared between the handlers of one request."""

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._lock = threading.RLock()
        self._data: dict[str, Any] = dict(initial or {})

    def set(self, key: str, value: Any) -> None:
        """Store a value under key."""
        with self._lock:
            self._data[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for key, or default when it is absent."""
        with self._lock:
            return self._data.get(key, default)

    def must_get(self, key: str) -> Any:
        """Return the value for key, raising KeyError when it is absent."""
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise KeyError(f'Key "{key}" does not exist') from None

    def _typed(self, key: str, check: Callable[[Any], bool], zero: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is not None and check(value):
            return value
        return zero()

    def get_string(self, key: str) -> str:
        """Return the value as a string, or "" when absent or not a string."""
        return self._typed(key, lambda v: isinstance(v, str), str)

    def get_bool(self, key: str) -> bool:
        """Return the value as a bool, or False."""
        return self._typed(key, lambda v: isinstance(v, bool), bool)

    def get_int(self, key: str) -> int:
        """Return the value as an int, or 0."""
        return self._typed(
            key, lambda v: isinstance(v, int) and not isinstance(v, bool), int
        )

    def get_float(self, key: str) -> float:
        """Return the value as a float, or 0.0."""
        return self._typed(key, lambda v: isinstance(v, float), float)

    def get_time(self, key: str) -> _dt.datetime | None:
        """Return the value as a datetime, or None."""
        return self._typed(key, lambda v: isinstance(v, _dt.datetime), lambda: None)

    def get_duration(self, key: str) -> _dt.timedelta:
        """Return the value as a timedelta, or a zero timedelta."""
        return self._typed(key, lambda v: isinstance(v, _dt.timedelta), _dt.timedelta)

    def get_string_list(self, key: str) -> list[str]:
        """Return the value as a list of strings, or an empty list."""
        return self._typed(key, _is_str_list, list)

    def get_string_map(self, key: str) -> dict[str, Any]:
        """Return the value as a string-keyed dict, or an empty dict."""
        return self._typed(key, _is_str_keyed, dict)

    def get_string_map_string(self, key: str) -> dict[str, str]:
        """Return the value as a dict of strings to strings, or an empty dict."""
        return self._typed(
            key,
            lambda v: _is_str_keyed(v) and all(isinstance(x, str) for x in v.values()),
            dict,
        )

    def get_string_map_string_list(self, key: str) -> dict[str, list[str]]:
        """Return the value as a dict of strings to string lists, or an empty dict."""
        return self._typed(
            key,
            lambda v: _is_str_keyed(v) and all(_is_str_list(x) for x in v.values()),
            dict,
        )

    def copy(self) -> "KeyStore":
        """Return an independent store holding the same pairs."""
        with self._lock:
            return KeyStore(self._data)

    def clear(self) -> None:
        """Remove every pair."""
        with self._lock:
            self._data.clear()

    def to_dict(self) -> dict[str, Any]:
        """Return a snapshot of the pairs."""
        with self._lock:
            return dict(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(self.to_dict())

    def __eq__(self, other: object) -> bool:
        if isinstance(other, KeyStore):
            return self.to_dict() == other.to_dict()
        if isinstance(other, Mapping):
            return self.to_dict() == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"KeyStore({self.to_dict()!r})"