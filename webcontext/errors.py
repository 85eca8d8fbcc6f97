"""Errors attached to a request context, with typing, metadata and JSON views."""

from __future__ import annotations

import dataclasses
import enum
import json as _json
from collections.abc import Mapping
from typing import Any


class ErrorType(enum.IntFlag):
    """Bit flags classifying an attached error."""

    PRIVATE = 1 << 0
    PUBLIC = 1 << 1
    RENDER = 1 << 62
    BIND = 1 << 63
    ANY = (1 << 64) - 1
    NU = 2


def _jsonable(value: Any) -> Any:
    """Convert a value into plain JSON data, sorting mapping keys."""
    if isinstance(value, Error):
        return _jsonable(value.json())
    if isinstance(value, Mapping):
        return {str(k): _jsonable(value[k]) for k in sorted(value, key=str)}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _dumps(value: Any) -> str:
    """Serialise compactly, escaping HTML-sensitive characters."""
    text = _json.dumps(_jsonable(value), separators=(",", ":"), ensure_ascii=False, default=str)
    for char, escaped in _HTML_ESCAPES.items():
        text = text.replace(char, escaped)
    return text


def _format_value(value: Any) -> str:
    """Render a value the way the error report prints metadata."""
    if value is None:
        return "<nil>"
    if isinstance(value, Mapping):
        items = " ".join(
            f"{k}:{_format_value(value[k])}" for k in sorted(value, key=str)
        )
        return f"map[{items}]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(item) for item in value) + "]"
    return str(value)


class Error(Exception):
    """An error wrapped with a type and optional metadata."""

    def __init__(self, err: BaseException, error_type: ErrorType = ErrorType(0), meta: Any = None):
        super().__init__(str(err))
        self.err = err
        self.type = ErrorType(error_type)
        self.meta = meta
        self.__cause__ = err

    def __str__(self) -> str:
        return str(self.err)

    def __repr__(self) -> str:
        return f"Error({self.err!r}, type={self.type!r}, meta={self.meta!r})"

    def set_type(self, flags: ErrorType) -> "Error":
        """Set the error's type and return the error."""
        self.type = ErrorType(flags)
        return self

    def set_meta(self, data: Any) -> "Error":
        """Set the error's metadata and return the error."""
        self.meta = data
        return self

    def json(self) -> Any:
        """Return a JSON-ready view of the error."""
        data: dict[str, Any] = {}
        meta = self.meta
        if meta is not None:
            if dataclasses.is_dataclass(meta) and not isinstance(meta, type):
                return meta
            if isinstance(meta, Mapping):
                for key, value in meta.items():
                    data[str(key)] = value
            else:
                data["meta"] = meta
        data.setdefault("error", str(self))
        return data

    def to_json(self) -> str:
        """Serialise the error to a JSON string."""
        return _dumps(self.json())

    def is_type(self, flags: ErrorType) -> bool:
        """Report whether the error carries any of the given flags."""
        return (self.type & flags) > 0


class ErrorList(list):
    """The list of errors collected while handling a request."""

    def by_type(self, typ: ErrorType) -> "ErrorList":
        """Return the errors carrying any of the given flags."""
        if not self:
            return ErrorList()
        if typ == ErrorType.ANY:
            return self
        return ErrorList(msg for msg in self if msg.is_type(typ))

    def last(self) -> Error | None:
        """Return the last error, or None when there is none."""
        return self[-1] if self else None

    def errors(self) -> list[str]:
        """Return the message of every error."""
        return [str(msg) for msg in self]

    def json(self) -> Any:
        """Return None, one error's JSON view, or a list of them."""
        if not self:
            return None
        if len(self) == 1:
            return self[0].json()
        return [msg.json() for msg in self]

    def to_json(self) -> str:
        """Serialise the errors to a JSON string."""
        return _dumps(self.json())

    def __str__(self) -> str:
        lines = []
        for number, msg in enumerate(self, start=1):
            lines.append(f"Error #{number:02d}: {msg.err}\n")
            if msg.meta is not None:
                lines.append(f"     Meta: {_format_value(msg.meta)}\n")
        return "".join(lines)