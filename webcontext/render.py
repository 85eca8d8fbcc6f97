"""Response writing and the renderers that serialise response bodies."""

from __future__ import annotations

import abc
import base64
import dataclasses
import datetime as _dt
import http
import json as _json
import posixpath
import re
import shutil
import threading
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from typing import Any, BinaryIO, ClassVar

import tomli_w
import yaml

from webcontext.debug import debug_print
from webcontext.errors import Error, ErrorList
from webcontext.request import Headers, Request

JSON_CONTENT_TYPE = "application/json; charset=utf-8"
JSONP_CONTENT_TYPE = "application/javascript; charset=utf-8"
ASCII_JSON_CONTENT_TYPE = "application/json"
XML_CONTENT_TYPE = "application/xml; charset=utf-8"
YAML_CONTENT_TYPE = "application/yaml; charset=utf-8"
TOML_CONTENT_TYPE = "application/toml; charset=utf-8"
PLAIN_CONTENT_TYPE = "text/plain; charset=utf-8"
HTML_CONTENT_TYPE = "text/html; charset=utf-8"
SSE_CONTENT_TYPE = "text/event-stream"

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}
_JS_ESCAPES = {
    "\\": "\\\\",
    "'": "\\'",
    '"': '\\"',
    "<": "\\u003C",
    ">": "\\u003E",
    "&": "\\u0026",
    "=": "\\u003D",
    "\t": "\\t",
    "\n": "\\n",
    "\r": "\\r",
}
_HTML_ATTR_ESCAPES = {"&": "&amp;", "<": "&lt;", ">": "&gt;", '"': "&#34;", "'": "&#39;"}
_TOML_BARE_KEY = re.compile(r"[A-Za-z0-9_-]+")


class ResponseWriter:
    """Collects the status, headers and body of a response."""

    def __init__(self, stream: BinaryIO | None = None):
        self.headers = Headers()
        self.status = http.HTTPStatus.OK.value
        self.size = -1
        self.body = bytearray()
        self.stream = stream
        self.sent_headers: Headers | None = None
        self.disconnected = threading.Event()

    @property
    def written(self) -> bool:
        """Whether the status line and headers have been committed."""
        return self.size != -1

    def write_header(self, code: int) -> None:
        """Set the pending status; ignored for non-positive codes or once written."""
        if code > 0 and self.status != code:
            if self.written:
                debug_print(
                    "[WARNING] Headers were already written. "
                    "Wanted to override status code %d with %d",
                    self.status,
                    code,
                )
                return
            self.status = code

    def write_header_now(self) -> None:
        """Commit the status and headers if that has not happened yet."""
        if not self.written:
            self.size = 0
            self.sent_headers = self.headers.copy()

    def write(self, data: bytes | bytearray | str) -> int:
        """Write body data, committing headers first; return the byte count."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.write_header_now()
        self.body.extend(data)
        if self.stream is not None:
            self.stream.write(bytes(data))
        self.size += len(data)
        return len(data)

    def write_string(self, text: str) -> int:
        """Write text as UTF-8."""
        return self.write(text)

    def flush(self) -> None:
        """Commit headers and flush the underlying stream."""
        self.write_header_now()
        if self.stream is not None:
            self.stream.flush()

    def __repr__(self) -> str:
        return f"ResponseWriter(status={self.status}, size={self.size})"


def _set_default_content_type(writer: ResponseWriter, value: str) -> None:
    if not writer.headers.get_all("Content-Type"):
        writer.headers.set("Content-Type", value)


def _plain(value: Any) -> Any:
    """Turn mappings, dataclasses and sequences into plain data with sorted map keys."""
    if isinstance(value, (Error, ErrorList)):
        return _plain(value.json())
    if isinstance(value, Mapping):
        return {str(key): _plain(value[key]) for key in sorted(value, key=str)}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, _dt.timedelta):
        return (value // _dt.timedelta(microseconds=1)) * 1000
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    raise TypeError(f"json: unsupported type: {type(value).__name__}")


def _marshal(
    value: Any,
    *,
    escape_html: bool = True,
    ensure_ascii: bool = False,
    indent: int | None = None,
) -> str:
    separators = (",", ": ") if indent is not None else (",", ":")
    text = _json.dumps(
        _plain(value),
        separators=separators,
        indent=indent,
        ensure_ascii=ensure_ascii,
        allow_nan=False,
        default=_json_default,
    )
    if escape_html:
        for char, escaped in _HTML_ESCAPES.items():
            text = text.replace(char, escaped)
    return text


def _js_escape(text: str) -> str:
    out = []
    for char in text:
        if char in _JS_ESCAPES:
            out.append(_JS_ESCAPES[char])
        elif ord(char) < 0x20:
            out.append(f"\\u{ord(char):04X}")
        else:
            out.append(char)
    return "".join(out)


def _scalar_text(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return str(value)


class Renderer(abc.ABC):
    """Writes a response body and its content type."""

    mime_type: ClassVar[str] = ""

    @abc.abstractmethod
    def render(self, writer: ResponseWriter) -> None:
        """Write the content type and the body to writer."""

    def write_content_type(self, writer: ResponseWriter) -> None:
        """Set the content type unless the response already has one."""
        if self.mime_type:
            _set_default_content_type(writer, self.mime_type)


class _BodyRenderer(Renderer):
    """A renderer whose whole body is produced at once."""

    def render(self, writer: ResponseWriter) -> None:
        self.write_content_type(writer)
        writer.write(self._encode())

    @abc.abstractmethod
    def _encode(self) -> str | bytes:
        """Return the response body."""


@dataclasses.dataclass
class JSON(_BodyRenderer):
    """Compact JSON with HTML characters escaped."""

    data: Any
    mime_type: ClassVar[str] = JSON_CONTENT_TYPE

    def _encode(self) -> str:
        return _marshal(self.data)


@dataclasses.dataclass
class IndentedJSON(_BodyRenderer):
    """JSON indented by four spaces."""

    data: Any
    mime_type: ClassVar[str] = JSON_CONTENT_TYPE

    def _encode(self) -> str:
        return _marshal(self.data, indent=4)


@dataclasses.dataclass
class SecureJSON(_BodyRenderer):
    """JSON whose top-level arrays are preceded by a prefix."""

    data: Any
    prefix: str = "while(1),"
    mime_type: ClassVar[str] = JSON_CONTENT_TYPE

    def _encode(self) -> str:
        text = _marshal(self.data)
        if text.startswith("[") and text.endswith("]"):
            return self.prefix + text
        return text


@dataclasses.dataclass
class JSONP(_BodyRenderer):
    """JSON wrapped in a call to a JavaScript callback."""

    data: Any
    callback: str = ""
    mime_type: ClassVar[str] = JSONP_CONTENT_TYPE

    def _encode(self) -> str:
        text = _marshal(self.data)
        if not self.callback:
            return text
        return f"{_js_escape(self.callback)}({text});"


@dataclasses.dataclass
class AsciiJSON(_BodyRenderer):
    """JSON with every non-ASCII character escaped."""

    data: Any
    mime_type: ClassVar[str] = ASCII_JSON_CONTENT_TYPE

    def _encode(self) -> str:
        return _marshal(self.data, ensure_ascii=True)


@dataclasses.dataclass
class PureJSON(_BodyRenderer):
    """JSON without HTML escaping, ending in a newline."""

    data: Any
    mime_type: ClassVar[str] = JSON_CONTENT_TYPE

    def _encode(self) -> str:
        return _marshal(self.data, escape_html=False) + "\n"


def _xml_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _xml_append(parent: ET.Element, tag: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, list):
        for item in value:
            _xml_append(parent, tag, item)
        return
    parent.append(_xml_element(tag, value))


def _xml_element(tag: str, value: Any) -> ET.Element:
    element = ET.Element(tag)
    if isinstance(value, dict):
        for key, item in value.items():
            _xml_append(element, key, item)
    else:
        element.text = _xml_text(value)
    return element


@dataclasses.dataclass
class XML(_BodyRenderer):
    """XML: mappings become <map>, dataclasses take their class name."""

    data: Any
    mime_type: ClassVar[str] = XML_CONTENT_TYPE

    def _encode(self) -> str:
        items = self.data if isinstance(self.data, (list, tuple)) else [self.data]
        parts = []
        for item in items:
            if item is None:
                continue
            tag = "map" if isinstance(item, Mapping) else type(item).__name__
            element = _xml_element(tag, _plain(item))
            parts.append(ET.tostring(element, encoding="unicode", short_empty_elements=False))
        return "".join(parts)


@dataclasses.dataclass
class YAML(_BodyRenderer):
    """YAML in block style."""

    data: Any
    mime_type: ClassVar[str] = YAML_CONTENT_TYPE

    def _encode(self) -> str:
        return yaml.safe_dump(
            _plain(self.data),
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
            indent=4,
        )


def _toml_scalar(value: Any) -> str:
    line = tomli_w.dumps({"v": value})
    return line[len("v = "):].rstrip("\n")


def _toml_string(text: str) -> str:
    literal_ok = "'" not in text and all(
        char == "\t" or (ord(char) >= 0x20 and ord(char) != 0x7F) for char in text
    )
    if literal_ok:
        return f"'{text}'"
    return _toml_scalar(text)


def _toml_key(key: str) -> str:
    if _TOML_BARE_KEY.fullmatch(key):
        return key
    return _toml_scalar(key)


def _toml_value(value: Any) -> str:
    if isinstance(value, str):
        return _toml_string(value)
    if isinstance(value, dict):
        pairs = ", ".join(
            f"{_toml_key(k)} = {_toml_value(v)}" for k, v in value.items() if v is not None
        )
        return "{" + pairs + "}"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, (bool, int, float, _dt.datetime, _dt.date, _dt.time)):
        return _toml_scalar(value)
    return _toml_string(str(value))


def _is_table_array(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(isinstance(v, dict) for v in value)


def _toml_table(path: list[str], table: dict[str, Any], out: list[str]) -> None:
    tables = []
    arrays = []
    for key, value in table.items():
        if value is None:
            continue
        if isinstance(value, dict):
            tables.append((key, value))
        elif _is_table_array(value):
            arrays.append((key, value))
        else:
            out.append(f"{_toml_key(key)} = {_toml_value(value)}\n")
    for key, value in tables:
        sub = path + [key]
        if out:
            out.append("\n")
        out.append("[" + ".".join(_toml_key(p) for p in sub) + "]\n")
        _toml_table(sub, value, out)
    for key, items in arrays:
        sub = path + [key]
        for item in items:
            if out:
                out.append("\n")
            out.append("[[" + ".".join(_toml_key(p) for p in sub) + "]]\n")
            _toml_table(sub, item, out)


@dataclasses.dataclass
class TOML(_BodyRenderer):
    """TOML, preferring literal strings; the data must be a table."""

    data: Any
    mime_type: ClassVar[str] = TOML_CONTENT_TYPE

    def _encode(self) -> str:
        table = _plain(self.data)
        if not isinstance(table, dict):
            raise TypeError("toml: top-level value must be a table")
        out: list[str] = []
        _toml_table([], table, out)
        return "".join(out)


@dataclasses.dataclass
class Text(_BodyRenderer):
    """Plain text, %-formatted when arguments are given."""

    format: str
    args: tuple = ()
    mime_type: ClassVar[str] = PLAIN_CONTENT_TYPE

    def _encode(self) -> str:
        if self.args:
            return self.format % tuple(self.args)
        return self.format


def _clean_path(path: str) -> str:
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _hex_escape_non_ascii(text: str) -> str:
    return "".join(
        char if ord(char) < 0x80 else "".join(f"%{b:02x}" for b in char.encode("utf-8"))
        for char in text
    )


def _status_text(code: int) -> str:
    try:
        return http.HTTPStatus(code).phrase
    except ValueError:
        return ""


@dataclasses.dataclass
class Redirect(Renderer):
    """An HTTP redirect to a location, resolved against the request path."""

    code: int
    location: str
    request: Request | None = None

    def render(self, writer: ResponseWriter) -> None:
        if (self.code < 300 or self.code > 308) and self.code != 201:
            raise ValueError(f"Cannot redirect with status code {self.code}")
        method = self.request.method if self.request is not None else ""
        url = self._resolve()
        had_content_type = bool(writer.headers.get_all("Content-Type"))
        writer.headers.set("Location", _hex_escape_non_ascii(url))
        if not had_content_type and method in ("GET", "HEAD"):
            writer.headers.set("Content-Type", HTML_CONTENT_TYPE)
        writer.write_header(self.code)
        if not had_content_type and method == "GET":
            href = "".join(_HTML_ATTR_ESCAPES.get(c, c) for c in url)
            writer.write_string(f'<a href="{href}">{_status_text(self.code)}</a>.\n\n')

    def write_content_type(self, writer: ResponseWriter) -> None:
        """Redirects set no content type of their own."""

    def _resolve(self) -> str:
        from urllib.parse import urlsplit

        url = self.location
        try:
            parts = urlsplit(url)
        except ValueError:
            return url
        if parts.scheme or parts.netloc:
            return url
        old_path = self.request.path if self.request is not None else ""
        old_path = old_path or "/"
        if not url.startswith("/"):
            old_dir = old_path[: old_path.rfind("/") + 1]
            url = old_dir + url
        query = ""
        if "?" in url:
            url, query = url[: url.index("?")], url[url.index("?"):]
        trailing = url.endswith("/")
        url = _clean_path(url)
        if trailing and not url.endswith("/"):
            url += "/"
        return url + query


@dataclasses.dataclass
class Data(_BodyRenderer):
    """Raw bytes with a given content type."""

    content_type: str
    data: bytes

    def write_content_type(self, writer: ResponseWriter) -> None:
        _set_default_content_type(writer, self.content_type)

    def _encode(self) -> bytes:
        return bytes(self.data)


@dataclasses.dataclass
class Reader(Renderer):
    """A body copied from a readable stream, with optional extra headers."""

    reader: Any
    content_type: str = ""
    content_length: int = -1
    headers: Mapping[str, str] | None = None

    def write_content_type(self, writer: ResponseWriter) -> None:
        _set_default_content_type(writer, self.content_type)

    def render(self, writer: ResponseWriter) -> None:
        self.write_content_type(writer)
        extra = dict(self.headers or {})
        if self.content_length >= 0:
            extra["Content-Length"] = str(self.content_length)
        for key, value in extra.items():
            if not writer.headers.get(key):
                writer.headers.set(key, value)
        shutil.copyfileobj(self.reader, writer)


def _sse_field(text: str) -> str:
    return text.replace("\n", "\\n").replace("\r", "\\r")


@dataclasses.dataclass
class ServerSentEvent(_BodyRenderer):
    """One server-sent event."""

    event: str = ""
    data: Any = None
    id: str = ""
    retry: int = 0

    def write_content_type(self, writer: ResponseWriter) -> None:
        writer.headers.set("Content-Type", SSE_CONTENT_TYPE)
        if "Cache-Control" not in writer.headers:
            writer.headers.set("Cache-Control", "no-cache")

    def _encode(self) -> str:
        parts = []
        if self.id:
            parts.append(f"id:{_sse_field(self.id)}\n")
        if self.event:
            parts.append(f"event:{_sse_field(self.event)}\n")
        if self.retry > 0:
            parts.append(f"retry:{self.retry}\n")
        data = self.data
        structured = isinstance(data, (Mapping, list, tuple)) or (
            dataclasses.is_dataclass(data) and not isinstance(data, type)
        )
        if structured:
            parts.append("data:" + _marshal(data) + "\n\n")
        else:
            text = _scalar_text(data).replace("\n", "\ndata:").replace("\r", "\\r")
            parts.append("data:" + text + "\n\n")
        return "".join(parts)