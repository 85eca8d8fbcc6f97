"""An incoming HTTP request: headers, query, forms, uploads and cookies."""

from __future__ import annotations

import dataclasses
import email.message
import email.utils
import io
import posixpath
import re
import string
from collections.abc import Iterable, Iterator, Mapping
from typing import Any, BinaryIO
from urllib.parse import unquote_plus, urlsplit

DEFAULT_MAX_MEMORY = 32 << 20
_EXTRA_VALUE_MEMORY = 10 << 20
_FORM_METHODS = frozenset({"POST", "PUT", "PATCH"})
_TOKEN_CHARS = frozenset(string.ascii_letters + string.digits + "!#$%&'*+-.^_`|~")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_FLAGS = re.compile(r"[^ ;]*")


def _is_token(text: str) -> bool:
    return bool(text) and all(char in _TOKEN_CHARS for char in text)


def _canonical_key(key: str) -> str:
    if not _is_token(key):
        return key
    return "-".join(part[:1].upper() + part[1:].lower() for part in key.split("-"))


class Headers:
    """Case-insensitive, multi-valued HTTP headers."""

    def __init__(self, initial: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None):
        self._values: dict[str, list[str]] = {}
        if initial is None:
            return
        items = initial.items() if isinstance(initial, Mapping) else initial
        for key, value in items:
            if isinstance(value, (list, tuple)):
                for item in value:
                    self.add(key, item)
            else:
                self.add(key, value)

    def get(self, key: str) -> str:
        """Return the first value for key, or ""."""
        values = self._values.get(_canonical_key(key))
        return values[0] if values else ""

    def get_all(self, key: str) -> list[str]:
        """Return every value for key."""
        return list(self._values.get(_canonical_key(key), []))

    def set(self, key: str, value: str) -> None:
        """Replace the values for key with a single value."""
        self._values[_canonical_key(key)] = [value]

    def add(self, key: str, value: str) -> None:
        """Append a value for key."""
        self._values.setdefault(_canonical_key(key), []).append(value)

    def delete(self, key: str) -> None:
        """Remove every value for key."""
        self._values.pop(_canonical_key(key), None)

    def items(self) -> list[tuple[str, list[str]]]:
        return [(key, list(values)) for key, values in self._values.items()]

    def copy(self) -> "Headers":
        return Headers(self.items())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and _canonical_key(key) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._values == other._values

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Headers({self._values!r})"


class NotMultipartError(ValueError):
    """The request body is not multipart/form-data."""

    def __init__(self, message: str = "request Content-Type isn't multipart/form-data"):
        super().__init__(message)


class NoCookieError(LookupError):
    """The named cookie is not present in the request."""

    def __init__(self, message: str = "named cookie not present"):
        super().__init__(message)


class MissingFileError(LookupError):
    """The named file is not present in the multipart form."""

    def __init__(self, message: str = "no such file"):
        super().__init__(message)


@dataclasses.dataclass
class FileHeader:
    """An uploaded file from a multipart form."""

    filename: str
    header: Headers = dataclasses.field(default_factory=Headers)
    size: int = 0
    content: bytes | None = None

    def open(self) -> BinaryIO:
        """Return a readable stream over the file's content."""
        if self.content is None:
            raise FileNotFoundError(f"no content for uploaded file {self.filename!r}")
        return io.BytesIO(self.content)


@dataclasses.dataclass
class MultipartForm:
    """Parsed multipart form: plain values and uploaded files."""

    value: dict[str, list[str]] = dataclasses.field(default_factory=dict)
    file: dict[str, list[FileHeader]] = dataclasses.field(default_factory=dict)


def parse_query(query: str) -> dict[str, list[str]]:
    """Parse a URL-encoded query, skipping malformed pairs."""
    values: dict[str, list[str]] = {}
    for segment in query.split("&"):
        if not segment or ";" in segment:
            continue
        key, _, value = segment.partition("=")
        if _BAD_ESCAPE.search(key) or _BAD_ESCAPE.search(value):
            continue
        values.setdefault(unquote_plus(key), []).append(unquote_plus(value))
    return values


def bracket_map(values: Mapping[str, list[str]], key: str) -> tuple[dict[str, str], bool]:
    """Collect entries named key[sub] into {sub: first value}, and whether any existed."""
    result: dict[str, str] = {}
    exists = False
    for name, items in values.items():
        open_at = name.find("[")
        if open_at < 1 or name[:open_at] != key:
            continue
        rest = name[open_at + 1:]
        close_at = rest.find("]")
        if close_at < 1:
            continue
        exists = True
        result[rest[:close_at]] = items[0]
    return result, exists


def filter_flags(content: str) -> str:
    """Return a header value up to its first space or semicolon."""
    return _FLAGS.match(content).group()


def _header_param(header: str, value: str, param: str) -> str | None:
    message = email.message.Message()
    message[header] = value
    found = message.get_param(param, header=header)
    if found is None:
        return None
    return email.utils.collapse_rfc2231_value(found)


def _media_type(value: str) -> str:
    return filter_flags(value).strip().lower()


def _parse_part_headers(head: bytes) -> Headers:
    headers = Headers()
    for line in head.decode("utf-8", "replace").split("\r\n"):
        if not line.strip():
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise ValueError("multipart: malformed MIME header line")
        headers.add(name.strip(), value.strip())
    return headers


def _parse_multipart(body: bytes, boundary: str, max_memory: int) -> MultipartForm:
    delimiter = b"\r\n--" + boundary.encode("latin-1")
    pieces = (b"\r\n" + body).split(delimiter)
    form = MultipartForm()
    value_budget = max_memory + _EXTRA_VALUE_MEMORY
    for piece in pieces[1:]:
        if piece.startswith(b"--"):
            return form
        head, sep, content = piece.partition(b"\r\n\r\n")
        if not sep:
            raise ValueError("multipart: malformed part")
        headers = _parse_part_headers(head)
        disposition = headers.get("Content-Disposition")
        if not disposition or _media_type(disposition) != "form-data":
            continue
        name = _header_param("Content-Disposition", disposition, "name")
        if not name:
            continue
        filename = _header_param("Content-Disposition", disposition, "filename")
        if not filename:
            value_budget -= len(content)
            if value_budget < 0:
                raise ValueError("multipart: message too large")
            form.value.setdefault(name, []).append(content.decode("utf-8", "replace"))
            continue
        upload = FileHeader(
            filename=posixpath.basename(filename),
            header=headers,
            size=len(content),
            content=bytes(content),
        )
        form.file.setdefault(name, []).append(upload)
    raise ValueError("multipart: NextPart: EOF")


def _as_stream(body: Any) -> BinaryIO | None:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return io.BytesIO(bytes(body))
    if isinstance(body, str):
        return io.BytesIO(body.encode("utf-8"))
    return body


class Request:
    """An HTTP request whose body is read at most once."""

    def __init__(
        self,
        method: str = "GET",
        url: str | None = "/",
        headers: Headers | Mapping[str, Any] | None = None,
        body: Any = None,
        remote_addr: str = "",
    ):
        self.method = method
        self.url = url
        self.headers = headers if isinstance(headers, Headers) else Headers(headers)
        self.body = _as_stream(body)
        self.remote_addr = remote_addr
        self._post_form: dict[str, list[str]] | None = None
        self._multipart: MultipartForm | None = None

    @property
    def path(self) -> str:
        return urlsplit(self.url).path if self.url is not None else ""

    @property
    def raw_query(self) -> str:
        return urlsplit(self.url).query if self.url is not None else ""

    def query(self) -> dict[str, list[str]]:
        """Return the parsed URL query."""
        return parse_query(self.raw_query)

    def _parse_form(self) -> dict[str, list[str]]:
        if self._post_form is None:
            form: dict[str, list[str]] = {}
            content_type = _media_type(self.headers.get("Content-Type"))
            if (
                self.method in _FORM_METHODS
                and self.body is not None
                and content_type == "application/x-www-form-urlencoded"
            ):
                form = parse_query(self.body.read().decode("utf-8", "replace"))
            self._post_form = form
        return self._post_form

    def _is_multipart(self) -> bool:
        return _media_type(self.headers.get("Content-Type")) == "multipart/form-data"

    def post_form(self, max_memory: int = DEFAULT_MAX_MEMORY) -> dict[str, list[str]]:
        """Return the body form values; raises ValueError on a malformed multipart body."""
        self._parse_form()
        if self._multipart is None and self._is_multipart():
            self.multipart_form(max_memory)
        return self._post_form

    def multipart_form(self, max_memory: int = DEFAULT_MAX_MEMORY) -> MultipartForm:
        """Parse and return the multipart form, caching the result."""
        post_form = self._parse_form()
        if self._multipart is not None:
            return self._multipart
        content_type = self.headers.get("Content-Type")
        if not content_type or not self._is_multipart():
            raise NotMultipartError()
        boundary = _header_param("Content-Type", content_type, "boundary")
        if not boundary:
            raise ValueError("no multipart boundary param in Content-Type")
        if self.body is None:
            raise ValueError("missing form body")
        form = _parse_multipart(self.body.read(), boundary, max_memory)
        for key, values in form.value.items():
            post_form.setdefault(key, []).extend(values)
        self._multipart = form
        return form

    def form_file(self, name: str, max_memory: int = DEFAULT_MAX_MEMORY) -> FileHeader:
        """Return the first uploaded file for name."""
        form = self.multipart_form(max_memory)
        files = form.file.get(name)
        if not files:
            raise MissingFileError()
        return files[0]

    def cookie(self, name: str) -> str:
        """Return the raw value of the named cookie."""
        for line in self.headers.get_all("Cookie"):
            for part in line.split(";"):
                key, _, value = part.strip().partition("=")
                if key != name or not _is_token(key):
                    continue
                if len(value) > 1 and value[0] == value[-1] == '"':
                    value = value[1:-1]
                return value
        raise NoCookieError()

    def read_body(self) -> bytes:
        """Read what remains of the body."""
        if self.body is None:
            raise ValueError("cannot read nil body")
        return self.body.read()

    def __repr__(self) -> str:
        return f"Request({self.method!r}, {self.url!r})"