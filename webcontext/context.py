"""The per-request context: flow control, input access and response rendering."""

from __future__ import annotations

import dataclasses
import enum
import ipaddress
import mimetypes
import os
import shutil
from collections.abc import Callable, Iterable, Mapping
from typing import Any
from urllib.parse import quote_plus, unquote_plus

from webcontext import render as _render
from webcontext.debug import debug_print, name_of_function
from webcontext.errors import Error, ErrorList, ErrorType
from webcontext.request import (
    DEFAULT_MAX_MEMORY,
    FileHeader,
    MultipartForm,
    Request,
    bracket_map,
    filter_flags,
)
from webcontext.store import KeyStore

MIME_JSON = "application/json"
MIME_HTML = "text/html"
MIME_XML = "application/xml"
MIME_XML2 = "text/xml"
MIME_PLAIN = "text/plain"
MIME_POST_FORM = "application/x-www-form-urlencoded"
MIME_MULTIPART_POST_FORM = "multipart/form-data"
MIME_YAML = "application/x-yaml"
MIME_YAML2 = "application/yaml"
MIME_TOML = "application/toml"

PLATFORM_GOOGLE_APP_ENGINE = "X-Appengine-Remote-Addr"
PLATFORM_CLOUDFLARE = "CF-Connecting-IP"
PLATFORM_FLY_IO = "Fly-Client-IP"

BODY_BYTES_KEY = "_webcontext/bodybyteskey"
CONTEXT_KEY = "_webcontext/contextkey"
CONTEXT_REQUEST_KEY = object()

ABORT_INDEX = 127 >> 1


class SameSite(enum.Enum):
    """The SameSite attribute of a cookie."""

    DEFAULT = ""
    LAX = "Lax"
    STRICT = "Strict"
    NONE = "None"


def _default_cidrs() -> list:
    return [ipaddress.ip_network("0.0.0.0/0"), ipaddress.ip_network("::/0")]


@dataclasses.dataclass
class ContextOptions:
    """Settings shared by every context of an application."""

    max_multipart_memory: int = DEFAULT_MAX_MEMORY
    trusted_platform: str = ""
    app_engine: bool = False
    forwarded_by_client_ip: bool = True
    remote_ip_headers: list[str] | None = dataclasses.field(
        default_factory=lambda: ["X-Forwarded-For", "X-Real-IP"]
    )
    trusted_cidrs: list | None = dataclasses.field(default_factory=_default_cidrs)
    secure_json_prefix: str = "while(1),"
    templates: dict[str, Callable[[Any], str]] = dataclasses.field(default_factory=dict)
    clean_data: Any = None

    def set_trusted_proxies(self, proxies: Iterable[str] | None) -> None:
        """Trust the given addresses or CIDR blocks; None trusts nothing."""
        if proxies is None:
            self.trusted_cidrs = None
            return
        self.trusted_cidrs = [ipaddress.ip_network(p.strip(), strict=False) for p in proxies]

    def is_trusted_proxy(self, ip: Any) -> bool:
        """Report whether ip lies in a trusted block."""
        if ip is None or not self.trusted_cidrs:
            return False
        return any(ip.version == net.version and ip in net for net in self.trusted_cidrs)

    def validate_header(self, header: str) -> str | None:
        """Return the client address from a forwarding header, or None."""
        if not header:
            return None
        items = header.split(",")
        for position in range(len(items) - 1, -1, -1):
            text = items[position].strip()
            try:
                ip = ipaddress.ip_address(text)
            except ValueError:
                return None
            if position == 0 or not self.is_trusted_proxy(ip):
                return text
        return None


@dataclasses.dataclass
class Param:
    """One URL parameter."""

    key: str
    value: str


class Params(list):
    """The URL parameters of a matched route."""

    def get(self, name: str) -> str | None:
        """Return the first value for name, or None."""
        for param in self:
            if param.key == name:
                return param.value
        return None

    def by_name(self, name: str) -> str:
        """Return the first value for name, or ""."""
        value = self.get(name)
        return "" if value is None else value


@dataclasses.dataclass
class HandlerInfo:
    """A handler and the optional check that guards it."""

    handler: Callable[["Context"], Any]
    access_check: Callable[[Any], bool] | None = None


@dataclasses.dataclass
class Negotiate:
    """Data offered for each format during content negotiation."""

    offered: list[str] = dataclasses.field(default_factory=list)
    html_name: str = ""
    html_data: Any = None
    json_data: Any = None
    xml_data: Any = None
    yaml_data: Any = None
    data: Any = None
    toml_data: Any = None


def body_allowed_for_status(status: int) -> bool:
    """Report whether a response with this status may carry a body."""
    return not (100 <= status <= 199 or status in (204, 304))


@dataclasses.dataclass
class _HTMLTemplate(_render.Renderer):
    template: Callable[[Any], str] | None
    name: str
    data: Any
    mime_type = _render.HTML_CONTENT_TYPE

    def render(self, writer: _render.ResponseWriter) -> None:
        self.write_content_type(writer)
        if self.template is None:
            raise KeyError(f"html template {self.name!r} is undefined")
        writer.write_string(self.template(self.data))


def _split_host_port(addr: str) -> str | None:
    if addr.startswith("["):
        end = addr.find("]:")
        if end < 0:
            return None
        return addr[1:end]
    if addr.count(":") != 1:
        return None
    return addr.split(":")[0]


def _parse_accept(header: str) -> list[str]:
    result = []
    for part in header.split(","):
        part = part.split(";", 1)[0].strip()
        if part:
            result.append(part)
    return result


def _as_handler(item: Any) -> HandlerInfo | None:
    if item is None or isinstance(item, HandlerInfo):
        return item
    return HandlerInfo(item)


class Context:
    """Everything a handler needs to read a request and write a response."""

    def __init__(
        self,
        request: Request | None = None,
        writer: _render.ResponseWriter | None = None,
        options: ContextOptions | None = None,
        handlers: Iterable[Any] | None = None,
        params: Iterable[Param] | None = None,
        my_data: Any = None,
    ):
        self.request = request
        self.options = options if options is not None else ContextOptions()
        self._base_writer = writer if writer is not None else _render.ResponseWriter()
        self.writer = self._base_writer
        self.handlers: list[HandlerInfo | None] = [_as_handler(h) for h in handlers or []]
        self.params = Params(params or [])
        self.my_data = my_data
        self.index = -1
        self.full_path = ""
        self.keys = KeyStore()
        self.errors = ErrorList()
        self.accepted: list[str] | None = None
        self._query_cache: dict[str, list[str]] | None = None
        self._form_cache: dict[str, list[str]] | None = None
        self._same_site: SameSite | None = None

    def reset(self) -> None:
        """Clear per-request state so the context can be reused."""
        self.writer = self._base_writer
        self.params = Params()
        self.handlers = []
        self.index = -1
        self.my_data = self.options.clean_data
        self.full_path = ""
        self.keys.clear()
        self.errors = ErrorList()
        self.accepted = None
        self._query_cache = None
        self._form_cache = None
        self._same_site = None

    def copy(self) -> "Context":
        """Return a detached copy safe to use outside the request."""
        cp = Context(request=self.request, options=self.options, my_data=self.my_data)
        cp.index = ABORT_INDEX
        cp.full_path = self.full_path
        cp.keys = self.keys.copy()
        cp.params = Params(dataclasses.replace(p) for p in self.params)
        return cp

    def handler(self) -> Callable[["Context"], Any] | None:
        """Return the main (last) handler."""
        last = self.handlers[-1] if self.handlers else None
        return last.handler if last is not None else None

    def handler_name(self) -> str:
        """Return the qualified name of the main handler."""
        return name_of_function(self.handler())

    def handler_names(self) -> list[str]:
        """Return the names of all handlers, skipping empty slots."""
        return [name_of_function(h.handler) for h in self.handlers if h is not None]

    def next(self) -> None:
        """Run the pending handlers in the chain."""
        self.index += 1
        while self.index < len(self.handlers):
            info = self.handlers[self.index]
            if info is not None:
                if info.access_check is not None and not info.access_check(self.my_data):
                    self.abort_with_status(403)
                    continue
                info.handler(self)
            self.index += 1

    def is_aborted(self) -> bool:
        return self.index >= ABORT_INDEX

    def abort(self) -> None:
        """Stop pending handlers from being called."""
        self.index = ABORT_INDEX

    def abort_with_status(self, code: int) -> None:
        self.status(code)
        self.writer.write_header_now()
        self.abort()

    def abort_with_status_json(self, code: int, obj: Any) -> None:
        self.abort()
        self.json(code, obj)

    def abort_with_error(self, code: int, err: BaseException) -> Error:
        self.abort_with_status(code)
        return self.error(err)

    def error(self, err: BaseException | None) -> Error:
        """Attach an error to the context and return its wrapped form."""
        if err is None:
            raise ValueError("err is nil")
        parsed = err if isinstance(err, Error) else Error(err, ErrorType.PRIVATE)
        self.errors.append(parsed)
        return parsed

    def set(self, key: str, value: Any) -> None:
        self.keys.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        return self.keys.get(key, default)

    def must_get(self, key: str) -> Any:
        return self.keys.must_get(key)

    def param(self, key: str) -> str:
        return self.params.by_name(key)

    def add_param(self, key: str, value: str) -> None:
        self.params.append(Param(key, value))

    def _queries(self) -> dict[str, list[str]]:
        if self._query_cache is None:
            if self.request is not None and self.request.url is not None:
                self._query_cache = self.request.query()
            else:
                self._query_cache = {}
        return self._query_cache

    def get_query_array(self, key: str) -> list[str] | None:
        """Return every query value for key, or None when absent."""
        return self._queries().get(key)

    def query_array(self, key: str) -> list[str]:
        return list(self.get_query_array(key) or [])

    def get_query(self, key: str) -> str | None:
        values = self.get_query_array(key)
        return values[0] if values else None

    def query(self, key: str) -> str:
        return self.get_query(key) or ""

    def default_query(self, key: str, default_value: str) -> str:
        value = self.get_query(key)
        return default_value if value is None else value

    def get_query_map(self, key: str) -> dict[str, str] | None:
        result, exists = bracket_map(self._queries(), key)
        return result if exists else None

    def query_map(self, key: str) -> dict[str, str]:
        return self.get_query_map(key) or {}

    def _forms(self) -> dict[str, list[str]]:
        if self._form_cache is None:
            try:
                self._form_cache = self.request.post_form(self.options.max_multipart_memory)
            except ValueError as exc:
                debug_print("error on parse multipart form array: %s", exc)
                self._form_cache = {}
        return self._form_cache

    def get_post_form_array(self, key: str) -> list[str] | None:
        return self._forms().get(key)

    def post_form_array(self, key: str) -> list[str]:
        return list(self.get_post_form_array(key) or [])

    def get_post_form(self, key: str) -> str | None:
        values = self.get_post_form_array(key)
        return values[0] if values else None

    def post_form(self, key: str) -> str:
        return self.get_post_form(key) or ""

    def default_post_form(self, key: str, default_value: str) -> str:
        value = self.get_post_form(key)
        return default_value if value is None else value

    def get_post_form_map(self, key: str) -> dict[str, str] | None:
        result, exists = bracket_map(self._forms(), key)
        return result if exists else None

    def post_form_map(self, key: str) -> dict[str, str]:
        return self.get_post_form_map(key) or {}

    def form_file(self, name: str) -> FileHeader:
        return self.request.form_file(name, self.options.max_multipart_memory)

    def multipart_form(self) -> MultipartForm:
        return self.request.multipart_form(self.options.max_multipart_memory)

    def save_uploaded_file(self, file: FileHeader, dst: str) -> None:
        """Write an uploaded file to dst, creating parent directories."""
        with file.open() as src:
            os.makedirs(os.path.dirname(dst) or ".", mode=0o750, exist_ok=True)
            with open(dst, "wb") as out:
                shutil.copyfileobj(src, out)

    def _request_header(self, key: str) -> str:
        return self.request.headers.get(key) if self.request is not None else ""

    def client_ip(self) -> str:
        """Return the best guess at the real client address."""
        opts = self.options
        if opts.trusted_platform:
            addr = self._request_header(opts.trusted_platform)
            if addr:
                return addr
        if opts.app_engine:
            addr = self._request_header(PLATFORM_GOOGLE_APP_ENGINE)
            if addr:
                return addr
        try:
            remote = ipaddress.ip_address(self.remote_ip())
        except ValueError:
            return ""
        if (
            opts.is_trusted_proxy(remote)
            and opts.forwarded_by_client_ip
            and opts.remote_ip_headers is not None
        ):
            for name in opts.remote_ip_headers:
                ip = opts.validate_header(self._request_header(name))
                if ip is not None:
                    return ip
        return str(remote)

    def remote_ip(self) -> str:
        """Return the host part of the request's remote address."""
        host = _split_host_port(self.request.remote_addr.strip())
        return host or ""

    def content_type(self) -> str:
        return filter_flags(self._request_header("Content-Type"))

    def is_websocket(self) -> bool:
        return (
            "upgrade" in self._request_header("Connection").lower()
            and self._request_header("Upgrade").lower() == "websocket"
        )

    def status(self, code: int) -> None:
        self.writer.write_header(code)

    def header(self, key: str, value: str) -> None:
        """Set a response header, or delete it when value is empty."""
        if value == "":
            self.writer.headers.delete(key)
        else:
            self.writer.headers.set(key, value)

    def get_header(self, key: str) -> str:
        return self._request_header(key)

    def get_raw_data(self) -> bytes:
        if self.request is None:
            raise ValueError("cannot read nil body")
        return self.request.read_body()

    def set_same_site(self, same_site: SameSite | None) -> None:
        self._same_site = same_site

    def set_cookie(
        self,
        name: str,
        value: str,
        max_age: int,
        path: str,
        domain: str,
        secure: bool,
        http_only: bool,
    ) -> None:
        """Add a Set-Cookie header to the response."""
        parts = [f"{name}={quote_plus(value)}", f"Path={path or '/'}"]
        if domain:
            parts.append(f"Domain={domain.lstrip('.')}")
        if max_age > 0:
            parts.append(f"Max-Age={max_age}")
        elif max_age < 0:
            parts.append("Max-Age=0")
        if http_only:
            parts.append("HttpOnly")
        if secure:
            parts.append("Secure")
        if self._same_site is not None:
            site = self._same_site.value
            parts.append(f"SameSite={site}" if site else "SameSite")
        self.writer.headers.add("Set-Cookie", "; ".join(parts))

    def cookie(self, name: str) -> str:
        """Return the unescaped value of the named request cookie."""
        return unquote_plus(self.request.cookie(name))

    def render(self, code: int, renderer: _render.Renderer) -> None:
        """Write the status and render the body, recording any failure."""
        self.status(code)
        if not body_allowed_for_status(code):
            renderer.write_content_type(self.writer)
            self.writer.write_header_now()
            return
        try:
            renderer.render(self.writer)
        except Exception as exc:  # noqa: BLE001 - rendering errors are recorded
            self.error(exc)
            self.abort()

    def html(self, code: int, name: str, obj: Any) -> None:
        self.render(code, _HTMLTemplate(self.options.templates.get(name), name, obj))

    def json(self, code: int, obj: Any) -> None:
        self.render(code, _render.JSON(obj))

    def indented_json(self, code: int, obj: Any) -> None:
        self.render(code, _render.IndentedJSON(obj))

    def secure_json(self, code: int, obj: Any) -> None:
        self.render(code, _render.SecureJSON(obj, self.options.secure_json_prefix))

    def jsonp(self, code: int, obj: Any) -> None:
        callback = self.default_query("callback", "")
        if not callback:
            self.render(code, _render.JSON(obj))
        else:
            self.render(code, _render.JSONP(obj, callback))

    def ascii_json(self, code: int, obj: Any) -> None:
        self.render(code, _render.AsciiJSON(obj))

    def pure_json(self, code: int, obj: Any) -> None:
        self.render(code, _render.PureJSON(obj))

    def xml(self, code: int, obj: Any) -> None:
        self.render(code, _render.XML(obj))

    def yaml(self, code: int, obj: Any) -> None:
        self.render(code, _render.YAML(obj))

    def toml(self, code: int, obj: Any) -> None:
        self.render(code, _render.TOML(obj))

    def string(self, code: int, format: str, *args: Any) -> None:
        self.render(code, _render.Text(format, args))

    def redirect(self, code: int, location: str) -> None:
        """Redirect to location; raises ValueError for a non-redirect status."""
        if (code < 300 or code > 308) and code != 201:
            raise ValueError(f"Cannot redirect with status code {code}")
        self.render(-1, _render.Redirect(code, location, self.request))

    def data(self, code: int, content_type: str, data: bytes) -> None:
        self.render(code, _render.Data(content_type, data))

    def data_from_reader(
        self,
        code: int,
        content_length: int,
        content_type: str,
        reader: Any,
        extra_headers: Mapping[str, str] | None,
    ) -> None:
        self.render(code, _render.Reader(reader, content_type, content_length, extra_headers))

    def file(self, filepath: str) -> None:
        """Write a local file as the response body."""
        if not os.path.isfile(filepath):
            self.writer.headers.set("Content-Type", _render.PLAIN_CONTENT_TYPE)
            self.writer.write_header(404)
            self.writer.write_string("404 page not found\n")
            return
        guessed, _ = mimetypes.guess_type(filepath)
        if guessed is None:
            guessed = "application/octet-stream"
        elif guessed.startswith("text/"):
            guessed += "; charset=utf-8"
        if not self.writer.headers.get("Content-Type"):
            self.writer.headers.set("Content-Type", guessed)
        self.writer.headers.set("Content-Length", str(os.path.getsize(filepath)))
        self.writer.write_header(200)
        with open(filepath, "rb") as src:
            shutil.copyfileobj(src, self.writer)

    def file_attachment(self, filepath: str, filename: str) -> None:
        """Serve a file as a download under the given name."""
        if filename.isascii():
            escaped = filename.replace("\\", "\\\\").replace('"', '\\"')
            disposition = f'attachment; filename="{escaped}"'
        else:
            disposition = "attachment; filename*=UTF-8''" + quote_plus(filename)
        self.writer.headers.set("Content-Disposition", disposition)
        self.file(filepath)

    def sse_event(self, name: str, message: Any) -> None:
        self.render(-1, _render.ServerSentEvent(event=name, data=message))

    def stream(self, step: Callable[[_render.ResponseWriter], bool]) -> bool:
        """Call step until it returns False; True means the client went away."""
        writer = self.writer
        while True:
            if writer.disconnected.is_set():
                return True
            keep_open = step(writer)
            writer.flush()
            if not keep_open:
                return False

    def negotiate(self, code: int, config: Negotiate) -> None:
        """Render the data in the format the client accepts."""

        def choose(specific: Any) -> Any:
            return specific if specific is not None else config.data

        fmt = self.negotiate_format(*config.offered)
        if fmt == MIME_JSON:
            self.json(code, choose(config.json_data))
        elif fmt == MIME_HTML:
            self.html(code, config.html_name, choose(config.html_data))
        elif fmt == MIME_XML:
            self.xml(code, choose(config.xml_data))
        elif fmt in (MIME_YAML, MIME_YAML2):
            self.yaml(code, choose(config.yaml_data))
        elif fmt == MIME_TOML:
            self.toml(code, choose(config.toml_data))
        else:
            self.abort_with_error(
                406, ValueError("the accepted formats are not offered by the server")
            )

    def negotiate_format(self, *args: str) -> str:
        """Return the first offer matching the Accept header, or ""."""
        if not args:
            raise ValueError("you must provide at least one offer")
        if self.accepted is None:
            self.accepted = _parse_accept(self._request_header("Accept"))
        if not self.accepted:
            return args[0]
        for accepted in self.accepted:
            for offer in args:
                i = 0
                while i < len(accepted) and i < len(offer):
                    if accepted[i] == "*" or offer[i] == "*":
                        return offer
                    if accepted[i] != offer[i]:
                        break
                    i += 1
                if i == len(accepted):
                    return offer
        return ""

    def set_accepted(self, *args: str) -> None:
        self.accepted = list(args)

    def value(self, key: Any) -> Any:
        """Return the request, this context, or a stored value for key."""
        if key is CONTEXT_REQUEST_KEY:
            return self.request
        if key == CONTEXT_KEY:
            return self
        if isinstance(key, str):
            return self.keys.get(key)
        return None