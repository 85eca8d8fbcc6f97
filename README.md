# webcontext

A per-request context object for web handlers. A `Context`
(`webcontext.context`) carries a `Request` and a `ResponseWriter` through a
chain of handlers and gives them what they need along the way:

- flow control: `next()`, `abort()`, `abort_with_status()`,
  `abort_with_status_json()`, `abort_with_error()`, `is_aborted()`
- a thread-safe key/value store (`set`, `get`, `must_get`, and the typed
  getters of `KeyStore` on `ctx.keys`)
- query strings, URL-encoded and multipart form data, with `name[key]` map syntax
- file uploads: `form_file()`, `multipart_form()`, `save_uploaded_file()`
- client IP detection that honours trusted proxies and platform headers
- cookies, headers and raw body access
- rendering as JSON (plain, indented, secure, JSONP, ASCII, pure), XML, YAML,
  TOML, plain text, raw data, streams, redirects, local files and
  server-sent events
- content negotiation through the `Accept` header (`negotiate`, `negotiate_format`)
- an error list with public/private types and JSON output

## Installation

```
pip install webcontext
```

## A context

```python
from webcontext.context import Context
from webcontext.request import Request

ctx = Context(Request("GET", "/?name=alice&ids[a]=1"))
ctx.query("name")              # "alice"
ctx.default_query("page", "1") # "1"
ctx.query_map("ids")           # {"a": "1"}

ctx.json(201, {"foo": "bar", "html": "<b>"})
ctx.writer.status              # 201
bytes(ctx.writer.body)         # b'{"foo":"bar","html":"\\u003cb\\u003e"}'
ctx.writer.headers.get("Content-Type")  # "application/json; charset=utf-8"
```

Handlers are plain callables taking the context, or `HandlerInfo` objects
whose `access_check` is called with the context's `my_data`; a failed check
aborts with status 403. `next()` runs the chain.

Settings shared by every context live in `ContextOptions`: the multipart
memory limit, trusted proxies (`set_trusted_proxies`), the trusted platform
header, the forwarding headers, the secure-JSON prefix, and `templates`, a
mapping of template names to callables that turn data into HTML text, used by
`Context.html()`.

A response with status 1xx, 204 or 304 gets its content type but no body.
A rendering failure is recorded in `ctx.errors` and aborts the context.

## Errors

```python
from webcontext.errors import Error, ErrorList, ErrorType

errs = ErrorList()
errs.append(Error(ValueError("first"), ErrorType.PRIVATE))
errs.append(Error(ValueError("second"), ErrorType.PUBLIC).set_meta("some data"))

errs.by_type(ErrorType.PUBLIC).errors()   # ["second"]
errs.to_json()   # '[{"error":"first"},{"error":"second","meta":"some data"}]'
```

## Key storage

```python
from webcontext.store import KeyStore

keys = KeyStore()
keys.set("user", "alice")
keys.get_string("user")      # "alice"
keys.get_int("missing")      # 0
keys.must_get("missing")     # raises KeyError
```

## Renderers

`webcontext.render` holds the `Renderer` classes (`JSON`, `IndentedJSON`,
`SecureJSON`, `JSONP`, `AsciiJSON`, `PureJSON`, `XML`, `YAML`, `TOML`,
`Text`, `Redirect`, `Data`, `Reader`, `ServerSentEvent`) and the
`ResponseWriter` they write to. Pass any of them to `Context.render()`.

## Debug output

Debug messages are printed only when debugging is on. It starts on unless the
environment variable `WEBCONTEXT_MODE` is `release` or `test`.

```python
from webcontext import debug

debug.set_debugging(True)
debug.debug_print("these are %d %s", 2, "error messages")
# [WEBCONTEXT-debug] these are 2 error messages
```

Output can be redirected with `set_output()`, or taken over entirely with
`set_print_func()` and `set_route_print_func()`.

## Files

`dir_fs(root, list_directory)` (`webcontext.fs`) returns a `Directory`
rooted at `root`. With `list_directory=False` it is wrapped in `OnlyFilesFS`,
whose files report no directory entries.

## What it does not do

The package has no router, no engine and no HTTP server: requests and
response writers are built and handed to a `Context` by the caller. It does
not bind request bodies into typed objects, has no template engine of its own,
and does not render protocol buffers.

## Running the tests

```
pip install -e ".[test]"
pytest
```