import io

import pytest

from webcontext.context import (
    ABORT_INDEX,
    CONTEXT_KEY,
    CONTEXT_REQUEST_KEY,
    MIME_HTML,
    MIME_JSON,
    MIME_POST_FORM,
    MIME_XML,
    MIME_YAML,
    MIME_YAML2,
    PLATFORM_CLOUDFLARE,
    PLATFORM_FLY_IO,
    PLATFORM_GOOGLE_APP_ENGINE,
    Context,
    ContextOptions,
    HandlerInfo,
    Negotiate,
    Param,
    Params,
    SameSite,
    body_allowed_for_status,
)
from webcontext.errors import Error, ErrorType
from webcontext.render import Renderer
from webcontext.request import NoCookieError, Request


def make(method="GET", url="/", headers=None, body=None, remote_addr=""):
    return Context(request=Request(method, url, headers, body, remote_addr))


def multipart_request():
    boundary = "testboundary"
    fields = [
        ("foo", "bar"), ("bar", "10"), ("bar", "foo2"), ("array", "first"),
        ("array", "second"), ("id", ""), ("names[a]", "thinkerou"), ("names[b]", "tianou"),
    ]
    parts = []
    for name, value in fields:
        parts.append(
            f'--{boundary}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n{value}\r\n'
        )
    parts.append(
        f'--{boundary}\r\nContent-Disposition: form-data; name="file"; filename="test"\r\n'
        f"Content-Type: application/octet-stream\r\n\r\ntest\r\n--{boundary}--\r\n"
    )
    return Request(
        "POST", "/", {"Content-Type": f"multipart/form-data; boundary={boundary}"},
        "".join(parts).encode(),
    )


def handler_name_test(c):
    pass


def test_params():
    params = Params([Param("id", "1")])
    assert params.get("id") == "1"
    assert params.get("x") is None
    assert params.by_name("x") == ""


def test_add_param():
    c = Context()
    c.add_param("id", "1")
    assert c.param("id") == "1"


def test_set_get_and_must_get():
    c = Context()
    c.set("foo", "bar")
    assert c.get("foo") == "bar"
    assert c.get("foo2") is None
    assert c.must_get("foo") == "bar"
    with pytest.raises(KeyError):
        c.must_get("no_exist")
    assert c.keys.get_string("foo") == "bar"


def test_reset():
    c = Context()
    c.index = 2
    c.params = Params([Param("a", "b")])
    c.error(ValueError("test"))
    c.set("foo", "bar")
    c.reset()
    assert not c.is_aborted()
    assert c.get("foo") is None
    assert c.accepted is None
    assert list(c.errors) == []
    assert list(c.params) == []
    assert c.index == -1


def test_copy():
    c = make("POST", "/hola")
    c.index = 2
    c.handlers = [HandlerInfo(lambda ctx: None)]
    c.params = Params([Param("foo", "bar")])
    c.set("foo", "bar")
    c.full_path = "/hola"
    cp = c.copy()
    assert cp.handlers == []
    assert cp.request is c.request
    assert cp.index == ABORT_INDEX
    assert cp.keys == c.keys
    assert cp.params == c.params
    cp.set("foo", "notBar")
    assert c.get("foo") == "bar"
    assert cp.full_path == "/hola"


def test_handler_names():
    c = Context(handlers=[lambda ctx: None, None, handler_name_test])
    assert c.handler() is handler_name_test
    assert c.handler_name().endswith("handler_name_test")
    assert len(c.handler_names()) == 2


def test_next_and_access_check():
    calls = []
    c = Context(
        handlers=[
            lambda ctx: calls.append("a"),
            HandlerInfo(lambda ctx: calls.append("b"), access_check=lambda data: False),
            lambda ctx: calls.append("c"),
        ]
    )
    c.next()
    assert calls == ["a"]
    assert c.writer.status == 403
    assert c.is_aborted()


def test_is_aborted():
    c = Context()
    assert not c.is_aborted()
    c.abort()
    assert c.is_aborted()
    c.next()
    assert c.is_aborted()


def test_reset_in_handler():
    c = Context(handlers=[lambda ctx: ctx.reset()])
    c.next()
    assert c.handlers == []


def test_query():
    c = make(url="http://example.com/?foo=bar&page=10&id=")
    assert c.get_query("foo") == "bar"
    assert c.default_query("foo", "none") == "bar"
    assert c.query("page") == "10"
    assert c.get_query("id") == ""
    assert c.default_query("id", "nada") == ""
    assert c.get_query("NoKey") is None
    assert c.default_query("NoKey", "nada") == "nada"
    assert c.get_post_form("page") is None
    assert c.post_form("foo") == ""


def test_query_on_empty_request():
    c = Context()
    assert c.get_query("NoKey") is None
    assert c.default_query("NoKey", "nada") == "nada"


def test_query_and_post_form():
    c = make(
        "POST",
        "/?both=GET&id=main&id=omit&array[]=first&array[]=second&ids[a]=hi&ids[b]=3.14",
        {"Content-Type": MIME_POST_FORM},
        b"foo=bar&page=11&both=&foo=second",
    )
    assert c.default_post_form("foo", "none") == "bar"
    assert c.query("foo") == ""
    assert c.get_post_form("page") == "11"
    assert c.get_post_form("both") == ""
    assert c.default_post_form("both", "nothing") == ""
    assert c.query("both") == "GET"
    assert c.get_query("id") == "main"
    assert c.default_post_form("id", "000") == "000"
    assert c.default_post_form("NoKey", "nada") == "nada"
    assert c.query_array("array[]") == ["first", "second"]
    assert c.query_array("nokey") == []
    assert c.get_query_map("ids") == {"a": "hi", "b": "3.14"}
    assert c.get_query_map("nokey") is None
    assert c.get_query_map("both") is None
    assert c.get_query_map("array") is None
    assert c.query_map("nokey") == {}


def test_post_form_multipart():
    c = Context(request=multipart_request())
    assert c.get_query("foo") is None
    assert c.post_form("foo") == "bar"
    assert c.post_form("array") == "first"
    assert c.default_post_form("bar", "nothing") == "10"
    assert c.get_post_form("id") == ""
    assert c.default_post_form("nokey", "nothing") == "nothing"
    assert c.post_form_array("array") == ["first", "second"]
    assert c.post_form_array("nokey") == []
    assert c.post_form_map("names") == {"a": "thinkerou", "b": "tianou"}
    assert c.get_post_form_map("nokey") is None


def test_form_file_and_save(tmp_path):
    c = Context(request=multipart_request())
    f = c.form_file("file")
    assert f.filename == "test"
    dst = tmp_path / "sub" / "out"
    c.save_uploaded_file(f, str(dst))
    assert dst.read_bytes() == b"test"
    assert c.multipart_form().file["file"][0].filename == "test"
    with pytest.raises(OSError):
        c.save_uploaded_file(f, str(tmp_path))


def test_form_file_failed():
    c = make("POST", "/", {"Content-Type": "multipart/form-data; boundary=x"}, None)
    with pytest.raises(ValueError):
        c.form_file("file")


def test_cookies():
    c = Context()
    c.set_same_site(SameSite.LAX)
    c.set_cookie("user", "gin", 1, "", "localhost", True, True)
    assert c.writer.headers.get("Set-Cookie") == (
        "user=gin; Path=/; Domain=localhost; Max-Age=1; HttpOnly; Secure; SameSite=Lax"
    )
    c = make(headers={"Cookie": "user=gin"})
    assert c.cookie("user") == "gin"
    with pytest.raises(NoCookieError):
        c.cookie("nokey")


def test_body_allowed_for_status():
    assert not body_allowed_for_status(102)
    assert not body_allowed_for_status(204)
    assert not body_allowed_for_status(304)
    assert body_allowed_for_status(500)


class FailingRender(Renderer):
    def render(self, writer):
        raise RuntimeError("TestRender")


def test_render_error_recorded():
    c = Context()
    c.render(200, FailingRender())
    assert len(c.errors) == 1
    assert c.errors[0].type == ErrorType.PRIVATE
    assert str(c.errors[0]) == "TestRender"
    assert c.is_aborted()


def test_render_json():
    c = Context()
    c.json(201, {"foo": "bar", "html": "<b>"})
    assert c.writer.status == 201
    assert bytes(c.writer.body) == b'{"foo":"bar","html":"\\u003cb\\u003e"}'
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_jsonp():
    c = make(url="http://example.com/?callback=x")
    c.jsonp(201, {"foo": "bar"})
    assert bytes(c.writer.body) == b'x({"foo":"bar"});'
    c = make(url="http://example.com")
    c.jsonp(201, {"foo": "bar"})
    assert bytes(c.writer.body) == b'{"foo":"bar"}'


def test_render_no_content_json():
    c = Context()
    c.json(204, {"foo": "bar"})
    assert c.writer.status == 204
    assert bytes(c.writer.body) == b""
    assert c.writer.headers.get("Content-Type") == "application/json; charset=utf-8"


def test_render_custom_content_type():
    c = Context()
    c.header("Content-Type", "application/vnd.api+json")
    c.json(201, {"foo": "bar"})
    assert c.writer.headers.get("Content-Type") == "application/vnd.api+json"


def test_render_secure_and_pure_json():
    c = Context(options=ContextOptions(secure_json_prefix="&&&START&&&"))
    c.secure_json(201, ["foo", "bar"])
    assert bytes(c.writer.body) == b'&&&START&&&["foo","bar"]'
    c = Context()
    c.pure_json(201, {"foo": "bar", "html": "<b>"})
    assert bytes(c.writer.body) == b'{"foo":"bar","html":"<b>"}\n'


def test_render_indented_json():
    c = Context()
    c.indented_json(201, {"foo": "bar", "bar": "foo", "nested": {"foo": "bar"}})
    assert bytes(c.writer.body).decode() == (
        '{\n    "bar": "foo",\n    "foo": "bar",\n    "nested": {\n        "foo": "bar"\n    }\n}'
    )


def test_render_html():
    c = Context(options=ContextOptions(templates={"t": lambda d: f"Hello {d['name']}"}))
    c.html(201, "t", {"name": "alexandernyquist"})
    assert bytes(c.writer.body) == b"Hello alexandernyquist"
    assert c.writer.headers.get("Content-Type") == "text/html; charset=utf-8"


def test_render_xml_yaml_toml_string_data():
    c = Context()
    c.xml(201, {"foo": "bar"})
    assert bytes(c.writer.body) == b"<map><foo>bar</foo></map>"
    c = Context()
    c.yaml(201, {"foo": "bar"})
    assert bytes(c.writer.body) == b"foo: bar\n"
    c = Context()
    c.toml(201, {"foo": "bar"})
    assert bytes(c.writer.body) == b"foo = 'bar'\n"
    c = Context()
    c.string(201, "test %s %d", "string", 2)
    assert bytes(c.writer.body) == b"test string 2"
    c = Context()
    c.data(201, "text/csv", b"foo,bar")
    assert bytes(c.writer.body) == b"foo,bar"
    assert c.writer.headers.get("Content-Type") == "text/csv"


def test_render_sse():
    c = Context()
    c.sse_event("float", 1.5)
    c.sse_event("chat", {"foo": "bar", "bar": "foo"})
    assert bytes(c.writer.body).decode() == (
        'event:float\ndata:1.5\n\nevent:chat\ndata:{"bar":"foo","foo":"bar"}\n\n'
    )


def test_render_file_and_attachment(tmp_path):
    path = tmp_path / "a.txt"
    path.write_text("hello file")
    c = make()
    c.file(str(path))
    assert c.writer.status == 200
    assert bytes(c.writer.body) == b"hello file"
    c = make()
    c.file_attachment(str(path), 'tampering.sh"; \\"; dummy=.go')
    assert c.writer.headers.get("Content-Disposition") == (
        'attachment; filename="tampering.sh\\"; \\\\\\"; dummy=.go"'
    )
    c = make()
    c.file_attachment(str(path), "new🧡_filename.go")
    assert c.writer.headers.get("Content-Disposition") == (
        "attachment; filename*=UTF-8''new%F0%9F%A7%A1_filename.go"
    )


def test_headers():
    c = Context()
    c.header("Content-Type", "text/plain")
    c.header("X-Custom", "value")
    assert c.writer.headers.get("X-Custom") == "value"
    c.header("X-Custom", "")
    assert "X-Custom" not in c.writer.headers


def test_redirect():
    c = make("POST", "http://example.com")
    with pytest.raises(ValueError):
        c.redirect(299, "/new_path")
    with pytest.raises(ValueError):
        c.redirect(309, "/new_path")
    c.redirect(301, "/path")
    c.writer.write_header_now()
    assert c.writer.status == 301
    assert c.writer.headers.get("Location") == "/path"
    c = make("POST", "http://example.com")
    c.redirect(201, "/resource")
    assert c.writer.status == 201


def test_negotiation():
    c = make("POST")
    c.negotiate(200, Negotiate(offered=[MIME_JSON, MIME_XML], data={"foo": "bar"}))
    assert bytes(c.writer.body) == b'{"foo":"bar"}'
    c = make("POST")
    c.negotiate(200, Negotiate(offered=[MIME_YAML, MIME_YAML2], data={"foo": "bar"}))
    assert bytes(c.writer.body) == b"foo: bar\n"
    c = make("POST")
    c.negotiate(200, Negotiate(offered=[MIME_POST_FORM]))
    assert c.writer.status == 406
    assert c.is_aborted()


def test_negotiate_format():
    c = make("POST")
    with pytest.raises(ValueError):
        c.negotiate_format()
    assert c.negotiate_format(MIME_JSON, MIME_XML) == MIME_JSON
    c = make("POST", headers={"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9;q=0.8"})
    assert c.negotiate_format(MIME_JSON, MIME_XML) == MIME_XML
    assert c.negotiate_format(MIME_XML, MIME_HTML) == MIME_HTML
    assert c.negotiate_format(MIME_JSON) == ""
    c.set_accepted(MIME_JSON, MIME_XML)
    assert c.negotiate_format(MIME_JSON) == MIME_JSON
    c = make("POST", headers={"Accept": "text/*"})
    assert c.negotiate_format("application/*") == ""
    assert c.negotiate_format(MIME_HTML) == MIME_HTML
    c = make("POST", headers={"Accept": "image/tiff-fx"})
    assert c.negotiate_format("image/tiff") == ""


def test_abort_with_status_and_json():
    c = Context()
    c.index = 4
    c.abort_with_status(401)
    assert c.index == ABORT_INDEX
    assert c.writer.status == 401
    c = Context()
    c.abort_with_status_json(415, {"foo": "fooValue"})
    assert c.is_aborted()
    assert bytes(c.writer.body) == b'{"foo":"fooValue"}'


def test_error():
    c = Context()
    first = ValueError("first error")
    c.error(first)
    assert str(c.errors) == "Error #01: first error\n"
    c.error(Error(ValueError("second error"), ErrorType.PUBLIC, "some data 2"))
    assert c.errors[0].err is first
    assert c.errors[0].type == ErrorType.PRIVATE
    assert c.errors[1].meta == "some data 2"
    assert c.errors.last() is c.errors[1]
    with pytest.raises(ValueError):
        c.error(None)


def test_abort_with_error():
    c = Context()
    c.abort_with_error(401, ValueError("bad input")).set_meta("some input")
    assert c.writer.status == 401
    assert c.errors[0].meta == "some input"
    assert c.is_aborted()


def reset_for_client_ip(c):
    h = c.request.headers
    h.set("X-Real-IP", " 10.10.10.10  ")
    h.set("X-Forwarded-For", "  20.20.20.20, 30.30.30.30")
    h.set("X-Appengine-Remote-Addr", "50.50.50.50")
    h.set("CF-Connecting-IP", "60.60.60.60")
    h.set("Fly-Client-IP", "70.70.70.70")
    c.request.remote_addr = "  40.40.40.40:42123 "
    c.options = ContextOptions()


def test_client_ip():
    c = make("POST")
    reset_for_client_ip(c)
    assert c.client_ip() == "20.20.20.20"
    c.request.headers.delete("X-Forwarded-For")
    assert c.client_ip() == "10.10.10.10"
    c.request.headers.set("X-Forwarded-For", "30.30.30.30  ")
    assert c.client_ip() == "30.30.30.30"
    c.options.trusted_platform = PLATFORM_GOOGLE_APP_ENGINE
    assert c.client_ip() == "50.50.50.50"
    c.request.remote_addr = "50.50.50.50"
    c.options.trusted_platform = ""
    assert c.client_ip() == ""

    reset_for_client_ip(c)
    c.request.remote_addr = "[::1]:12345"
    assert c.client_ip() == "20.20.20.20"

    reset_for_client_ip(c)
    c.options.set_trusted_proxies([])
    c.options.remote_ip_headers = ["X-Forwarded-For"]
    assert c.client_ip() == "40.40.40.40"
    c.options.set_trusted_proxies(None)
    assert c.client_ip() == "40.40.40.40"
    c.options.set_trusted_proxies(["30.30.30.30"])
    assert c.client_ip() == "40.40.40.40"
    c.options.set_trusted_proxies(["40.40.40.40"])
    assert c.client_ip() == "30.30.30.30"
    c.options.set_trusted_proxies(["40.40.40.40", "30.30.30.30", "20.20.20.20"])
    assert c.client_ip() == "20.20.20.20"
    c.options.set_trusted_proxies(["40.40.25.25/16", "30.30.30.30"])
    assert c.client_ip() == "20.20.20.20"
    c.options.set_trusted_proxies(["40.40.40.40"])
    c.request.headers.set("X-Forwarded-For", " blah ")
    assert c.client_ip() == "40.40.40.40"

    c.options.trusted_platform = PLATFORM_CLOUDFLARE
    assert c.client_ip() == "60.60.60.60"
    c.options.trusted_platform = PLATFORM_FLY_IO
    assert c.client_ip() == "70.70.70.70"
    c.options.trusted_platform = "X-Wrong-Header"
    assert c.client_ip() == "40.40.40.40"
    c.options.trusted_platform = ""
    c.options.app_engine = True
    assert c.client_ip() == "50.50.50.50"


def test_remote_ip_fail():
    c = make("POST", remote_addr="[:::]:80")
    assert c.remote_ip() == ":::"
    assert c.client_ip() == ""


def test_content_type_and_headers():
    c = make("POST", headers={"Content-Type": "application/json; charset=utf-8", "Gin-Version": "1.0.0"})
    assert c.content_type() == "application/json"
    assert c.get_header("Gin-Version") == "1.0.0"
    assert c.get_header("Connection") == ""


def test_websocket():
    c = make(headers={"Upgrade": "websocket", "Connection": "Upgrade"})
    assert c.is_websocket()
    assert not make(headers={"Host": "server.example.com"}).is_websocket()


def test_get_raw_data():
    c = make("POST", body=b"Fetch binary post data")
    assert c.get_raw_data() == b"Fetch binary post data"


def test_data_from_reader():
    c = Context()
    body = b"#!PNG some raw data"
    extra = {"Content-Disposition": 'attachment; filename="gopher.png"'}
    c.data_from_reader(200, len(body), "image/png", io.BytesIO(body), extra)
    assert bytes(c.writer.body) == body
    assert c.writer.headers.get("Content-Length") == str(len(body))
    assert c.writer.headers.get("Content-Disposition") == extra["Content-Disposition"]


def test_stream():
    c = Context()
    flags = iter([True, False])
    assert c.stream(lambda w: (w.write(b"test"), next(flags))[1]) is False
    assert bytes(c.writer.body) == b"testtest"


def test_stream_client_gone():
    c = Context()

    def step(w):
        w.write(b"test")
        w.disconnected.set()
        return True

    assert c.stream(step) is True
    assert bytes(c.writer.body) == b"test"


def test_value():
    c = make("POST")
    assert c.value(CONTEXT_REQUEST_KEY) is c.request
    assert c.value(CONTEXT_KEY) is c
    assert c.value("foo") is None
    c.set("foo", "bar")
    assert c.value("foo") == "bar"
    assert c.value(1) is None