import concurrent.futures
import http.server
import threading
import time

import pytest
import requests

from backend.render_flow import (
    STATUS_COMPLETE,
    STATUS_RENDERING,
    RenderBootstrap,
    RenderCanvas,
    RenderFlowError,
    build_order_url,
    fetch_render_order,
)
from tests.conftest import FakeResponse, make_members

API_BASE = "http://render.test/api"


class StaticSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, timeout=None, cookies=None, headers=None, stream=False):
        self.calls.append({"url": url, "timeout": timeout, "cookies": cookies})
        if self.error:
            raise self.error
        return self.response


class SlowFuture:
    """Behaves like a render that is still running when the wait expires."""

    def __init__(self, elapsed_seconds):
        self.elapsed_seconds = elapsed_seconds
        self.waited = None

    def result(self, timeout=None):
        self.waited = timeout
        if timeout is not None and self.elapsed_seconds > timeout:
            raise concurrent.futures.TimeoutError()
        return "data:image/png;base64,AAAA"


class SlowExecutor:
    def __init__(self, elapsed_seconds):
        self.future = SlowFuture(elapsed_seconds)
        self.submitted = []

    def submit(self, fn, *args):
        self.submitted.append((fn, args))
        return self.future


def order_payload(count=4, photos=None):
    return {
        "id": "order-1",
        "gridTemplate": "square",
        "members": make_members(count, photos),
        "settings": {"widthPx": 2550, "heightPx": 3300, "gapPx": 4},
    }


def test_build_order_url_quotes_parts():
    assert build_order_url(API_BASE + "/", "a b", "t/k") == (
        "http://render.test/api/render/order/a%20b?token=t%2Fk"
    )
    assert build_order_url(API_BASE, "o1") == "http://render.test/api/render/order/o1"


def test_bootstrap_lists_variants():
    session = StaticSession(FakeResponse(200, order_payload(4)))
    result = RenderBootstrap(API_BASE, session=session).run("order-1", token="secret")

    assert result.ready
    assert result.error is None
    assert [variant.id for variant in result.variants] == ["variant-m1", "variant-m2", "variant-m3", "variant-m4"]
    assert session.calls[0]["timeout"] == 30
    assert session.calls[0]["url"].endswith("/render/order/order-1?token=secret")
    assert result.to_dict()["ready"] is True


def test_bootstrap_requires_order_id():
    result = RenderBootstrap(API_BASE, session=StaticSession()).run(None)
    assert not result.ready
    assert result.error == "Order ID missing"


def test_bootstrap_reports_http_failure():
    session = StaticSession(FakeResponse(404, None, "not found"))
    result = RenderBootstrap(API_BASE, session=session).run("order-1")
    assert result.error == "Order fetch failed: 404 - not found"


def test_bootstrap_reports_fetch_timeout():
    session = StaticSession(error=requests.exceptions.ReadTimeout("slow"))
    result = RenderBootstrap(API_BASE, session=session).run("order-1")
    assert result.error == "Fetch timeout after 30s"
    assert "30" in result.error


def test_bootstrap_reports_insufficient_photos():
    session = StaticSession(FakeResponse(200, order_payload(4, photos=1)))
    result = RenderBootstrap(API_BASE, session=session).run("order-1")
    assert not result.ready
    assert "found 1, need at least 2" in result.error


def test_canvas_requires_both_ids():
    state = RenderCanvas(API_BASE, session=StaticSession()).run("order-1", None)
    assert state.error == "Order ID or variant ID missing"


def test_canvas_reports_fetch_timeout():
    session = StaticSession(error=requests.exceptions.ConnectTimeout("slow"))
    state = RenderCanvas(API_BASE, session=session).run("order-1", "variant-m1")
    assert state.error == "Fetch timeout after 30s"
    assert not state.complete


def test_canvas_unknown_variant_lists_available_ids():
    session = StaticSession(FakeResponse(200, order_payload(3)))
    state = RenderCanvas(API_BASE, session=session).run("order-1", "variant-zz")
    assert state.error == "Variant variant-zz not found. Available: variant-m1, variant-m2, variant-m3"


def test_canvas_order_without_members():
    session = StaticSession(FakeResponse(200, {"id": "order-1", "members": []}))
    state = RenderCanvas(API_BASE, session=session).run("order-1", "variant-m1")
    assert state.error == "Order has no members"


def test_canvas_render_timeout_is_terminal():
    executor = SlowExecutor(elapsed_seconds=46)
    session = StaticSession(FakeResponse(200, order_payload(4)))
    canvas = RenderCanvas(API_BASE, session=session, executor=executor, render_timeout_ms=45000)

    state = canvas.run("order-1", "variant-m2")

    assert state.error == "Render timeout after 45s"
    assert "45" in state.error
    assert state.status == STATUS_RENDERING
    assert state.data_url is None
    assert executor.future.waited == 45
    assert len(session.calls) == 1


def test_canvas_render_passes_variant_and_settings():
    executor = SlowExecutor(elapsed_seconds=1)
    session = StaticSession(FakeResponse(200, order_payload(4)))
    state = RenderCanvas(API_BASE, session=session, executor=executor).run("order-1", "variant-m2")

    assert state.complete
    assert state.status == STATUS_COMPLETE
    renderer, (variant, settings, passed_session) = executor.submitted[0]
    assert variant.id == "variant-m2"
    assert settings["gapPx"] == 4
    assert passed_session is session


def test_canvas_rejects_non_image_result():
    session = StaticSession(FakeResponse(200, order_payload(3)))
    canvas = RenderCanvas(API_BASE, session=session, renderer=lambda *args: "not-a-data-url")
    state = canvas.run("order-1", "variant-m1")
    assert state.error == "Invalid image data URL received"


def test_canvas_surfaces_renderer_exceptions():
    def broken_renderer(*args):
        raise RuntimeError("canvas exploded")

    session = StaticSession(FakeResponse(200, order_payload(3)))
    state = RenderCanvas(API_BASE, session=session, renderer=broken_renderer).run("order-1", "variant-m1")
    assert state.error == "canvas exploded"


def test_canvas_end_to_end_with_real_renderer():
    session = StaticSession(FakeResponse(200, order_payload(3)))
    state = RenderCanvas(API_BASE, session=session).run("order-1", "variant-m3")
    assert state.complete
    assert state.data_url.startswith("data:image/png;base64,")


class DripHandler(http.server.BaseHTTPRequestHandler):
    """Sends a small JSON body one byte at a time."""

    body = b'{"id": "order-1", "members": []}   '
    delay_seconds = 0.1

    def do_GET(self):
        try:
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(self.body)))
            self.end_headers()
            for byte in self.body:
                self.wfile.write(bytes([byte]))
                self.wfile.flush()
                time.sleep(self.delay_seconds)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def drip_server():
    server = http.server.ThreadingHTTPServer(("127.0.0.1", 0), DripHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        host, port = server.server_address
        yield f"http://{host}:{port}/api"
    finally:
        server.shutdown()
        server.server_close()


def test_fetch_deadline_covers_slow_body(drip_server):
    started = time.monotonic()
    with pytest.raises(RenderFlowError) as excinfo:
        fetch_render_order(drip_server, "order-1", timeout_ms=1000)
    elapsed = time.monotonic() - started

    assert str(excinfo.value) == "Fetch timeout after 1s"
    assert elapsed < 2


def test_bootstrap_and_canvas_stop_slow_body_at_deadline(drip_server):
    started = time.monotonic()
    result = RenderBootstrap(drip_server, fetch_timeout_ms=1000).run("order-1")
    state = RenderCanvas(drip_server, fetch_timeout_ms=1000).run("order-1", "variant-m1")
    elapsed = time.monotonic() - started

    assert result.error == "Fetch timeout after 1s"
    assert state.error == "Fetch timeout after 1s"
    assert elapsed < 4


def test_order_loader_skips_http():
    session = StaticSession(error=AssertionError("no HTTP expected"))
    seen = []

    def loader(order_id, token):
        seen.append((order_id, token))
        return order_payload(3)

    result = RenderBootstrap(API_BASE, session=session, order_loader=loader).run("order-1", token="t")
    state = RenderCanvas(
        API_BASE, session=session, executor=SlowExecutor(1), order_loader=loader
    ).run("order-1", "variant-m2", token="t")

    assert result.ready
    assert state.complete
    assert seen == [("order-1", "t"), ("order-1", "t")]
    assert session.calls == []


def test_order_loader_errors_are_reported():
    def loader(order_id, token):
        raise RenderFlowError("Order fetch failed: 404 - Order not found.")

    result = RenderBootstrap(API_BASE, order_loader=loader).run("missing")
    state = RenderCanvas(API_BASE, order_loader=loader).run("missing", "variant-m1")
    assert result.error == "Order fetch failed: 404 - Order not found."
    assert state.error == "Order fetch failed: 404 - Order not found."
