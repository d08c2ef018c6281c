"""
tests/test_forwarder.py

Tests for api/forwarder.py — transparent forwarding against an
httpx.MockTransport upstream.
"""

from __future__ import annotations

import asyncio
import gzip

import httpx
import pytest

from attackpod.proxy.api.forwarder import (
    SERVER_NAME,
    SUPPRESSED_RESPONSE_BODY,
    ForwardError,
    ProxyForwarder,
)
from attackpod.proxy.metrics import ProxyMetrics

BASE_URL = "https://collector.example"


class RecordingUpstream:
    """Answers every request with a fixed response and keeps what it saw."""

    def __init__(self, status: int = 200, headers=None, body: bytes = b'{"status":"ok"}'):
        self.status = status
        self.headers = headers if headers is not None else [("Content-Type", "application/json")]
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            self.status,
            headers=self.headers,
            stream=httpx.ByteStream(self.body),
        )


def make_forwarder(handler, **kwargs) -> ProxyForwarder:
    return ProxyForwarder(
        base_url=kwargs.pop("base_url", BASE_URL),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


SENSOR_HEADERS = [
    (b"host", b"proxy.local:8161"),
    (b"user-agent", b"attackpod-monitor/1.0"),
    (b"content-type", b"application/json"),
    (b"x-api-key", b"secret-token"),
    (b"content-length", b"17"),
    (b"connection", b"keep-alive"),
]


class TestTargetUrl:

    def test_scheme_and_host_from_base(self):
        fwd = ProxyForwarder(base_url="http://collector.example:9000")
        url = fwd.target_url("/check_ip?ip=1.2.3.4")
        assert str(url) == "http://collector.example:9000/check_ip?ip=1.2.3.4"

    def test_base_path_ignored(self):
        fwd = ProxyForwarder(base_url="https://collector.example/api/v1")
        assert fwd.target_url("/add_attack").path == "/add_attack"

    def test_double_slash_stays_on_upstream_host(self):
        fwd = ProxyForwarder(base_url=BASE_URL)
        url = fwd.target_url("//evil.example/x")
        assert url.host == "collector.example"

    def test_percent_encoding_preserved(self):
        fwd = ProxyForwarder(base_url=BASE_URL)
        assert fwd.target_url("/a%2Fb?q=%20x").raw_path == b"/a%2Fb?q=%20x"


class TestForward:

    @pytest.mark.asyncio
    async def test_request_passed_through(self):
        upstream = RecordingUpstream()
        fwd = make_forwarder(upstream)
        try:
            await fwd.forward("POST", "/add_attack?v=2", SENSOR_HEADERS, b'{"username":"x"}')
        finally:
            await fwd.aclose()

        sent = upstream.requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == "https://collector.example/add_attack?v=2"
        assert sent.headers["host"] == "collector.example"
        assert sent.headers["user-agent"] == "attackpod-monitor/1.0"
        assert sent.headers["x-api-key"] == "secret-token"
        assert sent.headers["content-length"] == "16"
        assert "connection" not in sent.headers
        assert sent.content == b'{"username":"x"}'

    @pytest.mark.asyncio
    async def test_no_client_headers_added(self):
        upstream = RecordingUpstream()
        fwd = make_forwarder(upstream)
        try:
            await fwd.forward("GET", "/check_ip", [(b"x-sensor", b"a")], b"")
        finally:
            await fwd.aclose()
        sent = {k.lower() for k in upstream.requests[0].headers.keys()}
        assert "accept-encoding" not in sent
        assert "user-agent" not in sent
        assert "x-sensor" in sent

    @pytest.mark.asyncio
    async def test_response_passed_through(self):
        upstream = RecordingUpstream(
            status=418,
            headers=[
                ("Content-Type", "text/plain"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
                ("Transfer-Encoding", "chunked"),
            ],
            body=b"short and stout",
        )
        fwd = make_forwarder(upstream)
        try:
            result = await fwd.forward("GET", "/teapot", [], b"")
        finally:
            await fwd.aclose()

        assert result.status == 418
        assert result.body == b"short and stout"
        cookies = [v for k, v in result.headers if k.lower() == b"set-cookie"]
        assert cookies == [b"a=1", b"b=2"]
        assert result.header("transfer-encoding") is None
        assert result.header("content-length") == "15"

    @pytest.mark.asyncio
    async def test_encoded_body_not_decoded(self):
        compressed = gzip.compress(b'{"status":"ok"}')
        upstream = RecordingUpstream(
            headers=[("Content-Encoding", "gzip"), ("Content-Length", str(len(compressed)))],
            body=compressed,
        )
        fwd = make_forwarder(upstream)
        try:
            result = await fwd.forward("GET", "/check_ip", [(b"accept-encoding", b"gzip")], b"")
        finally:
            await fwd.aclose()
        assert result.body == compressed
        assert result.header("content-encoding") == "gzip"

    @pytest.mark.asyncio
    async def test_redirect_not_followed(self):
        upstream = RecordingUpstream(status=302, headers=[("Location", "https://elsewhere.example/")], body=b"")
        fwd = make_forwarder(upstream)
        try:
            result = await fwd.forward("GET", "/moved", [], b"")
        finally:
            await fwd.aclose()
        assert result.status == 302
        assert result.header("location") == "https://elsewhere.example/"
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_counts_forwarded(self):
        metrics = ProxyMetrics()
        fwd = make_forwarder(RecordingUpstream(), metrics=metrics)
        try:
            await fwd.forward("GET", "/check_ip", [], b"")
        finally:
            await fwd.aclose()
        assert metrics.forwarded.value == 1


class TestForwardErrors:

    @pytest.mark.asyncio
    async def test_connect_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        metrics = ProxyMetrics()
        fwd = make_forwarder(refuse, metrics=metrics)
        try:
            with pytest.raises(ForwardError):
                await fwd.forward("GET", "/check_ip", [], b"")
        finally:
            await fwd.aclose()
        assert metrics.forward_errors.value == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def stall(request):
            await asyncio.sleep(5)
            return httpx.Response(200)

        fwd = make_forwarder(stall, timeout=0.05)
        try:
            with pytest.raises(ForwardError, match="timed out"):
                await fwd.forward("GET", "/check_ip", [], b"")
        finally:
            await fwd.aclose()


class TestSuppressedSubmissions:

    @pytest.mark.asyncio
    async def test_submission_answered_locally(self):
        upstream = RecordingUpstream()
        metrics = ProxyMetrics()
        fwd = make_forwarder(upstream, suppress_submissions=True, metrics=metrics)
        try:
            result = await fwd.forward("POST", "/add_attack", SENSOR_HEADERS, b"{}")
        finally:
            await fwd.aclose()

        assert upstream.requests == []
        assert result.status == 200
        assert result.body == SUPPRESSED_RESPONSE_BODY
        assert result.header("content-type") == "application/json"
        assert result.header("content-length") == "20"
        assert result.header("server") == SERVER_NAME
        assert result.header("date") is not None
        assert metrics.suppressed.value == 1

    @pytest.mark.asyncio
    async def test_other_paths_still_forwarded(self):
        upstream = RecordingUpstream()
        fwd = make_forwarder(upstream, suppress_submissions=True)
        try:
            result = await fwd.forward("GET", "/check_ip?ip=1.2.3.4", [], b"")
        finally:
            await fwd.aclose()
        assert len(upstream.requests) == 1
        assert result.body == b'{"status":"ok"}'

    @pytest.mark.asyncio
    async def test_percent_encoded_submission_path(self):
        upstream = RecordingUpstream()
        fwd = make_forwarder(upstream, suppress_submissions=True)
        try:
            result = await fwd.forward("POST", "/add%5Fattack", [], b"{}")
        finally:
            await fwd.aclose()
        assert upstream.requests == []
        assert result.body == SUPPRESSED_RESPONSE_BODY
