"""
api/main.py

FastAPI application for the recording proxy.

A single catch-all route serves every path. The request body is read once;
the interceptor records /add_attack submissions from that buffer in a worker
thread, then the forwarder sends the same bytes upstream. The interceptor's
result never changes what the sensor receives.

FastAPI's /docs, /redoc and /openapi.json are disabled so no collector path
is shadowed.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response

from ..config import Settings
from ..ingest.interceptor import AttackInterceptor
from ..metrics import ProxyMetrics
from ..storage import Database, DedupGuard
from .forwarder import ForwardError, ProxyForwarder

logger = logging.getLogger(__name__)

PROXIED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


def create_app(
    settings: Settings,
    db: Database,
    metrics: ProxyMetrics | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the proxy app around an already migrated database.

    *transport* replaces the real network transport of the upstream client;
    tests pass an httpx.MockTransport.
    """
    metrics = metrics or ProxyMetrics()
    forwarder = ProxyForwarder(
        base_url=settings.COLLECTOR_PROXIED_URL,
        timeout=settings.FORWARD_TIMEOUT_SECONDS,
        suppress_submissions=settings.DO_NOT_SUBMIT_ATTACKS,
        log_requests=settings.log_requests_enabled,
        debug_log=settings.DEBUG_LOG,
        metrics=metrics,
        transport=transport,
    )
    interceptor = AttackInterceptor(
        DedupGuard(db), metrics=metrics, debug_log=settings.DEBUG_LOG
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Proxy startup — forwarding to %s", settings.COLLECTOR_PROXIED_URL)
        yield
        await forwarder.aclose()
        logger.info("Proxy shutdown — stats=%s", metrics.as_dict())

    app = FastAPI(
        title="SSH AttackPod Proxy",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.forwarder = forwarder
    app.state.interceptor = interceptor

    @app.api_route("/{path:path}", methods=PROXIED_METHODS, include_in_schema=False)
    async def proxy(request: Request) -> Response:
        metrics.requests_total.inc()
        body = await request.body()
        path = request.url.path

        if interceptor.matches(request.method, path):
            await asyncio.to_thread(interceptor.handle, body)

        # ASGI raw_path is the still percent-encoded path without the query
        raw_path = request.scope.get("raw_path") or path.encode("latin-1")
        raw_path = raw_path.split(b"?", 1)[0]
        query = request.scope.get("query_string", b"")
        if query:
            raw_path += b"?" + query

        try:
            result = await forwarder.forward(
                request.method,
                raw_path.decode("latin-1"),
                request.headers.raw,
                body,
            )
        except ForwardError as exc:
            logger.error("%s", exc)
            return Response(content=b"Bad Gateway\n", status_code=502, media_type="text/plain")

        response = Response(content=result.body, status_code=result.status)
        response.raw_headers = list(result.headers)
        return response

    return app
