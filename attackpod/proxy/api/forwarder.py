"""
api/forwarder.py

Async forwarding of sensor requests to the upstream collector.

Responsibilities:
  - Rebuild the request against the upstream base URL (scheme and host from
    the base, path and query from the sensor)
  - Send a copy of the sensor's headers and the exact body bytes
  - Return the upstream status, headers and raw (still encoded) body
  - Enforce a hard timeout per call; any failure becomes ForwardError
  - In suppressed-submission mode, answer /add_attack locally

Usage:
    forwarder = ProxyForwarder(base_url="https://api.netwatch.team")
    result = await forwarder.forward("POST", "/add_attack", headers, body)
    await forwarder.aclose()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from email.utils import formatdate
from typing import Sequence
from urllib.parse import unquote

import httpx

from ..metrics import ProxyMetrics
from ..models import KnownEndpoint

logger = logging.getLogger(__name__)

Header = tuple[bytes, bytes]

# Connection-scoped headers; each hop sets its own.
HOP_BY_HOP_HEADERS = frozenset({
    b"connection",
    b"keep-alive",
    b"proxy-connection",
    b"transfer-encoding",
    b"te",
    b"trailer",
    b"upgrade",
})
_RECOMPUTED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {b"host", b"content-length"}

SUPPRESSED_RESPONSE_BODY = b'{"status":"success"}'
SERVER_NAME = "SSH-AttackPod-Proxy/1.0"


class ForwardError(Exception):
    """The upstream could not be reached or did not answer in time."""


@dataclass
class ForwardResult:
    status: int
    headers: list[Header] = field(default_factory=list)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        key = name.lower().encode("latin-1")
        for k, v in self.headers:
            if k.lower() == key:
                return v.decode("latin-1")
        return None


def suppressed_submission_response() -> ForwardResult:
    """Canned success returned instead of submitting to the upstream."""
    return ForwardResult(
        status=200,
        headers=[
            (b"Content-Length", str(len(SUPPRESSED_RESPONSE_BODY)).encode()),
            (b"Server", SERVER_NAME.encode()),
            (b"Date", formatdate(usegmt=True).encode()),
            (b"Content-Type", b"application/json"),
        ],
        body=SUPPRESSED_RESPONSE_BODY,
    )


def _response_headers(headers: Sequence[Header], status: int, body_len: int) -> list[Header]:
    kept = [(k, v) for k, v in headers if k.lower() not in HOP_BY_HOP_HEADERS]
    has_length = any(k.lower() == b"content-length" for k, _ in kept)
    if not has_length and status >= 200 and status not in (204, 304):
        kept.append((b"content-length", str(body_len).encode()))
    return kept


class ProxyForwarder:
    """
    Args:
        base_url:             upstream collector, e.g. "https://api.netwatch.team"
        timeout:              hard limit in seconds for one forwarded exchange
        suppress_submissions: answer /add_attack locally instead of forwarding
        log_requests:         log every forward and upstream status at INFO
        debug_log:            also dump headers and bodies at DEBUG
        transport:            httpx transport override (tests use MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        suppress_submissions: bool = False,
        log_requests: bool = False,
        debug_log: bool = False,
        metrics: ProxyMetrics | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = httpx.URL(base_url)
        self.timeout = timeout
        self.suppress_submissions = suppress_submissions
        self._log_requests = log_requests or debug_log
        self._debug_log = debug_log
        self._metrics = metrics or ProxyMetrics()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def target_url(self, raw_path: str) -> httpx.URL:
        """Upstream URL for the sensor's path and query: only scheme and host change."""
        if not raw_path.startswith("/"):
            raw_path = "/" + raw_path
        return self.base_url.copy_with(raw_path=raw_path.encode("latin-1"))

    async def forward(
        self,
        method: str,
        raw_path: str,
        headers: Sequence[Header],
        body: bytes,
    ) -> ForwardResult:
        """
        Forward one request and return the upstream's answer.

        Raises ForwardError on timeout or any transport failure.
        """
        # Decoded like the ASGI scope path the interceptor matches on
        path = unquote(raw_path.split("?", 1)[0])
        if self.suppress_submissions and path == KnownEndpoint.ADD_ATTACK.value:
            self._metrics.suppressed.inc()
            if self._log_requests:
                logger.info(
                    "Skipping submission of attack data due to configuration "
                    "and returning mockup response"
                )
            return suppressed_submission_response()

        try:
            url = self.target_url(raw_path)
        except (httpx.InvalidURL, UnicodeError) as exc:
            self._metrics.forward_errors.inc()
            raise ForwardError(f"cannot build upstream URL for {raw_path!r}: {exc}") from exc
        request_headers = [
            (k, v) for k, v in headers if k.lower() not in _RECOMPUTED_REQUEST_HEADERS
        ]
        request = httpx.Request(method, url, headers=request_headers, content=body)

        if self._log_requests:
            logger.info("Forwarding request: %s %s to %s", method, path, url)
        if self._debug_log:
            _dump("Request", request.headers.raw, body)

        try:
            async with asyncio.timeout(self.timeout):
                response = await self._get_client().send(request, stream=True)
                try:
                    raw_body = b"".join([chunk async for chunk in response.aiter_raw()])
                finally:
                    await response.aclose()
        except TimeoutError as exc:
            self._metrics.forward_errors.inc()
            raise ForwardError(f"upstream {url} timed out after {self.timeout:.1f}s") from exc
        except httpx.HTTPError as exc:
            self._metrics.forward_errors.inc()
            raise ForwardError(f"failed to forward request to {url}: {exc}") from exc

        self._metrics.forwarded.inc()
        if self._log_requests:
            logger.info("Received response: %d from %s", response.status_code, url)
        if self._debug_log:
            _dump("Response", response.headers.raw, raw_body)

        return ForwardResult(
            status=response.status_code,
            headers=_response_headers(response.headers.raw, response.status_code, len(raw_body)),
            body=raw_body,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client


def _dump(kind: str, headers: Sequence[Header], body: bytes) -> None:
    logger.debug("%s Headers (%d):", kind, len(headers))
    for key, value in headers:
        logger.debug("- %s: %s", key.decode("latin-1"), value.decode("latin-1"))
    logger.debug("%s Body (%d bytes):", kind, len(body))
    logger.debug("%s", body.decode("utf-8", errors="replace") if body else "<empty body>")
