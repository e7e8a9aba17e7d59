"""
Request forwarder: runs one proxied exchange end to end.

    Validating -> Dispatched -> (Streaming | Buffering) -> Completed
                       \\______________\\___________\\-> Aborted

Dispatch and the buffered HTML read run under one cancellation guard. The
guard fires on the deadline (started at dispatch) or when the client goes
away, and either way the in-flight upstream work is cancelled and the
upstream response closed.
"""

import asyncio
import codecs
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union

import httpx
from opentelemetry import trace
from prometheus_client import Counter
from starlette.responses import Response, StreamingResponse

from webproxy.utils.exception_logging import (
    find_exception_in_exception_groups,
    log_exception_with_details,
)
from webproxy.utils.traced_requests import traced_request
from webproxy.utils import redact_url

from .errors import (
    ClientDisconnectedError,
    ClientInputError,
    MalformedTargetError,
    MethodNotAllowedError,
    ProxyError,
    ResponseTooLargeError,
    UpstreamTimeoutError,
    UpstreamTransportError,
)
from .headers import (
    HeaderPairs,
    HeaderSource,
    forwardable_inbound_headers,
    rewrite_location_headers,
    sanitize_outbound_headers,
)
from .html_rewriter import HtmlRewriteEngine, RewriteContext
from .settings import ProxySettings
from .url_codec import ProxyURLCodec

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD")
BODYLESS_METHODS = ("GET", "HEAD")
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
BODYLESS_STATUS_CODES = (204, 304)

PROXY_REQUESTS = Counter(
    "webproxy_requests_total", "Proxied requests by outcome", ["outcome"]
)

_ERROR_OUTCOMES = {
    UpstreamTimeoutError: "timeout",
    ResponseTooLargeError: "too_large",
    UpstreamTransportError: "upstream_error",
    ClientDisconnectedError: "client_disconnected",
}


class ForwardState(str, Enum):
    VALIDATING = "validating"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    BUFFERING = "buffering"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class ProxyRequest:
    method: str
    target_url: Optional[str]
    headers: HeaderSource = field(default_factory=dict)
    body: bytes = b""
    # Async callable reporting whether the client connection has closed
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None


@dataclass
class Streamed:
    response: httpx.Response


@dataclass
class Buffered:
    response: httpx.Response
    body: bytes


UpstreamResult = Union[Streamed, Buffered]


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def _encode_header(value: str) -> bytes:
    try:
        return value.encode("latin-1")
    except UnicodeEncodeError:
        return value.encode("utf-8")


def _raw_headers(pairs: HeaderPairs) -> List[Tuple[bytes, bytes]]:
    return [(name.lower().encode("latin-1"), _encode_header(value)) for name, value in pairs]


def _response_charset(response: httpx.Response) -> str:
    charset = response.charset_encoding or "utf-8"
    try:
        codecs.lookup(charset)
    except LookupError:
        return "utf-8"
    return charset


class RequestForwarder:
    def __init__(
        self, settings: ProxySettings, client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = settings
        self.codec = ProxyURLCodec(settings.proxy_path)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            if self.settings.insecure_tls:
                logger.warning(
                    "[Proxy] TLS certificate verification towards upstreams is DISABLED. "
                    "Never run like this outside development."
                )
            self._client = httpx.AsyncClient(
                verify=not self.settings.insecure_tls,
                follow_redirects=False,  # Redirects are relayed and rewritten
                timeout=httpx.Timeout(self.settings.timeout_seconds),
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def forward(self, request: ProxyRequest) -> Response:
        """
        Proxy ``request`` to its target and build the client response.

        Raises a ``ProxyError`` subclass for every failure; the caller turns it
        into a JSON error response.
        """
        method = request.method.upper()
        logger.debug(f"[Proxy] -> {ForwardState.VALIDATING.value}")
        try:
            target = self.codec.validate_target(request.target_url)
            if method not in ALLOWED_METHODS:
                raise MethodNotAllowedError()
            upstream_request = self._build_upstream_request(method, target, request)
        except ClientInputError as e:
            logger.info(f"[Proxy] Rejected {method} request: {e.message}")
            PROXY_REQUESTS.labels(outcome="rejected").inc()
            raise

        with traced_request(tracer, "proxy_request", method, target) as span:
            self._enter(span, ForwardState.DISPATCHED)
            deadline = asyncio.get_running_loop().time() + self.settings.timeout_seconds
            try:
                result = await self._guard(
                    self._dispatch(upstream_request, span),
                    deadline,
                    request.is_disconnected,
                )
            except ProxyError as e:
                self._enter(span, ForwardState.ABORTED)
                span.set_attribute("proxy.error", e.message)
                PROXY_REQUESTS.labels(
                    outcome=_ERROR_OUTCOMES.get(type(e), "error")
                ).inc()
                logger.warning(
                    f"[Proxy] {method} {redact_url(target)} aborted: {e.message}"
                )
                raise

            if isinstance(result, Buffered):
                response = self._buffered_response(result, target, span)
                PROXY_REQUESTS.labels(outcome="rewritten").inc()
            else:
                self._enter(span, ForwardState.STREAMING)
                response = self._streamed_response(result, target)
                PROXY_REQUESTS.labels(outcome="streamed").inc()

            self._enter(span, ForwardState.COMPLETED)
            return response

    def _build_upstream_request(
        self, method: str, target: str, request: ProxyRequest
    ) -> httpx.Request:
        try:
            return self.client.build_request(
                method,
                target,
                headers=forwardable_inbound_headers(
                    request.headers, self.settings.default_user_agent, self.codec
                ),
                content=None if method in BODYLESS_METHODS else request.body,
            )
        except httpx.InvalidURL as e:
            raise MalformedTargetError() from e

    def _enter(self, span, state: ForwardState) -> None:
        span.set_attribute("proxy.state", state.value)
        logger.debug(f"[Proxy] -> {state.value}")

    # ------------------------------------------------------------------
    # Cancellation guard
    # ------------------------------------------------------------------

    async def _guard(
        self,
        work: Awaitable[UpstreamResult],
        deadline: float,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]],
    ) -> UpstreamResult:
        """Run ``work`` until it finishes, the deadline passes or the client leaves."""
        loop = asyncio.get_running_loop()
        task = asyncio.create_task(work)
        watcher = None
        if is_disconnected is not None:
            watcher = asyncio.create_task(self._watch_disconnect(is_disconnected))

        pending = {task} if watcher is None else {task, watcher}
        delivered = False
        disconnected = False
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if task in done:
                    delivered = True
                    return task.result()
                if watcher is not None and watcher in done:
                    if watcher.result():
                        disconnected = True
                        break
                    # Watcher gave up; keep waiting on the upstream alone
                    continue
                if not done:
                    break
        finally:
            if watcher is not None and not watcher.done():
                watcher.cancel()
            if not delivered:
                await self._discard(task)

        if disconnected:
            raise ClientDisconnectedError()
        raise UpstreamTimeoutError()

    async def _discard(self, task: "asyncio.Task") -> None:
        """Cancel in-flight upstream work and release whatever it produced."""
        task.cancel()
        await asyncio.wait({task})
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.debug(f"[Proxy] Discarded upstream failure: {task.exception()!r}")
            return
        result = task.result()
        await result.response.aclose()

    async def _watch_disconnect(
        self, is_disconnected: Callable[[], Awaitable[bool]]
    ) -> bool:
        try:
            while not await is_disconnected():
                await asyncio.sleep(self.settings.disconnect_poll_seconds)
        except Exception as e:
            logger.debug(f"[Proxy] Disconnect watch stopped: {e!r}")
            return False
        return True

    # ------------------------------------------------------------------
    # Upstream exchange
    # ------------------------------------------------------------------

    def _translate(self, e: BaseException, target: str) -> ProxyError:
        if find_exception_in_exception_groups(e, httpx.TimeoutException) is not None:
            return UpstreamTimeoutError()
        log_exception_with_details(
            logger, f"[Proxy] Upstream {redact_url(target)} failed.", e, logging.WARNING
        )
        return UpstreamTransportError()

    async def _dispatch(self, upstream_request: httpx.Request, span) -> UpstreamResult:
        target = str(upstream_request.url)
        try:
            response = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            raise self._translate(e, target) from e

        span.set_attribute("proxy.status_code", response.status_code)
        if not self._should_rewrite(upstream_request.method, response):
            return Streamed(response)

        self._enter(span, ForwardState.BUFFERING)
        try:
            body = await self._read_capped(response, target)
        finally:
            await response.aclose()
        span.set_attribute("proxy.bytes", len(body))
        return Buffered(response, body)

    def _should_rewrite(self, method: str, response: httpx.Response) -> bool:
        if method == "HEAD" or response.status_code in BODYLESS_STATUS_CODES:
            return False
        return media_type(response.headers.get("content-type")) in HTML_CONTENT_TYPES

    async def _read_capped(self, response: httpx.Response, target: str) -> bytes:
        cap = self.settings.max_body_bytes
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > cap:
            raise ResponseTooLargeError()

        chunks = []
        received = 0
        try:
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > cap:
                    raise ResponseTooLargeError()
                chunks.append(chunk)
        except httpx.HTTPError as e:
            raise self._translate(e, target) from e
        return b"".join(chunks)

    # ------------------------------------------------------------------
    # Response builders
    # ------------------------------------------------------------------

    def _outbound_headers(self, upstream: httpx.Response, target: str) -> HeaderPairs:
        pairs = sanitize_outbound_headers(upstream.headers, self.settings.csp_mode)
        return rewrite_location_headers(pairs, target, self.codec)

    def _buffered_response(self, result: Buffered, target: str, span) -> Response:
        charset = _response_charset(result.response)
        text = result.body.decode(charset, errors="replace")
        context = RewriteContext(
            base_url=target,
            codec=self.codec,
            rewrite_inline_scripts=self.settings.rewrite_inline_scripts,
        )
        body = HtmlRewriteEngine(context).rewrite(text).encode(
            charset, errors="xmlcharrefreplace"
        )

        headers = [
            (name, value)
            for name, value in self._outbound_headers(result.response, target)
            if name != "content-length"
        ]
        headers.append(("content-length", str(len(body))))

        response = Response(content=body, status_code=result.response.status_code)
        response.raw_headers = _raw_headers(headers)
        span.set_attribute("proxy.rewritten_bytes", len(body))
        return response

    def _streamed_response(self, result: Streamed, target: str) -> StreamingResponse:
        upstream = result.response
        headers = self._outbound_headers(upstream, target)
        encoding = upstream.headers.get("content-encoding", "").strip().lower()
        if encoding and encoding != "identity":
            # httpx decodes the stream, so the upstream length no longer holds
            headers = [(n, v) for n, v in headers if n != "content-length"]

        response = StreamingResponse(
            self._relay(upstream, target), status_code=upstream.status_code
        )
        response.raw_headers = _raw_headers(headers)
        return response

    async def _relay(self, upstream: httpx.Response, target: str) -> AsyncIterator[bytes]:
        """Yield upstream chunks as they arrive; closing always releases the upstream."""
        sent = 0
        try:
            async for chunk in upstream.aiter_bytes():
                sent += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already out, all that is left is to drop the connection
            log_exception_with_details(
                logger,
                f"[Proxy] Stream from {redact_url(target)} interrupted after {sent} bytes.",
                e,
                logging.WARNING,
            )
            raise
        finally:
            await upstream.aclose()
            logger.debug(f"[Proxy] Relayed {sent} bytes from {redact_url(target)}")
