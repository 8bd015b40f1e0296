"""
Pure ASGI middleware applied to every request.

Execution order (last registered is outermost)::

    Request → CorrelationId → RequestTimeout → ContentType → PayloadSizeLimit → CORS → App

Each class derives from ``HttpOnlyMiddleware``: lifespan and websocket
scopes go straight to the wrapped application, HTTP scopes go through
``handle_http``.  Rejections produced here never reach a route, so they
are written directly to ``send`` in the same ``ErrorResponse`` shape the
exception handlers use.
"""

import asyncio
import threading
import time
import uuid

import starlette.types
import structlog
import structlog.contextvars

import photobooth.models

logger = structlog.get_logger()

KIOSK_IDENTIFIER_HEADER = b"x-kiosk-id"
CORRELATION_ID_HEADER = b"x-correlation-id"

_BODYLESS_METHODS: frozenset[str] = frozenset({"GET", "HEAD", "OPTIONS", "DELETE", "TRACE"})


class InFlightRequestCounter:
    """
    Number of HTTP requests currently inside the middleware stack.

    Guarded by a ``threading.Lock`` because the shutdown log reads it from
    outside the request tasks.
    """

    def __init__(self) -> None:
        self._count: int = 0
        self._lock = threading.Lock()

    def increment(self) -> None:
        with self._lock:
            self._count += 1

    def decrement(self) -> None:
        with self._lock:
            self._count -= 1

    @property
    def count(self) -> int:
        return self._count


def find_header_value(headers, header_name: bytes) -> str | None:
    """Return the first value of ``header_name`` (lower-case bytes) from raw ASGI headers."""
    for candidate_name, candidate_value in headers:
        if candidate_name.lower() == header_name:
            return candidate_value.decode("latin-1").strip()
    return None


def extract_content_length_from_headers(headers) -> int | None:
    """Declared Content-Length, or ``None`` when absent or not an integer."""
    declared_length = find_header_value(headers, b"content-length")
    if declared_length is None or not declared_length.isdigit():
        return None
    return int(declared_length)


async def reply_with_error(
    send: starlette.types.Send,
    scope: starlette.types.Scope,
    status_code: int,
    error_code: str,
    message: str,
) -> None:
    """Answer the request with an ``ErrorResponse`` body, bypassing the application."""
    error_response = photobooth.models.ErrorResponse(
        error=photobooth.models.ErrorDetail(
            code=error_code,
            message=message,
            correlation_id=scope.get("state", {}).get("correlation_id", "unknown"),
        ),
    )
    response_body = error_response.model_dump_json(exclude_none=True).encode()

    await send(
        {
            "type": "http.response.start",
            "status": status_code,
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(response_body)).encode()),
            ],
        }
    )
    await send({"type": "http.response.body", "body": response_body})


class ResponseStartObserver:
    """
    Wraps ``send`` and remembers whether, and with which status, the
    response has started.  Once it has, no middleware may answer again.
    """

    def __init__(self, send: starlette.types.Send) -> None:
        self._send = send
        self.started = False
        self.status = 0

    async def __call__(self, message: starlette.types.Message) -> None:
        if message["type"] == "http.response.start":
            self.started = True
            self.status = message.get("status", 0)
        await self._send(message)


class HttpOnlyMiddleware:
    def __init__(self, app: starlette.types.ASGIApp) -> None:
        self.app = app

    async def __call__(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        if scope["type"] == "http":
            await self.handle_http(scope, receive, send)
        else:
            await self.app(scope, receive, send)

    async def handle_http(
        self,
        scope: starlette.types.Scope,
        receive: starlette.types.Receive,
        send: starlette.types.Send,
    ) -> None:
        raise NotImplementedError


class CorrelationIdMiddleware(HttpOnlyMiddleware):
    """
    Tag each request with a UUID v4 correlation ID and contain unhandled
    errors.

    The ID lands in ``scope["state"]`` (read back as
    ``request.state.correlation_id``), in the ``X-Correlation-ID``
    response header and in the structlog context, together with the
    calling kiosk when ``X-Kiosk-ID`` is present.  Starlette's
    ``ServerErrorMiddleware`` re-raises after answering, so the JSON 500
    for unhandled exceptions is produced here.
    """

    def __init__(
        self,
        app: starlette.types.ASGIApp,
        in_flight_request_counter: InFlightRequestCounter | None = None,
    ) -> None:
        super().__init__(app)
        self._in_flight_request_counter = in_flight_request_counter

    async def handle_http(self, scope, receive, send) -> None:
        correlation_id = str(uuid.uuid4())
        scope.setdefault("state", {})["correlation_id"] = correlation_id
        request_headers = scope.get("headers", [])

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
        kiosk_identifier = find_header_value(request_headers, KIOSK_IDENTIFIER_HEADER)
        if kiosk_identifier:
            structlog.contextvars.bind_contextvars(kiosk_identifier=kiosk_identifier)

        request_log = logger.bind(method=scope.get("method", ""), path=scope.get("path", ""))
        request_log.info(
            "http_request_received",
            request_payload_bytes=extract_content_length_from_headers(request_headers),
        )

        async def send_tagged(message: starlette.types.Message) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = [*message.get("headers", []), (CORRELATION_ID_HEADER, correlation_id.encode())]
            await send(message)

        observed_send = ResponseStartObserver(send_tagged)
        received_at = time.monotonic()
        if self._in_flight_request_counter is not None:
            self._in_flight_request_counter.increment()

        try:
            await self.app(scope, receive, observed_send)
        except Exception:
            request_log.exception("unexpected_exception")
            if not observed_send.started:
                await reply_with_error(
                    observed_send,
                    scope,
                    500,
                    "internal_server_error",
                    "An unexpected internal error occurred.",
                )
        finally:
            if self._in_flight_request_counter is not None:
                self._in_flight_request_counter.decrement()
            request_log.info(
                "http_request_completed",
                status=observed_send.status,
                duration_milliseconds=round((time.monotonic() - received_at) * 1000, 1),
            )


class RequestTimeoutMiddleware(HttpOnlyMiddleware):
    """
    End-to-end ceiling on request duration, answered with 504
    ``request_timeout``.  A timeout after the response has started can
    only be logged.
    """

    def __init__(self, app: starlette.types.ASGIApp, request_timeout_seconds: float = 300.0) -> None:
        super().__init__(app)
        self._request_timeout_seconds = request_timeout_seconds

    async def handle_http(self, scope, receive, send) -> None:
        observed_send = ResponseStartObserver(send)
        try:
            await asyncio.wait_for(self.app(scope, receive, observed_send), timeout=self._request_timeout_seconds)
        except TimeoutError:
            logger.error(
                "request_timeout_exceeded",
                timeout_seconds=self._request_timeout_seconds,
                path=scope.get("path", ""),
                response_started=observed_send.started,
            )
            if not observed_send.started:
                await reply_with_error(
                    send,
                    scope,
                    504,
                    "request_timeout",
                    "The request exceeded the maximum allowed processing time and was aborted.",
                )


class ContentTypeValidationMiddleware(HttpOnlyMiddleware):
    """
    415 ``unsupported_media_type`` for body-carrying requests whose
    Content-Type, ignoring parameters such as ``boundary``, is missing or
    not accepted.
    """

    def __init__(
        self,
        app: starlette.types.ASGIApp,
        accepted_media_types: tuple[str, ...] = ("multipart/form-data", "application/json"),
    ) -> None:
        super().__init__(app)
        self._accepted_media_types = accepted_media_types

    async def handle_http(self, scope, receive, send) -> None:
        if scope.get("method", "") in _BODYLESS_METHODS:
            await self.app(scope, receive, send)
            return

        declared_content_type = find_header_value(scope.get("headers", []), b"content-type") or ""
        media_type = declared_content_type.partition(";")[0].strip().lower()
        if media_type in self._accepted_media_types:
            await self.app(scope, receive, send)
            return

        logger.warning(
            "http_unsupported_media_type",
            received_content_type=declared_content_type or None,
            accepted_media_types=list(self._accepted_media_types),
        )
        await reply_with_error(
            send,
            scope,
            415,
            "unsupported_media_type",
            f"The Content-Type header must be one of: {', '.join(self._accepted_media_types)}.",
        )


class RequestPayloadSizeLimitMiddleware(HttpOnlyMiddleware):
    """
    413 ``payload_too_large`` for request bodies above
    ``maximum_request_payload_bytes``.

    An oversized Content-Length is refused before the body is read.
    Without one, chunks are counted as the application receives them;
    past the limit the application is handed an empty final chunk, its
    own response is suppressed and the 413 is sent instead.
    """

    def __init__(self, app: starlette.types.ASGIApp, maximum_request_payload_bytes: int = 12_582_912) -> None:
        super().__init__(app)
        self._maximum_request_payload_bytes = maximum_request_payload_bytes

    async def _reject(self, send, scope, **log_fields) -> None:
        logger.warning("http_payload_too_large", maximum_allowed_bytes=self._maximum_request_payload_bytes, **log_fields)
        await reply_with_error(
            send,
            scope,
            413,
            "payload_too_large",
            f"The request payload exceeds the maximum allowed size of {self._maximum_request_payload_bytes} bytes.",
        )

    async def handle_http(self, scope, receive, send) -> None:
        declared_content_length = extract_content_length_from_headers(scope.get("headers", []))
        if declared_content_length is not None and declared_content_length > self._maximum_request_payload_bytes:
            await self._reject(send, scope, declared_content_length=declared_content_length)
            return

        received_body_bytes = 0
        limit_exceeded = False

        async def counting_receive() -> starlette.types.Message:
            nonlocal received_body_bytes, limit_exceeded
            message = await receive()
            if message["type"] != "http.request":
                return message
            received_body_bytes += len(message.get("body", b""))
            if received_body_bytes <= self._maximum_request_payload_bytes:
                return message
            limit_exceeded = True
            return {"type": "http.request", "body": b"", "more_body": False}

        observed_send = ResponseStartObserver(send)

        async def suppressing_send(message: starlette.types.Message) -> None:
            if limit_exceeded and not observed_send.started:
                return
            await observed_send(message)

        try:
            await self.app(scope, counting_receive, suppressing_send)
        except Exception:
            if not limit_exceeded:
                raise

        if limit_exceeded and not observed_send.started:
            await self._reject(send, scope, received_body_bytes=received_body_bytes)
