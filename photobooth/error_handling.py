"""
Exception handlers that give every failure the same JSON shape.

Statuses are chosen so a kiosk can tell what to do next:

    - Missing or malformed form fields     →  400 Bad Request
    - Unknown kiosk, invalid selfie        →  400 Bad Request
    - Invalid background selection         →  400 Bad Request
    - Unknown kiosk on the status endpoint →  404 Not Found
    - Undefined endpoint                   →  404 Not Found
    - Wrong HTTP method                    →  405 Method Not Allowed
    - Kiosk over its admission budget      →  429 Too Many Requests (+ Retry-After)
    - Generation queue over its soft limit →  503 Service Unavailable (+ Retry-After)
    - Generation queue shutting down       →  503 Service Unavailable (+ Retry-After)
    - External generation API failure      →  502 Bad Gateway
    - Caller stopped waiting for a result  →  504 Gateway Timeout
    - Asset or output I/O failure          →  500 Internal Server Error

Client-input errors (4xx except 429) should not be retried unchanged;
429 and 503 are retried after ``Retry-After``; other 5xx are operational
faults.  The 500 for exceptions nobody anticipated is produced by
``CorrelationIdMiddleware``.
"""

import fastapi
import fastapi.exceptions
import fastapi.responses
import starlette.exceptions
import starlette.routing
import structlog

import photobooth.exceptions
import photobooth.models

logger = structlog.get_logger()

# status code → (error code, message, log event)
_FRAMEWORK_ERRORS: dict[int, tuple[str, str, str]] = {
    404: ("not_found", "The requested endpoint does not exist.", "http_not_found"),
    405: ("method_not_allowed", "The HTTP method is not allowed for this endpoint.", "http_method_not_allowed"),
}


def error_response(
    request: fastapi.Request,
    status_code: int,
    code: str,
    message: str,
    details: dict | list | None = None,
) -> fastapi.responses.JSONResponse:
    """
    Build an ``ErrorResponse`` JSON reply stamped with the request's
    correlation ID.  ``details`` is left out of the body when ``None``.
    """
    error_body = photobooth.models.ErrorResponse(
        error=photobooth.models.ErrorDetail(
            code=code,
            message=message,
            details=details,
            correlation_id=getattr(request.state, "correlation_id", "unknown"),
        ),
    )
    return fastapi.responses.JSONResponse(
        status_code=status_code,
        content=error_body.model_dump(exclude_none=True),
    )


def _describe_service_error(
    service_error: photobooth.exceptions.ServiceError,
    application_state,
) -> tuple[dict | None, int | None]:
    """Return the ``details`` body and ``Retry-After`` seconds for ``service_error``."""
    if isinstance(service_error, photobooth.exceptions.KioskRateLimitedError):
        return {"retry_after_seconds": service_error.retry_after_seconds}, service_error.retry_after_seconds
    if isinstance(service_error, photobooth.exceptions.GenerationQueueFullError):
        return {"queue_size": service_error.queue_size}, getattr(application_state, "retry_after_busy_seconds", 15)
    if isinstance(service_error, photobooth.exceptions.GenerationQueueClosedError):
        return None, getattr(application_state, "retry_after_not_ready_seconds", 10)
    return None, None


def _allowed_methods(fastapi_application: fastapi.FastAPI, request_path: str) -> str:
    """Methods registered for ``request_path``, sorted, with HEAD wherever GET is allowed."""
    match_scope = {"type": "http", "path": request_path, "method": "GET"}
    allowed_methods: set[str] = set()
    for route in fastapi_application.routes:
        route_methods = getattr(route, "methods", None)
        if not route_methods:
            continue
        route_match, _ = route.matches(match_scope)
        if route_match is not starlette.routing.Match.NONE:
            allowed_methods |= route_methods
    if "GET" in allowed_methods:
        allowed_methods.add("HEAD")
    return ", ".join(sorted(allowed_methods))


def register_error_handlers(fastapi_application: fastapi.FastAPI) -> None:
    """
    Register the exception handlers on ``fastapi_application``.

    Handlers are looked up along the exception's MRO, so the single
    ``ServiceError`` handler answers for the whole hierarchy using each
    class's ``http_status_code`` and ``error_code``.
    """

    @fastapi_application.exception_handler(fastapi.exceptions.RequestValidationError)
    async def handle_request_validation_error(
        request: fastapi.Request,
        validation_error: fastapi.exceptions.RequestValidationError,
    ) -> fastapi.responses.JSONResponse:
        """
        400 for missing or malformed fields.  Only the location, message
        and type of each failure are returned; submitted values never are.
        """
        sanitised_errors = [
            {"loc": list(error.get("loc", [])), "msg": error.get("msg", ""), "type": error.get("type", "")}
            for error in validation_error.errors()
        ]
        logger.warning("http_validation_failed", errors=sanitised_errors)

        if any(error["type"].startswith("json") for error in sanitised_errors):
            return error_response(request, 400, "invalid_request_json", "The request body contains invalid JSON.")
        return error_response(
            request,
            400,
            "request_validation_failed",
            "The request is missing required fields or contains invalid values.",
            details=sanitised_errors,
        )

    @fastapi_application.exception_handler(photobooth.exceptions.ServiceError)
    async def handle_service_error(
        request: fastapi.Request,
        service_error: photobooth.exceptions.ServiceError,
    ) -> fastapi.responses.JSONResponse:
        status_code = service_error.http_status_code
        details, retry_after_seconds = _describe_service_error(service_error, request.app.state)

        log_method = logger.error if status_code >= 500 and status_code != 503 else logger.warning
        log_method(
            "service_error_returned",
            status_code=status_code,
            error_code=service_error.error_code,
            detail=service_error.detail,
            **(details or {}),
        )

        response = error_response(request, status_code, service_error.error_code, service_error.detail, details)
        if retry_after_seconds is not None:
            response.headers["Retry-After"] = str(retry_after_seconds)
        return response

    @fastapi_application.exception_handler(starlette.exceptions.HTTPException)
    async def handle_framework_http_exception(
        request: fastapi.Request,
        http_exception: starlette.exceptions.HTTPException,
    ) -> fastapi.responses.JSONResponse:
        """Structured JSON for routing errors Starlette raises itself (404, 405)."""
        error_code, message, log_event = _FRAMEWORK_ERRORS.get(
            http_exception.status_code,
            ("unexpected_error", str(http_exception.detail), "http_framework_error"),
        )
        logger.warning(log_event, status_code=http_exception.status_code, detail=str(http_exception.detail))

        response = error_response(request, http_exception.status_code, error_code, message)
        if http_exception.status_code == 405:
            response.headers["Allow"] = _allowed_methods(request.app, request.url.path)
        return response
