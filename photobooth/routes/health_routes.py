"""
Health endpoints.

- ``GET /health``: liveness.  HTTP 200 whenever the process is serving.
- ``GET /health/ready``: readiness.  Checks, without any network call,
  that the generation API key is configured, the background assets
  directory exists and the output directory is writable.  Any failing
  check answers 503 with ``Retry-After``.
- ``GET /api/health``: the kiosk heartbeat.  Echoes the calling kiosk
  (``X-Kiosk-ID`` header or ``kiosk`` query parameter) with the current
  queue state so a kiosk can show whether the booth is busy.

All three carry ``Cache-Control: no-store, no-cache`` and
``Pragma: no-cache``; their answers change on every poll.
"""

import typing

import fastapi
import fastapi.responses

import photobooth.dependencies
import photobooth.logging_config
import photobooth.metrics
import photobooth.scheduling

health_router = fastapi.APIRouter(tags=["Health"])

_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache",
    "Pragma": "no-cache",
}


def _check_status(component: typing.Any, check: typing.Callable[[typing.Any], bool]) -> str:
    if component is None:
        return "unavailable"
    return "ok" if check(component) else "unavailable"


@health_router.get(
    "/health",
    summary="Liveness check",
    status_code=200,
    responses={
        200: {
            "description": "The service process is running.",
            "content": {"application/json": {"example": {"status": "healthy"}}},
        },
    },
)
async def health_check() -> fastapi.responses.JSONResponse:
    return fastapi.responses.JSONResponse(
        content={"status": "healthy"},
        headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
    )


@health_router.get(
    "/health/ready",
    summary="Readiness check",
    status_code=200,
    responses={
        200: {
            "description": "Every dependency needed to serve generate requests is in place.",
            "content": {
                "application/json": {
                    "example": {
                        "status": "ready",
                        "checks": {"generation_api": "ok", "background_assets": "ok", "output_storage": "ok"},
                    },
                },
            },
        },
        503: {
            "description": "One or more checks failed. ``Retry-After`` says when to poll again.",
            "content": {
                "application/json": {
                    "example": {
                        "status": "not_ready",
                        "checks": {
                            "generation_api": "unavailable",
                            "background_assets": "ok",
                            "output_storage": "ok",
                        },
                    },
                },
            },
            "headers": {
                "Retry-After": {
                    "description": "Seconds to wait before the next readiness poll.",
                    "schema": {"type": "integer"},
                },
            },
        },
    },
)
async def readiness_check(request: fastapi.Request) -> fastapi.responses.JSONResponse:
    application_state = request.app.state
    checks: dict[str, str] = {
        "generation_api": _check_status(
            getattr(application_state, "generation_client", None),
            lambda generation_client: generation_client.is_configured(),
        ),
        "background_assets": _check_status(
            getattr(application_state, "background_catalog", None),
            lambda background_catalog: background_catalog.check_health(),
        ),
        "output_storage": _check_status(
            getattr(application_state, "output_sink", None),
            lambda output_sink: output_sink.check_health(),
        ),
    }

    all_checks_pass = all(check_status == "ok" for check_status in checks.values())
    response_headers = dict(_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS)
    if not all_checks_pass:
        response_headers["Retry-After"] = str(getattr(application_state, "retry_after_not_ready_seconds", 10))

    return fastapi.responses.JSONResponse(
        content={"status": "ready" if all_checks_pass else "not_ready", "checks": checks},
        status_code=200 if all_checks_pass else 503,
        headers=response_headers,
    )


@health_router.get(
    "/api/health",
    summary="Kiosk heartbeat",
    status_code=200,
)
async def kiosk_heartbeat(
    generation_queue: typing.Annotated[
        photobooth.scheduling.PriorityWorkQueue,
        fastapi.Depends(photobooth.dependencies.get_generation_queue),
    ],
    x_kiosk_id: typing.Annotated[str | None, fastapi.Header(alias="X-Kiosk-ID")] = None,
    kiosk: typing.Annotated[str | None, fastapi.Query()] = None,
) -> fastapi.responses.JSONResponse:
    return fastapi.responses.JSONResponse(
        content={
            "status": "ok",
            "service": photobooth.logging_config.SERVICE_NAME,
            "kiosk_id": x_kiosk_id or kiosk,
            "timestamp": photobooth.metrics.utc_now().isoformat(),
            "queue": {
                "size": generation_queue.size,
                "pending": generation_queue.pending,
                "maximum_concurrency": generation_queue.maximum_concurrency,
            },
        },
        headers=_INFRASTRUCTURE_CACHE_SUPPRESSION_HEADERS,
    )
