"""
Route definition for ``POST /api/generate``.

A request passes four gates before any work is queued, cheapest first:

1. Per-kiosk moving-window admission (429 ``rate_limit_exceeded``).
2. Kiosk identity: only registered kiosks may generate (400 ``unknown_kiosk``).
3. Selfie checks: non-empty, ``image/*``, within the size ceiling
   (400 ``invalid_selfie``).
4. Capacity: while more than ``generation_queue_soft_limit`` tasks are
   waiting, new work is refused (503 ``service_busy``).

Admitted work is queued with the kiosk's priority class and awaited for
the kiosk's response timeout.  The wait is shielded: when the caller
gives up (504 ``generation_timeout``) or disconnects, the task keeps
running and its session still records the outcome.
"""

import asyncio
import functools
import time
import typing
import uuid

import fastapi
import fastapi.responses
import structlog

import photobooth.dependencies
import photobooth.exceptions
import photobooth.kiosks
import photobooth.metrics
import photobooth.models
import photobooth.scheduling
import photobooth.services.generation_client
import photobooth.services.generation_worker

logger = structlog.get_logger()

generation_router = fastapi.APIRouter(prefix="/api", tags=["Generation"])

_DEFAULT_MAXIMUM_SELFIE_BYTES = 10_485_760


def _log_abandoned_generation_outcome(session_identifier: str, result_future: asyncio.Future) -> None:
    """Observe the result of a task whose caller timed out or disconnected."""
    if result_future.cancelled():
        logger.warning("abandoned_generation_cancelled", session_identifier=session_identifier)
        return
    generation_error = result_future.exception()
    if generation_error is not None:
        logger.warning(
            "abandoned_generation_failed",
            session_identifier=session_identifier,
            error=str(generation_error),
        )
        return
    logger.info(
        "abandoned_generation_completed",
        session_identifier=session_identifier,
        output_reference=result_future.result().output_reference,
    )


async def _read_selfie(selfie: fastapi.UploadFile, maximum_selfie_bytes: int) -> bytes:
    media_type = (selfie.content_type or "").lower()
    if not media_type.startswith("image/"):
        raise photobooth.exceptions.InvalidSelfieError(
            detail=f"The selfie must be an image upload, received '{media_type or 'unknown'}'.",
        )

    selfie_bytes = await selfie.read(maximum_selfie_bytes + 1)
    if not selfie_bytes:
        raise photobooth.exceptions.InvalidSelfieError(detail="The selfie upload is empty.")
    if len(selfie_bytes) > maximum_selfie_bytes:
        raise photobooth.exceptions.InvalidSelfieError(
            detail=f"The selfie exceeds the maximum allowed size of {maximum_selfie_bytes} bytes.",
        )
    return selfie_bytes


@generation_router.post(
    "/generate",
    response_model=photobooth.models.GenerationResponse,
    summary="Generate a marathon photo from a selfie",
    description=(
        "Queues one generation attempt for the calling kiosk and waits for "
        "its result. The kiosk identifies itself with the X-Kiosk-ID header."
    ),
    status_code=200,
    responses={
        400: {
            "description": (
                "Bad Request: missing form fields (``request_validation_failed``), "
                "an unregistered kiosk (``unknown_kiosk``), an unusable selfie "
                "(``invalid_selfie``) or an unknown background (``invalid_selection``)."
            ),
            "model": photobooth.models.ErrorResponse,
        },
        413: {"description": "Payload Too Large (``payload_too_large``).", "model": photobooth.models.ErrorResponse},
        415: {
            "description": "Unsupported Media Type (``unsupported_media_type``).",
            "model": photobooth.models.ErrorResponse,
        },
        429: {
            "description": (
                "Too Many Requests: the kiosk exhausted its admission window "
                "(``rate_limit_exceeded``). ``Retry-After`` says when to retry."
            ),
            "model": photobooth.models.ErrorResponse,
        },
        502: {
            "description": "Bad Gateway: the generation API failed or produced no image (``upstream_failure``).",
            "model": photobooth.models.ErrorResponse,
        },
        503: {
            "description": (
                "Service Unavailable: the generation queue is over its soft limit "
                "(``service_busy``, with ``details.queue_size``) or shutting down."
            ),
            "model": photobooth.models.ErrorResponse,
        },
        504: {
            "description": (
                "Gateway Timeout: the result was not ready within the kiosk's "
                "response timeout (``generation_timeout``)."
            ),
            "model": photobooth.models.ErrorResponse,
        },
    },
)
async def handle_generation_request(
    request: fastapi.Request,
    kiosk_identifier: typing.Annotated[
        str,
        fastapi.Depends(photobooth.dependencies.admit_kiosk_request),
    ],
    kiosk_registry: typing.Annotated[
        photobooth.kiosks.KioskRegistry,
        fastapi.Depends(photobooth.dependencies.get_kiosk_registry),
    ],
    metrics_store: typing.Annotated[
        photobooth.metrics.KioskMetricsStore,
        fastapi.Depends(photobooth.dependencies.get_metrics_store),
    ],
    generation_queue: typing.Annotated[
        photobooth.scheduling.PriorityWorkQueue,
        fastapi.Depends(photobooth.dependencies.get_generation_queue),
    ],
    generation_worker: typing.Annotated[
        photobooth.services.generation_worker.GenerationWorker,
        fastapi.Depends(photobooth.dependencies.get_generation_worker),
    ],
    selfie: typing.Annotated[fastapi.UploadFile, fastapi.File(description="The visitor's selfie.")],
    background_identifier: typing.Annotated[
        str,
        fastapi.Form(alias="backgroundId", min_length=1, description="Identifier of the chosen background."),
    ],
    demographic_attribute: typing.Annotated[
        str,
        fastapi.Form(alias="gender", min_length=1, description="Self-reported demographic attribute."),
    ],
    prominence: typing.Annotated[
        photobooth.models.Prominence,
        fastapi.Form(description="How prominently the visitor is placed in the scene."),
    ] = "medium",
) -> fastapi.responses.JSONResponse:
    """
    Run one generation attempt for the calling kiosk and return its output
    reference.

    The response carries ``Cache-Control: no-store``; every result is
    unique to its session.
    """
    received_at = time.monotonic()

    if not kiosk_registry.is_known(kiosk_identifier):
        raise photobooth.exceptions.UnknownKioskError(
            detail=f"Kiosk '{kiosk_identifier}' is not registered with this service.",
        )

    maximum_selfie_bytes = getattr(request.app.state, "maximum_selfie_bytes", _DEFAULT_MAXIMUM_SELFIE_BYTES)
    selfie_bytes = await _read_selfie(selfie, maximum_selfie_bytes)

    queue_soft_limit = getattr(request.app.state, "generation_queue_soft_limit", 10)
    if generation_queue.size > queue_soft_limit:
        metrics_store.record_rejection(kiosk_identifier)
        raise photobooth.exceptions.GenerationQueueFullError(queue_size=generation_queue.size)

    session_identifier = uuid.uuid4().hex
    priority = kiosk_registry.priority_for(kiosk_identifier)
    generation_request = photobooth.services.generation_worker.GenerationRequest(
        kiosk_identifier=kiosk_identifier,
        background_identifier=background_identifier,
        demographic_attribute=demographic_attribute,
        selfie=photobooth.services.generation_client.ImagePayload(
            data=selfie_bytes,
            media_type=selfie.content_type or "image/jpeg",
        ),
        prominence=prominence,
        priority=priority,
    )

    result_future = generation_queue.submit(
        functools.partial(generation_worker.run, generation_request, session_identifier),
        priority=priority,
    )

    response_timeout_seconds = kiosk_registry.response_timeout_for(kiosk_identifier)
    try:
        generation_outcome = await asyncio.wait_for(
            asyncio.shield(result_future),
            timeout=response_timeout_seconds,
        )
    except asyncio.CancelledError:
        # The caller went away; the task still runs and its outcome must be observed.
        result_future.add_done_callback(
            functools.partial(_log_abandoned_generation_outcome, session_identifier),
        )
        logger.info("generation_caller_disconnected", session_identifier=session_identifier)
        raise
    except TimeoutError:
        result_future.add_done_callback(
            functools.partial(_log_abandoned_generation_outcome, session_identifier),
        )
        logger.warning(
            "generation_response_timed_out",
            session_identifier=session_identifier,
            timeout_seconds=response_timeout_seconds,
        )
        raise photobooth.exceptions.GenerationTimeoutError() from None

    response_model = photobooth.models.GenerationResponse(
        image_url=generation_outcome.output_reference,
        session_id=generation_outcome.session_identifier,
        kiosk_id=kiosk_identifier,
        queue_size=generation_queue.size,
        processing_time_milliseconds=round((time.monotonic() - received_at) * 1000),
    )

    return fastapi.responses.JSONResponse(
        content=response_model.model_dump(),
        headers={"Cache-Control": "no-store"},
    )
