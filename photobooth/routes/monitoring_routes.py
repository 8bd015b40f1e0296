"""
Operator monitoring endpoints.

Both responses are computed from the metrics store and the work queue at
request time; nothing is cached.
"""

import typing

import fastapi
import fastapi.responses
import psutil

import photobooth.dependencies
import photobooth.exceptions
import photobooth.metrics
import photobooth.models
import photobooth.scheduling

monitoring_router = fastapi.APIRouter(prefix="/api", tags=["Monitoring"])

_MONITORING_CACHE_SUPPRESSION_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store, no-cache",
    "Pragma": "no-cache",
}


def _current_memory_usage() -> photobooth.models.MemoryUsageModel:
    memory_information = psutil.Process().memory_info()
    return photobooth.models.MemoryUsageModel(
        resident_set_size_bytes=memory_information.rss,
        virtual_memory_size_bytes=memory_information.vms,
    )


@monitoring_router.get(
    "/monitor",
    response_model=photobooth.models.MonitorResponse,
    summary="Booth-wide counters, queue state and recent sessions",
)
async def get_monitor_snapshot(
    request: fastapi.Request,
    metrics_store: typing.Annotated[
        photobooth.metrics.KioskMetricsStore,
        fastapi.Depends(photobooth.dependencies.get_metrics_store),
    ],
    generation_queue: typing.Annotated[
        photobooth.scheduling.PriorityWorkQueue,
        fastapi.Depends(photobooth.dependencies.get_generation_queue),
    ],
) -> fastapi.responses.JSONResponse:
    recent_sessions_limit = getattr(request.app.state, "recent_sessions_limit", 20)

    monitor_response = photobooth.models.MonitorResponse(
        kiosks=metrics_store.snapshot(),
        queue_size=generation_queue.size,
        queue_pending=generation_queue.pending,
        total_sessions=metrics_store.session_count,
        recent_sessions=[session.to_summary() for session in metrics_store.recent_sessions(recent_sessions_limit)],
        server_uptime_seconds=round(metrics_store.uptime_seconds(), 3),
        memory_usage=_current_memory_usage(),
        timestamp=photobooth.metrics.utc_now().isoformat(),
    )

    return fastapi.responses.JSONResponse(
        content=monitor_response.model_dump(),
        headers=_MONITORING_CACHE_SUPPRESSION_HEADERS,
    )


@monitoring_router.get(
    "/kiosk/{kiosk_id}/status",
    response_model=photobooth.models.KioskStatusResponse,
    summary="Counters for a single kiosk",
    responses={
        404: {
            "description": "Not Found: the kiosk is not registered (``kiosk_not_found``).",
            "model": photobooth.models.ErrorResponse,
        },
    },
)
async def get_kiosk_status(
    kiosk_id: str,
    metrics_store: typing.Annotated[
        photobooth.metrics.KioskMetricsStore,
        fastapi.Depends(photobooth.dependencies.get_metrics_store),
    ],
    generation_queue: typing.Annotated[
        photobooth.scheduling.PriorityWorkQueue,
        fastapi.Depends(photobooth.dependencies.get_generation_queue),
    ],
) -> fastapi.responses.JSONResponse:
    """
    Return one kiosk's counters plus the queue position a new request
    from it would join at.

    Raises:
        KioskNotFoundError: When the kiosk is not registered.
    """
    if not metrics_store.is_known_kiosk(kiosk_id):
        raise photobooth.exceptions.KioskNotFoundError(detail=f"Kiosk '{kiosk_id}' does not exist.")

    kiosk_status = photobooth.models.KioskStatusResponse(
        kiosk_id=kiosk_id,
        queue_position=generation_queue.size,
        **metrics_store.counters_for(kiosk_id).to_dict(),
    )

    return fastapi.responses.JSONResponse(
        content=kiosk_status.model_dump(),
        headers=_MONITORING_CACHE_SUPPRESSION_HEADERS,
    )
