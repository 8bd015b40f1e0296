"""
FastAPI dependency providers.

Shared service instances are created once in the application lifespan
and stored on ``app.state``; each provider hands one of them to a route.
``admit_kiosk_request`` additionally runs per-kiosk admission control so
that a rejected request never reaches the route body.
"""

import fastapi

import photobooth.exceptions
import photobooth.kiosk_admission
import photobooth.kiosks
import photobooth.metrics
import photobooth.scheduling
import photobooth.services.background_catalog
import photobooth.services.generation_worker


def get_kiosk_registry(request: fastapi.Request) -> photobooth.kiosks.KioskRegistry:
    """Return the kiosk registry built from configuration at startup."""
    return request.app.state.kiosk_registry  # type: ignore[no-any-return]


def get_metrics_store(request: fastapi.Request) -> photobooth.metrics.KioskMetricsStore:
    """Return the per-kiosk counters and session ledger."""
    return request.app.state.metrics_store  # type: ignore[no-any-return]


def get_admission_controller(
    request: fastapi.Request,
) -> photobooth.kiosk_admission.KioskAdmissionController:
    """Return the shared admission controller; every request is accounted against the same windows."""
    return request.app.state.admission_controller  # type: ignore[no-any-return]


def get_generation_queue(request: fastapi.Request) -> photobooth.scheduling.PriorityWorkQueue:
    """Return the priority queue that bounds concurrent generation work."""
    return request.app.state.generation_queue  # type: ignore[no-any-return]


def get_generation_worker(
    request: fastapi.Request,
) -> photobooth.services.generation_worker.GenerationWorker:
    """Return the worker that runs one generation attempt inside a tracked session."""
    return request.app.state.generation_worker  # type: ignore[no-any-return]


def get_background_catalog(
    request: fastapi.Request,
) -> photobooth.services.background_catalog.BackgroundCatalog:
    """Return the background catalog loaded at startup."""
    return request.app.state.background_catalog  # type: ignore[no-any-return]


async def admit_kiosk_request(
    request: fastapi.Request,
    x_kiosk_id: str | None = fastapi.Header(default=None, alias="X-Kiosk-ID"),
) -> str:
    """
    Apply the calling kiosk's moving-window admission check.

    Returns:
        The admission bucket the request was accounted to: the declared
        kiosk identifier, or ``"unknown"`` when the header is missing.

    Raises:
        KioskRateLimitedError: When the kiosk's window is full.  The
            rejection is tallied against the kiosk before raising.
    """
    admission_controller = get_admission_controller(request)
    admission_decision = admission_controller.admit(x_kiosk_id.strip() if x_kiosk_id else None)

    if not admission_decision.allowed:
        get_metrics_store(request).record_rejection(admission_decision.kiosk_identifier)
        raise photobooth.exceptions.KioskRateLimitedError(
            retry_after_seconds=admission_decision.retry_after_seconds,
            kiosk_identifier=admission_decision.kiosk_identifier,
        )

    return admission_decision.kiosk_identifier
