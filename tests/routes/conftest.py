"""Shared fixtures for route integration tests."""

import asyncio

import fastapi
import httpx
import pytest
import pytest_asyncio

import photobooth.error_handling
import photobooth.kiosk_admission
import photobooth.kiosks
import photobooth.metrics
import photobooth.middleware
import photobooth.routes.background_routes
import photobooth.routes.generation_routes
import photobooth.routes.health_routes
import photobooth.routes.monitoring_routes
import photobooth.scheduling
import photobooth.services.background_catalog
import photobooth.services.generation_worker

KIOSK_IDENTIFIERS = ("kiosk-1", "kiosk-2", "kiosk-3", "kiosk-4")


class FakeGenerationWorker:
    """
    Stands in for ``GenerationWorker`` with the same session bookkeeping
    but no upstream call.  ``gate`` holds every attempt until set and
    ``failure`` is raised from inside the tracked session.
    """

    def __init__(self, metrics_store: photobooth.metrics.KioskMetricsStore) -> None:
        self._metrics_store = metrics_store
        self.gate: asyncio.Event | None = None
        self.failure: Exception | None = None
        self.received_requests: list[photobooth.services.generation_worker.GenerationRequest] = []

    async def run(self, generation_request, session_identifier):
        self.received_requests.append(generation_request)
        with self._metrics_store.track_session(
            session_identifier=session_identifier,
            kiosk_identifier=generation_request.kiosk_identifier,
            background_identifier=generation_request.background_identifier,
            demographic_attribute=generation_request.demographic_attribute,
            priority=generation_request.priority,
        ) as session:
            if self.gate is not None:
                await self.gate.wait()
            if self.failure is not None:
                raise self.failure
            output_reference = f"/outputs/marathon_{generation_request.kiosk_identifier}_{session_identifier}.png"
            self._metrics_store.complete_session(session, output_reference)

        return photobooth.services.generation_worker.GenerationOutcome(
            session_identifier=session_identifier,
            kiosk_identifier=generation_request.kiosk_identifier,
            output_reference=output_reference,
            processing_time_milliseconds=1,
        )


def build_kiosk_registry(response_timeout_seconds=5.0, bypass_kiosk_identifier=None):
    return photobooth.kiosks.KioskRegistry(
        kiosk_identifiers=KIOSK_IDENTIFIERS,
        priority_kiosk_identifier="kiosk-3",
        default_response_timeout_seconds=response_timeout_seconds,
        priority_response_timeout_seconds=response_timeout_seconds,
        bypass_kiosk_identifier=bypass_kiosk_identifier,
    )


@pytest.fixture
def kiosk_registry_factory():
    return build_kiosk_registry


@pytest.fixture
def kiosk_registry():
    return build_kiosk_registry(bypass_kiosk_identifier="e2e-test")


@pytest.fixture
def metrics_store(kiosk_registry):
    return photobooth.metrics.KioskMetricsStore(kiosk_registry.provisioned_identifiers)


@pytest.fixture
def admission_controller(kiosk_registry):
    return photobooth.kiosk_admission.KioskAdmissionController(
        window_seconds=60.0,
        maximum_requests_per_window=5,
        bypass_kiosk_identifier=kiosk_registry.bypass_kiosk_identifier,
    )


@pytest.fixture
def fake_generation_worker(metrics_store):
    return FakeGenerationWorker(metrics_store)


@pytest.fixture
def background_catalog(tmp_path):
    backgrounds_directory = tmp_path / "backgrounds"
    backgrounds_directory.mkdir()
    return photobooth.services.background_catalog.BackgroundCatalog(backgrounds_directory)


@pytest_asyncio.fixture
async def generation_queue():
    queue = photobooth.scheduling.PriorityWorkQueue(maximum_concurrency=2, maximum_dispatches_per_window=100)
    yield queue
    await queue.shutdown()


@pytest.fixture
def test_app(
    kiosk_registry,
    metrics_store,
    admission_controller,
    fake_generation_worker,
    background_catalog,
    generation_queue,
):
    app = fastapi.FastAPI()
    photobooth.error_handling.register_error_handlers(app)

    app.add_middleware(
        photobooth.middleware.RequestPayloadSizeLimitMiddleware,
        maximum_request_payload_bytes=1_048_576,
    )
    app.add_middleware(photobooth.middleware.ContentTypeValidationMiddleware)
    app.add_middleware(photobooth.middleware.RequestTimeoutMiddleware, request_timeout_seconds=30.0)
    app.add_middleware(photobooth.middleware.CorrelationIdMiddleware)

    app.include_router(photobooth.routes.generation_routes.generation_router)
    app.include_router(photobooth.routes.monitoring_routes.monitoring_router)
    app.include_router(photobooth.routes.background_routes.background_router)
    app.include_router(photobooth.routes.health_routes.health_router)

    app.state.kiosk_registry = kiosk_registry
    app.state.metrics_store = metrics_store
    app.state.admission_controller = admission_controller
    app.state.generation_queue = generation_queue
    app.state.generation_worker = fake_generation_worker
    app.state.background_catalog = background_catalog
    app.state.generation_queue_soft_limit = 10
    app.state.maximum_selfie_bytes = 1_000_000
    app.state.recent_sessions_limit = 20
    app.state.retry_after_busy_seconds = 15
    app.state.retry_after_not_ready_seconds = 10

    return app


@pytest_asyncio.fixture
async def client(test_app):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
