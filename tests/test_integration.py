"""
Integration tests for the server factory and full request flows.

These tests exercise ``create_application()`` with a real configuration
rooted in ``tmp_path`` and send HTTP requests through the entire
middleware → routing → admission → queue → worker → error handling
pipeline.  Only the network is replaced: the generation client is built
with an ``httpx.MockTransport`` answering like the Gemini REST API.

The lifespan context manager is invoked manually via
``app.router.lifespan_context`` because ``httpx.ASGITransport`` does not
send ASGI lifespan events.  The client patch must remain active for the
duration of the lifespan because the lifespan closure looks the class up
at runtime.
"""

import base64
import contextlib
import functools
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio

import configuration
import photobooth.server_factory
import photobooth.services.generation_client


class FakeGenerationApi:
    """Answers generateContent calls with a fixed image, or a fixed failure status."""

    def __init__(self, image_bytes: bytes) -> None:
        self.image_bytes = image_bytes
        self.failure_status_code: int | None = None
        self.received_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.received_requests.append(request)
        if self.failure_status_code is not None:
            return httpx.Response(self.failure_status_code, json={"error": {"message": "upstream said no"}})
        encoded_image = base64.b64encode(self.image_bytes).decode()
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": encoded_image}}]}}]},
        )


@contextlib.contextmanager
def _patched_generation_client(fake_generation_api):
    real_client_class = photobooth.services.generation_client.GeminiImageGenerationClient
    with patch.object(
        photobooth.services.generation_client,
        "GeminiImageGenerationClient",
        side_effect=functools.partial(real_client_class, transport=httpx.MockTransport(fake_generation_api)),
    ):
        yield


@pytest.fixture
def application_directories(tmp_path, png_bytes):
    backgrounds_directory = tmp_path / "backgrounds"
    backgrounds_directory.mkdir()
    (backgrounds_directory / "Amsterdam750-GoldenAge1.png").write_bytes(png_bytes)
    return {"backgrounds": backgrounds_directory, "outputs": tmp_path / "outputs"}


@pytest.fixture
def application_configuration(application_directories):
    return configuration.ApplicationConfiguration(
        _env_file=None,
        kiosk_identifiers=["kiosk-1", "kiosk-2", "kiosk-3", "kiosk-4"],
        priority_kiosk_identifier="kiosk-3",
        generation_api_key="test-key",
        generation_api_base_url="https://generation.test/v1beta",
        backgrounds_directory=str(application_directories["backgrounds"]),
        outputs_directory=str(application_directories["outputs"]),
        overlay_path=None,
        generation_shutdown_drain_seconds=0.0,
    )


@pytest.fixture
def fake_generation_api(image_bytes_factory):
    return FakeGenerationApi(image_bytes_factory(size=(12, 12), color=(0, 200, 0, 255)))


@pytest_asyncio.fixture
async def integration_app(application_configuration, fake_generation_api):
    with _patched_generation_client(fake_generation_api):
        app = photobooth.server_factory.create_application(application_configuration)
        async with app.router.lifespan_context(app):
            yield app


@pytest_asyncio.fixture
async def integration_client(integration_app):
    transport = httpx.ASGITransport(app=integration_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


async def _post_generate(client, png_bytes, kiosk_identifier="kiosk-1", background_identifier="amsterdam750-goldenage"):
    return await client.post(
        "/api/generate",
        data={"backgroundId": background_identifier, "gender": "female"},
        files={"selfie": ("selfie.png", png_bytes, "image/png")},
        headers={"X-Kiosk-ID": kiosk_identifier},
    )


class TestLifespan:
    async def test_services_are_available_on_app_state(self, integration_app):
        state = integration_app.state

        assert state.kiosk_registry.priority_kiosk_identifier == "kiosk-3"
        assert set(state.metrics_store.kiosk_identifiers) == {"kiosk-1", "kiosk-2", "kiosk-3", "kiosk-4"}
        assert state.generation_queue.maximum_concurrency == 2
        assert all(job.is_running for job in state.housekeeping_jobs)

    async def test_shutdown_stops_jobs_and_closes_the_queue(self, application_configuration, fake_generation_api):
        with _patched_generation_client(fake_generation_api):
            app = photobooth.server_factory.create_application(application_configuration)
            async with app.router.lifespan_context(app):
                jobs = app.state.housekeeping_jobs

        assert not any(job.is_running for job in jobs)
        assert app.state.generation_queue.is_closed
        assert app.state.generation_client.http_client.is_closed


class TestGenerationFlow:
    async def test_generated_image_is_persisted_and_served(self, integration_client, fake_generation_api, png_bytes):
        response = await _post_generate(integration_client, png_bytes)

        assert response.status_code == 200
        image_url = response.json()["image_url"]
        assert image_url.startswith("/outputs/marathon_kiosk-1_")

        served_image = await integration_client.get(image_url)
        assert served_image.status_code == 200
        assert served_image.content == fake_generation_api.image_bytes

        upstream_request = fake_generation_api.received_requests[0]
        assert upstream_request.url.path.endswith(":generateContent")
        assert upstream_request.headers["x-goog-api-key"] == "test-key"

    async def test_monitor_reflects_the_completed_session(self, integration_client, png_bytes):
        await _post_generate(integration_client, png_bytes)

        monitor = (await integration_client.get("/api/monitor")).json()

        assert monitor["kiosks"]["kiosk-1"]["completed"] == 1
        assert monitor["recent_sessions"][0]["status"] == "completed"
        assert monitor["recent_sessions"][0]["background"] == "amsterdam750-goldenage"

    async def test_upstream_failure_is_a_bad_gateway_and_a_failed_session(
        self, integration_client, fake_generation_api, png_bytes
    ):
        fake_generation_api.failure_status_code = 503

        response = await _post_generate(integration_client, png_bytes)

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "upstream_failure"
        kiosk_status = (await integration_client.get("/api/kiosk/kiosk-1/status")).json()
        assert (kiosk_status["total"], kiosk_status["failed"], kiosk_status["in_flight"]) == (1, 1, 0)

    async def test_unknown_background_is_reported_without_calling_upstream(
        self, integration_client, fake_generation_api, png_bytes
    ):
        response = await _post_generate(integration_client, png_bytes, background_identifier="moon-base")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_selection"
        assert fake_generation_api.received_requests == []

    async def test_missing_background_file_is_an_asset_error(self, integration_client, png_bytes):
        response = await _post_generate(integration_client, png_bytes, background_identifier="vondelpark")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "asset_unavailable"

    async def test_sixth_request_from_one_kiosk_is_rate_limited(self, integration_client, png_bytes):
        for _ in range(5):
            assert (await _post_generate(integration_client, png_bytes)).status_code == 200

        response = await _post_generate(integration_client, png_bytes)

        assert response.status_code == 429
        assert "retry-after" in response.headers


class TestOperationalEndpoints:
    async def test_readiness_is_ready_with_complete_configuration(self, integration_client):
        response = await integration_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_background_thumbnails_are_served(self, integration_client, png_bytes):
        thumbnail = await integration_client.get("/backgrounds/Amsterdam750-GoldenAge1.png")

        assert thumbnail.status_code == 200
        assert thumbnail.content == png_bytes

    async def test_unknown_route_is_a_structured_404(self, integration_client):
        response = await integration_client.get("/api/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    async def test_openapi_schema_documents_the_error_contract(self, integration_client):
        schema = (await integration_client.get("/openapi.json")).json()

        generate_responses = schema["paths"]["/api/generate"]["post"]["responses"]
        assert "422" not in generate_responses
        assert {"400", "429", "503", "504", "404", "405", "500"} <= set(generate_responses)
        assert "HTTPValidationError" not in schema["components"]["schemas"]


class TestOverlayAsset:
    async def test_configured_overlay_is_served_read_only(self, application_configuration, tmp_path, png_bytes):
        overlay_directory = tmp_path / "overlays"
        overlay_directory.mkdir()
        (overlay_directory / "amsterdam-marathon-2025.png").write_bytes(png_bytes)
        overlay_configuration = application_configuration.model_copy(
            update={"overlay_path": str(overlay_directory / "amsterdam-marathon-2025.png")},
        )
        app = photobooth.server_factory.create_application(overlay_configuration)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            overlay = await client.get("/overlays/amsterdam-marathon-2025.png")
            upload = await client.post(
                "/overlays/amsterdam-marathon-2025.png",
                files={"file": ("x.png", png_bytes, "image/png")},
            )

        assert overlay.status_code == 200
        assert overlay.content == png_bytes
        assert upload.status_code == 405

    async def test_overlays_are_not_mounted_without_an_overlay(self, integration_client):
        response = await integration_client.get("/overlays/amsterdam-marathon-2025.png")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
