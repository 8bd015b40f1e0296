"""
FastAPI application factory.

``create_application`` builds a fully wired FastAPI instance.  Shared
collaborators are constructed in the lifespan, stored on ``app.state``
and torn down in reverse order on shutdown.  Using a factory rather than
a module-level global lets tests build isolated applications with their
own configuration.
"""

import collections.abc
import contextlib
import copy
import os

import fastapi
import fastapi.middleware.cors
import fastapi.openapi.utils
import fastapi.staticfiles
import structlog

import configuration
import photobooth.error_handling
import photobooth.housekeeping
import photobooth.kiosk_admission
import photobooth.kiosks
import photobooth.logging_config
import photobooth.metrics
import photobooth.middleware
import photobooth.routes.background_routes
import photobooth.routes.generation_routes
import photobooth.routes.health_routes
import photobooth.routes.monitoring_routes
import photobooth.scheduling
import photobooth.services.background_catalog
import photobooth.services.generation_client
import photobooth.services.generation_worker
import photobooth.services.output_storage
import photobooth.services.overlay_compositor

logger = structlog.get_logger()


def build_kiosk_registry(
    application_configuration: configuration.ApplicationConfiguration,
) -> photobooth.kiosks.KioskRegistry:
    return photobooth.kiosks.KioskRegistry(
        kiosk_identifiers=tuple(application_configuration.kiosk_identifiers),
        priority_kiosk_identifier=application_configuration.priority_kiosk_identifier,
        default_priority=application_configuration.default_kiosk_priority,
        elevated_priority=application_configuration.priority_kiosk_priority,
        default_response_timeout_seconds=application_configuration.kiosk_response_timeout_seconds,
        priority_response_timeout_seconds=application_configuration.priority_kiosk_response_timeout_seconds,
        bypass_kiosk_identifier=application_configuration.admission_bypass_kiosk_identifier,
    )


def create_application(
    application_configuration: configuration.ApplicationConfiguration | None = None,
) -> fastapi.FastAPI:
    """
    Create and fully configure the FastAPI application.

    Args:
        application_configuration: Configuration to use.  Read from the
            environment when omitted.
    """
    if application_configuration is None:
        application_configuration = configuration.ApplicationConfiguration()
    photobooth.logging_config.configure_logging(log_level=application_configuration.log_level)

    in_flight_request_counter = photobooth.middleware.InFlightRequestCounter()

    @contextlib.asynccontextmanager
    async def application_lifespan(
        fastapi_application: fastapi.FastAPI,
    ) -> collections.abc.AsyncIterator[None]:
        kiosk_registry = build_kiosk_registry(application_configuration)
        metrics_store = photobooth.metrics.KioskMetricsStore(
            kiosk_identifiers=kiosk_registry.provisioned_identifiers,
            maximum_sessions=application_configuration.maximum_ledger_sessions,
        )
        admission_controller = photobooth.kiosk_admission.KioskAdmissionController(
            window_seconds=application_configuration.admission_window_seconds,
            maximum_requests_per_window=application_configuration.admission_maximum_requests_per_window,
            bypass_kiosk_identifier=application_configuration.admission_bypass_kiosk_identifier,
        )
        generation_queue = photobooth.scheduling.PriorityWorkQueue(
            maximum_concurrency=application_configuration.generation_maximum_concurrency,
            dispatch_window_seconds=application_configuration.generation_dispatch_window_seconds,
            maximum_dispatches_per_window=application_configuration.generation_maximum_dispatches_per_window,
        )

        background_catalog = photobooth.services.background_catalog.BackgroundCatalog(
            assets_directory=application_configuration.backgrounds_directory,
        )
        generation_client = photobooth.services.generation_client.GeminiImageGenerationClient(
            api_key=application_configuration.generation_api_key,
            base_url=application_configuration.generation_api_base_url,
            model=application_configuration.generation_model,
            request_timeout_seconds=application_configuration.timeout_for_generation_requests_in_seconds,
            temperature=application_configuration.generation_temperature,
            top_p=application_configuration.generation_top_p,
            top_k=application_configuration.generation_top_k,
            connection_pool_size=application_configuration.generation_connection_pool_size,
            maximum_response_bytes=application_configuration.generation_maximum_response_bytes,
        )
        overlay_compositor = photobooth.services.overlay_compositor.OverlayCompositor(
            overlay_path=application_configuration.overlay_path,
        )
        output_sink = photobooth.services.output_storage.FilesystemOutputSink(
            directory=application_configuration.outputs_directory,
            public_url_prefix=application_configuration.outputs_public_url_prefix,
        )
        try:
            output_sink.ensure_directory()
        except OSError as directory_error:
            # Readiness reports output_storage as unavailable until fixed.
            logger.critical(
                "output_directory_unavailable",
                outputs_directory=application_configuration.outputs_directory,
                error=str(directory_error),
            )

        if not generation_client.is_configured():
            logger.critical("generation_api_key_missing")
        if not background_catalog.check_health():
            logger.critical(
                "background_assets_directory_missing",
                backgrounds_directory=application_configuration.backgrounds_directory,
            )
        if not overlay_compositor.is_overlay_available():
            logger.warning("overlay_asset_missing", overlay_path=application_configuration.overlay_path)

        generation_worker = photobooth.services.generation_worker.GenerationWorker(
            background_catalog=background_catalog,
            generation_client=generation_client,
            overlay_compositor=overlay_compositor,
            output_sink=output_sink,
            metrics_store=metrics_store,
        )

        housekeeping_jobs = [
            photobooth.housekeeping.PeriodicJob(
                name="session_sweep",
                interval_seconds=application_configuration.session_sweep_interval_seconds,
                action=photobooth.housekeeping.build_session_sweep_action(
                    metrics_store,
                    application_configuration.session_retention_seconds,
                ),
            ),
            photobooth.housekeeping.PeriodicJob(
                name="output_sweep",
                interval_seconds=application_configuration.output_sweep_interval_seconds,
                action=photobooth.housekeeping.build_output_sweep_action(
                    output_sink,
                    application_configuration.output_retention_seconds,
                ),
            ),
        ]
        for housekeeping_job in housekeeping_jobs:
            housekeeping_job.start()

        fastapi_application.state.kiosk_registry = kiosk_registry
        fastapi_application.state.metrics_store = metrics_store
        fastapi_application.state.admission_controller = admission_controller
        fastapi_application.state.generation_queue = generation_queue
        fastapi_application.state.background_catalog = background_catalog
        fastapi_application.state.generation_client = generation_client
        fastapi_application.state.overlay_compositor = overlay_compositor
        fastapi_application.state.output_sink = output_sink
        fastapi_application.state.generation_worker = generation_worker
        fastapi_application.state.housekeeping_jobs = housekeeping_jobs
        fastapi_application.state.generation_queue_soft_limit = application_configuration.generation_queue_soft_limit
        fastapi_application.state.maximum_selfie_bytes = application_configuration.maximum_selfie_bytes
        fastapi_application.state.recent_sessions_limit = application_configuration.recent_sessions_limit
        fastapi_application.state.retry_after_busy_seconds = application_configuration.retry_after_busy_seconds
        fastapi_application.state.retry_after_not_ready_seconds = (
            application_configuration.retry_after_not_ready_seconds
        )

        logger.info(
            "services_initialised",
            kiosks=list(kiosk_registry.kiosk_identifiers),
            priority_kiosk=kiosk_registry.priority_kiosk_identifier,
            generation_model=generation_client.model,
            generation_maximum_concurrency=application_configuration.generation_maximum_concurrency,
            generation_maximum_dispatches_per_window=(
                application_configuration.generation_maximum_dispatches_per_window
            ),
        )

        yield

        logger.info(
            "graceful_shutdown_initiated",
            in_flight_requests=in_flight_request_counter.count,
            queue_size=generation_queue.size,
            running_tasks=generation_queue.pending,
        )

        for housekeeping_job in housekeeping_jobs:
            await housekeeping_job.stop()
        await generation_queue.shutdown(
            drain_timeout_seconds=application_configuration.generation_shutdown_drain_seconds,
        )
        await generation_client.close()
        logger.info("services_shutdown_complete")

    fastapi_application = fastapi.FastAPI(
        title="Marathon Photo Booth",
        description=(
            "Kiosk backend that turns a visitor's selfie into a themed "
            "marathon photo. Requests are admitted per kiosk, queued by "
            "priority and dispatched to the image generation API at a "
            "bounded rate."
        ),
        version="1.0.0",
        lifespan=application_lifespan,
    )

    photobooth.error_handling.register_error_handlers(fastapi_application)

    if application_configuration.cors_allowed_origins:
        fastapi_application.add_middleware(
            fastapi.middleware.cors.CORSMiddleware,
            allow_origins=application_configuration.cors_allowed_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Accept", "X-Kiosk-ID"],
            expose_headers=["Retry-After", "X-Correlation-ID"],
        )

    # Last added is outermost:
    #   Request → CorrelationId → RequestTimeout → ContentType → PayloadSizeLimit → CORS → App
    fastapi_application.add_middleware(
        photobooth.middleware.RequestPayloadSizeLimitMiddleware,
        maximum_request_payload_bytes=application_configuration.maximum_request_payload_bytes,
    )
    fastapi_application.add_middleware(photobooth.middleware.ContentTypeValidationMiddleware)
    fastapi_application.add_middleware(
        photobooth.middleware.RequestTimeoutMiddleware,
        request_timeout_seconds=application_configuration.timeout_for_requests_in_seconds,
    )
    fastapi_application.add_middleware(
        photobooth.middleware.CorrelationIdMiddleware,
        in_flight_request_counter=in_flight_request_counter,
    )

    fastapi_application.include_router(photobooth.routes.generation_routes.generation_router)
    fastapi_application.include_router(photobooth.routes.background_routes.background_router)
    fastapi_application.include_router(photobooth.routes.monitoring_routes.monitoring_router)
    fastapi_application.include_router(photobooth.routes.health_routes.health_router)

    fastapi_application.mount(
        application_configuration.outputs_public_url_prefix,
        fastapi.staticfiles.StaticFiles(directory=application_configuration.outputs_directory, check_dir=False),
        name="outputs",
    )
    fastapi_application.mount(
        "/backgrounds",
        fastapi.staticfiles.StaticFiles(directory=application_configuration.backgrounds_directory, check_dir=False),
        name="backgrounds",
    )
    overlay_directory = os.path.dirname(application_configuration.overlay_path or "")
    # A bare file name would otherwise expose the working directory.
    if overlay_directory:
        fastapi_application.mount(
            "/overlays",
            fastapi.staticfiles.StaticFiles(directory=overlay_directory, check_dir=False),
            name="overlays",
        )

    _customise_openapi_schema(fastapi_application)

    return fastapi_application


def _customise_openapi_schema(fastapi_application: fastapi.FastAPI) -> None:
    """
    Replace ``openapi()`` with a version that matches the live error contract.

    Validation failures are answered with 400 ``ErrorResponse`` bodies, so
    the generated 422 entries and their ``HTTPValidationError`` schemas are
    removed.  Errors that any endpoint can produce (404, 405, 500) are
    documented on every operation.
    """
    error_response_content = {
        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/ErrorResponse"}}},
    }
    global_error_responses = {
        "404": {**error_response_content, "description": "Not Found (``not_found``)."},
        "405": {
            **error_response_content,
            "description": "Method Not Allowed (``method_not_allowed``). The ``Allow`` header lists permitted methods.",
        },
        "500": {**error_response_content, "description": "Internal Server Error (``internal_server_error``)."},
    }

    def customised_openapi() -> dict:
        if fastapi_application.openapi_schema:
            return fastapi_application.openapi_schema

        openapi_schema = fastapi.openapi.utils.get_openapi(
            title=fastapi_application.title,
            version=fastapi_application.version,
            description=fastapi_application.description,
            routes=fastapi_application.routes,
        )

        for path_item in openapi_schema.get("paths", {}).values():
            for operation in path_item.values():
                if not isinstance(operation, dict) or "responses" not in operation:
                    continue
                operation["responses"].pop("422", None)
                for status_code, response_schema in global_error_responses.items():
                    operation["responses"].setdefault(status_code, copy.deepcopy(response_schema))

        component_schemas = openapi_schema.setdefault("components", {}).setdefault("schemas", {})
        component_schemas.pop("HTTPValidationError", None)
        component_schemas.pop("ValidationError", None)

        fastapi_application.openapi_schema = openapi_schema
        return openapi_schema

    fastapi_application.openapi = customised_openapi  # type: ignore[method-assign]
