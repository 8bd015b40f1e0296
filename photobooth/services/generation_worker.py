"""
The unit of work executed by the generation queue.

``GenerationWorker.run`` performs one complete generation attempt for one
session:

1. Resolve the background selection (``InvalidBackgroundSelectionError``).
2. Load the background reference image (``AssetReadError``).
3. Compose the prompt and call the external generation API
   (``UpstreamGenerationError``); a response without an image is
   ``NoImageProducedError``.
4. Composite the branding overlay, degrading to the unprocessed image.
5. Persist the result under a per-attempt unique name
   (``OutputPersistenceError``) and report its public reference.

Every step is terminal on failure and nothing is retried here.

Bookkeeping runs inside ``KioskMetricsStore.track_session``: the session
opens (and the kiosk's ``total`` rises) when the worker starts, and it is
closed exactly once on every exit path, success, exception or
cancellation alike.  Exceptions that are not already ``ServiceError``
instances are wrapped in ``GenerationFailedError`` so the caller awaiting
the queue handle always gets a human-readable failure.
"""

import dataclasses
import re
import time

import structlog

import photobooth.exceptions
import photobooth.metrics
import photobooth.services.background_catalog
import photobooth.services.generation_client
import photobooth.services.output_storage
import photobooth.services.overlay_compositor
import photobooth.services.prompt_builder

logger = structlog.get_logger()

_FILE_EXTENSIONS_BY_MEDIA_TYPE: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}
_UNSAFE_NAME_CHARACTERS = re.compile(r"[^A-Za-z0-9_-]")


@dataclasses.dataclass(frozen=True)
class GenerationRequest:
    """Everything one kiosk submitted for a single generation attempt."""

    kiosk_identifier: str
    background_identifier: str
    demographic_attribute: str
    selfie: photobooth.services.generation_client.ImagePayload
    prominence: str = photobooth.services.prompt_builder.DEFAULT_PROMINENCE
    priority: int = 0


@dataclasses.dataclass(frozen=True)
class GenerationOutcome:
    session_identifier: str
    kiosk_identifier: str
    output_reference: str
    processing_time_milliseconds: int


def build_output_name(kiosk_identifier: str, session_identifier: str, media_type: str, epoch_milliseconds: int) -> str:
    """
    Return ``marathon_<kiosk>_<epoch ms>_<session>.<ext>``.

    The session identifier makes the name unique per attempt; the kiosk
    identifier and timestamp make stray files traceable.
    """
    extension = _FILE_EXTENSIONS_BY_MEDIA_TYPE.get(media_type, "png")
    safe_kiosk_identifier = _UNSAFE_NAME_CHARACTERS.sub("_", kiosk_identifier)
    safe_session_identifier = _UNSAFE_NAME_CHARACTERS.sub("_", session_identifier)
    return f"marathon_{safe_kiosk_identifier}_{epoch_milliseconds}_{safe_session_identifier}.{extension}"


class GenerationWorker:
    """
    Orchestrates one generation attempt per call to ``run``.

    The worker holds no per-attempt state; one instance serves every
    task the queue dispatches.
    """

    def __init__(
        self,
        background_catalog: photobooth.services.background_catalog.BackgroundCatalog,
        generation_client: photobooth.services.generation_client.GeminiImageGenerationClient,
        overlay_compositor: photobooth.services.overlay_compositor.OverlayCompositor,
        output_sink: photobooth.services.output_storage.OutputSink,
        metrics_store: photobooth.metrics.KioskMetricsStore,
    ) -> None:
        self._background_catalog = background_catalog
        self._generation_client = generation_client
        self._overlay_compositor = overlay_compositor
        self._output_sink = output_sink
        self._metrics_store = metrics_store

    async def run(
        self,
        generation_request: GenerationRequest,
        session_identifier: str,
    ) -> GenerationOutcome:
        """
        Execute the attempt and record its outcome.

        Raises:
            GenerationFailedError: Or one of its subclasses, after the
                session has been recorded as failed.
        """
        started_at = time.monotonic()
        session_logger = logger.bind(
            session_identifier=session_identifier,
            kiosk_identifier=generation_request.kiosk_identifier,
            background_identifier=generation_request.background_identifier,
        )

        with self._metrics_store.track_session(
            session_identifier=session_identifier,
            kiosk_identifier=generation_request.kiosk_identifier,
            background_identifier=generation_request.background_identifier,
            demographic_attribute=generation_request.demographic_attribute,
            priority=generation_request.priority,
            prominence=generation_request.prominence,
        ) as session:
            session_logger.info("generation_session_started", priority=generation_request.priority)
            try:
                output_reference = await self._produce_output(generation_request, session_identifier)
            except photobooth.exceptions.ServiceError as service_error:
                session_logger.warning(
                    "generation_session_failed",
                    error_code=service_error.error_code,
                    detail=service_error.detail,
                )
                raise
            except Exception as unexpected_error:
                session_logger.exception("generation_session_failed_unexpectedly")
                raise photobooth.exceptions.GenerationFailedError(
                    detail=f"Image generation failed unexpectedly ({type(unexpected_error).__name__}).",
                ) from unexpected_error

            self._metrics_store.complete_session(session, output_reference)

        processing_time_milliseconds = round((time.monotonic() - started_at) * 1000)
        session_logger.info(
            "generation_session_completed",
            output_reference=output_reference,
            processing_time_milliseconds=processing_time_milliseconds,
        )
        return GenerationOutcome(
            session_identifier=session_identifier,
            kiosk_identifier=generation_request.kiosk_identifier,
            output_reference=output_reference,
            processing_time_milliseconds=processing_time_milliseconds,
        )

    async def _produce_output(self, generation_request: GenerationRequest, session_identifier: str) -> str:
        background = self._background_catalog.resolve(generation_request.background_identifier)
        reference_image_bytes = await self._background_catalog.load_asset(background)

        prompt = photobooth.services.prompt_builder.compose_generation_prompt(
            demographic_attribute=generation_request.demographic_attribute,
            background=background,
            prominence=generation_request.prominence,
        )

        generated_image = await self._generation_client.generate_image(
            prompt=prompt,
            person_image=generation_request.selfie,
            reference_image=photobooth.services.generation_client.ImagePayload(
                data=reference_image_bytes,
                media_type=background.media_type,
            ),
        )
        if generated_image is None or not generated_image.data:
            raise photobooth.exceptions.NoImageProducedError()

        final_image = await self._overlay_compositor.apply(generated_image)

        output_name = build_output_name(
            kiosk_identifier=generation_request.kiosk_identifier,
            session_identifier=session_identifier,
            media_type=final_image.media_type,
            epoch_milliseconds=time.time_ns() // 1_000_000,
        )
        return await self._output_sink.write(final_image.data, output_name, final_image.media_type)
