"""
Branding overlay post-processing.

The booth stamps every generated image with an event overlay: a
transparent PNG that is resized to the generated image's dimensions and
alpha-composited over it.  Branding is cosmetic, so this step never fails
a generation attempt.  A missing overlay file, an undecodable image or any
other Pillow error hands back the unprocessed image.
"""

import asyncio
import io
import pathlib

import PIL.Image
import structlog

import photobooth.services.generation_client

logger = structlog.get_logger()


class OverlayCompositor:
    """
    Composites the configured overlay over generated images.

    Args:
        overlay_path: Path of the overlay image, or ``None`` to disable
            compositing entirely.
    """

    def __init__(self, overlay_path: pathlib.Path | str | None) -> None:
        self._overlay_path = pathlib.Path(overlay_path) if overlay_path else None

    @property
    def overlay_path(self) -> pathlib.Path | None:
        return self._overlay_path

    def is_overlay_available(self) -> bool:
        return self._overlay_path is not None and self._overlay_path.is_file()

    async def apply(
        self,
        generated_image: photobooth.services.generation_client.ImagePayload,
    ) -> photobooth.services.generation_client.ImagePayload:
        """
        Return the generated image with the overlay composited on top.

        Decoding and encoding run in a worker thread.  The result is always
        PNG when compositing succeeds; otherwise the input is returned
        unchanged.
        """
        if not self.is_overlay_available():
            logger.warning("overlay_asset_missing", overlay_path=str(self._overlay_path))
            return generated_image

        try:
            composited_bytes = await asyncio.to_thread(self._composite, generated_image.data)
        except Exception as compositing_error:
            logger.error(
                "overlay_compositing_failed",
                error_type=type(compositing_error).__name__,
                error=str(compositing_error),
            )
            return generated_image

        logger.info("overlay_applied", image_bytes=len(composited_bytes))
        return photobooth.services.generation_client.ImagePayload(data=composited_bytes, media_type="image/png")

    def _composite(self, image_bytes: bytes) -> bytes:
        with PIL.Image.open(io.BytesIO(image_bytes)) as source_image:
            base_image = source_image.convert("RGBA")
        with PIL.Image.open(self._overlay_path) as overlay_source:
            overlay_image = overlay_source.convert("RGBA").resize(base_image.size, PIL.Image.Resampling.LANCZOS)

        composited_image = PIL.Image.alpha_composite(base_image, overlay_image)

        output_buffer = io.BytesIO()
        composited_image.save(output_buffer, format="PNG")
        return output_buffer.getvalue()
