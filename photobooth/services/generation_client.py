"""
Client for the external multimodal image generation API (Gemini REST).

One call sends the composed prompt, the kiosk selfie and the background
reference image to ``POST {base_url}/models/{model}:generateContent`` and
returns the first inline image in the response, or ``None`` when the
response carries no image.

Failure mapping
---------------
Every way the call can fail is surfaced as ``UpstreamGenerationError``
(HTTP 502) with the httpx exception chained as its cause: connection
failures, timeouts, non-success status codes, oversized bodies and bodies
that are not the expected JSON.  The client never retries; each call may
consume upstream quota whatever its outcome, so retrying is left to the
kiosk user.
"""

import base64
import binascii
import dataclasses
import typing

import httpx
import structlog

import photobooth.exceptions

logger = structlog.get_logger()

DEFAULT_GENERATION_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GENERATION_MODEL = "gemini-2.5-flash-image-preview"


@dataclasses.dataclass(frozen=True)
class ImagePayload:
    """Raw image bytes together with their declared media type."""

    data: bytes
    media_type: str = "image/png"

    def __len__(self) -> int:
        return len(self.data)


def _inline_part(image: ImagePayload) -> dict[str, typing.Any]:
    return {
        "inline_data": {
            "mime_type": image.media_type,
            "data": base64.b64encode(image.data).decode("ascii"),
        },
    }


class GeminiImageGenerationClient:
    """
    Asynchronous HTTP client for the image generation API.

    Holds one pooled ``httpx.AsyncClient`` for the lifetime of the
    application; ``close`` must be called at shutdown.  Safe for
    concurrent use from multiple tasks.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_GENERATION_API_BASE_URL,
        model: str = DEFAULT_GENERATION_MODEL,
        request_timeout_seconds: float = 90.0,
        temperature: float = 0.28,
        top_p: float = 0.9,
        top_k: int = 32,
        connection_pool_size: int = 10,
        maximum_response_bytes: int = 33_554_432,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialise the client.

        Args:
            api_key: API key sent in the ``x-goog-api-key`` header.  An
                empty key leaves the client unconfigured: readiness
                reports it and every call fails as an upstream error.
            base_url: API root, without a trailing ``/models`` segment.
            model: Model name used in the request path.
            request_timeout_seconds: Per-request timeout for the upstream call.
            temperature: Sampling temperature; kept low so the subject's
                likeness stays consistent between attempts.
            top_p: Nucleus sampling threshold.
            top_k: Top-k sampling limit.
            connection_pool_size: Size of the httpx connection pool.
            maximum_response_bytes: Largest response body accepted.
            transport: Optional httpx transport, used by tests.
        """
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._top_p = top_p
        self._top_k = top_k
        self._maximum_response_bytes = maximum_response_bytes
        self.http_client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            timeout=httpx.Timeout(request_timeout_seconds),
            limits=httpx.Limits(
                max_connections=connection_pool_size,
                max_keepalive_connections=connection_pool_size,
            ),
            headers={"x-goog-api-key": api_key},
            transport=transport,
        )

    @property
    def model(self) -> str:
        return self._model

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _build_request_body(
        self,
        prompt: str,
        person_image: ImagePayload,
        reference_image: ImagePayload,
    ) -> dict[str, typing.Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        _inline_part(person_image),
                        _inline_part(reference_image),
                    ],
                },
            ],
            "generationConfig": {
                "temperature": self._temperature,
                "topP": self._top_p,
                "topK": self._top_k,
            },
        }

    async def generate_image(
        self,
        prompt: str,
        person_image: ImagePayload,
        reference_image: ImagePayload,
    ) -> ImagePayload | None:
        """
        Ask the API to place the person into the reference scene.

        Returns:
            The first inline image in the response, or ``None`` when the
            response contains no image part (for example when the model
            answered with text only or the prompt was blocked).

        Raises:
            UpstreamGenerationError: On any transport, status or decoding
                failure.
        """
        if not self.is_configured():
            raise photobooth.exceptions.UpstreamGenerationError(
                detail="The image generation service is not configured with an API key.",
            )

        logger.info(
            "upstream_generation_requested",
            model=self._model,
            prompt_length=len(prompt),
            person_image_bytes=len(person_image),
            reference_image_bytes=len(reference_image),
        )

        try:
            http_response = await self.http_client.post(
                f"models/{self._model}:generateContent",
                json=self._build_request_body(prompt, person_image, reference_image),
            )
            http_response.raise_for_status()
        except httpx.ConnectError as connection_error:
            logger.error("upstream_generation_connection_failed", error=str(connection_error))
            raise photobooth.exceptions.UpstreamGenerationError(
                detail="The image generation service is not reachable.",
            ) from connection_error
        except httpx.HTTPStatusError as http_status_error:
            logger.error(
                "upstream_generation_http_error",
                status_code=http_status_error.response.status_code,
            )
            raise photobooth.exceptions.UpstreamGenerationError(
                detail=f"The image generation service returned HTTP status {http_status_error.response.status_code}.",
            ) from http_status_error
        except httpx.TimeoutException as timeout_error:
            logger.error("upstream_generation_timeout", error=str(timeout_error))
            raise photobooth.exceptions.UpstreamGenerationError(
                detail="The request to the image generation service timed out.",
            ) from timeout_error
        except httpx.RequestError as request_error:
            logger.error(
                "upstream_generation_request_failed",
                error_type=type(request_error).__name__,
                error=str(request_error),
            )
            raise photobooth.exceptions.UpstreamGenerationError(
                detail=(
                    f"An unexpected communication error occurred with the image generation "
                    f"service: {type(request_error).__name__}."
                ),
            ) from request_error

        response_body_bytes = len(http_response.content)
        if response_body_bytes > self._maximum_response_bytes:
            logger.error(
                "upstream_generation_response_too_large",
                response_bytes=response_body_bytes,
                maximum_bytes=self._maximum_response_bytes,
            )
            raise photobooth.exceptions.UpstreamGenerationError(
                detail=(
                    f"The image generation response body ({response_body_bytes} bytes) "
                    f"exceeds the configured maximum ({self._maximum_response_bytes} bytes)."
                ),
            )

        try:
            response_body = http_response.json()
        except ValueError as decoding_error:
            logger.error("upstream_generation_response_not_json")
            raise photobooth.exceptions.UpstreamGenerationError(
                detail="The image generation service returned a response that is not JSON.",
            ) from decoding_error

        generated_image = self._extract_first_image(response_body)

        if generated_image is None:
            logger.warning(
                "upstream_generation_returned_no_image",
                finish_reasons=_collect_finish_reasons(response_body),
            )
        else:
            logger.info(
                "upstream_generation_completed",
                image_bytes=len(generated_image),
                media_type=generated_image.media_type,
            )
        return generated_image

    @staticmethod
    def _extract_first_image(response_body: typing.Any) -> ImagePayload | None:
        if not isinstance(response_body, dict):
            raise photobooth.exceptions.UpstreamGenerationError(
                detail="The image generation service returned an unexpected response structure.",
            )

        try:
            for candidate in response_body.get("candidates") or []:
                for part in (candidate.get("content") or {}).get("parts") or []:
                    inline_data = part.get("inline_data") or part.get("inlineData")
                    if not inline_data or not inline_data.get("data"):
                        continue
                    media_type = inline_data.get("mime_type") or inline_data.get("mimeType") or "image/png"
                    return ImagePayload(
                        data=base64.b64decode(inline_data["data"], validate=True),
                        media_type=media_type,
                    )
        except (AttributeError, TypeError, binascii.Error) as parsing_error:
            logger.error("upstream_generation_response_parsing_failed", error=str(parsing_error))
            raise photobooth.exceptions.UpstreamGenerationError(
                detail="The image generation service returned an unexpected response structure.",
            ) from parsing_error

        return None

    async def close(self) -> None:
        """Close the underlying HTTP client and release its connections."""
        await self.http_client.aclose()


def _collect_finish_reasons(response_body: dict[str, typing.Any]) -> list[str]:
    return [
        str(candidate.get("finishReason"))
        for candidate in response_body.get("candidates") or []
        if isinstance(candidate, dict) and candidate.get("finishReason")
    ]
