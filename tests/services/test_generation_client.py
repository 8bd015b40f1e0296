"""
Tests for photobooth/services/generation_client.py.

Requests are answered by an ``httpx.MockTransport`` so the real request
building, status handling and response decoding paths run end to end:
- Request shape: path, API key header, inline image parts, sampling config.
- Image extraction in both snake_case and camelCase response spellings.
- Responses without an image.
- Transport failures, non-success statuses, oversized and non-JSON bodies.
"""

import base64
import json

import httpx
import pytest

import photobooth.exceptions
import photobooth.services.generation_client

PERSON_IMAGE = photobooth.services.generation_client.ImagePayload(data=b"selfie-bytes", media_type="image/jpeg")
REFERENCE_IMAGE = photobooth.services.generation_client.ImagePayload(data=b"background-bytes")


def _image_response(image_bytes=b"generated-image", camel_case=False):
    inline_key, mime_key = ("inlineData", "mimeType") if camel_case else ("inline_data", "mime_type")
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "Here is your image."},
                        {inline_key: {mime_key: "image/png", "data": base64.b64encode(image_bytes).decode()}},
                    ],
                },
                "finishReason": "STOP",
            },
        ],
    }


def _make_client(handler, api_key="test-key", maximum_response_bytes=1_048_576):
    return photobooth.services.generation_client.GeminiImageGenerationClient(
        api_key=api_key,
        base_url="https://generation.test/v1beta",
        model="test-model",
        request_timeout_seconds=5.0,
        maximum_response_bytes=maximum_response_bytes,
        transport=httpx.MockTransport(handler),
    )


class TestGenerateImage:
    async def test_sends_prompt_and_both_images(self):
        captured_requests: list[httpx.Request] = []

        def handler(request):
            captured_requests.append(request)
            return httpx.Response(200, json=_image_response())

        client = _make_client(handler)
        await client.generate_image("Insert the runner.", PERSON_IMAGE, REFERENCE_IMAGE)
        await client.close()

        request = captured_requests[0]
        assert request.method == "POST"
        assert request.url.path == "/v1beta/models/test-model:generateContent"
        assert request.headers["x-goog-api-key"] == "test-key"

        body = json.loads(request.content)
        parts = body["contents"][0]["parts"]
        assert parts[0] == {"text": "Insert the runner."}
        assert parts[1]["inline_data"]["mime_type"] == "image/jpeg"
        assert base64.b64decode(parts[1]["inline_data"]["data"]) == b"selfie-bytes"
        assert base64.b64decode(parts[2]["inline_data"]["data"]) == b"background-bytes"
        assert body["generationConfig"] == {"temperature": 0.28, "topP": 0.9, "topK": 32}

    @pytest.mark.parametrize("camel_case", [False, True])
    async def test_returns_first_inline_image(self, camel_case):
        client = _make_client(lambda request: httpx.Response(200, json=_image_response(camel_case=camel_case)))

        generated_image = await client.generate_image("prompt", PERSON_IMAGE, REFERENCE_IMAGE)

        assert generated_image.data == b"generated-image"
        assert generated_image.media_type == "image/png"
        await client.close()

    async def test_text_only_response_returns_none(self):
        text_only_body = {"candidates": [{"content": {"parts": [{"text": "I cannot do that."}]}, "finishReason": "SAFETY"}]}
        client = _make_client(lambda request: httpx.Response(200, json=text_only_body))

        assert await client.generate_image("prompt", PERSON_IMAGE, REFERENCE_IMAGE) is None
        await client.close()

    async def test_missing_api_key_fails_without_calling_upstream(self):
        called = False

        def handler(request):
            nonlocal called
            called = True
            return httpx.Response(200, json=_image_response())

        client = _make_client(handler, api_key="")

        assert not client.is_configured()
        with pytest.raises(photobooth.exceptions.UpstreamGenerationError):
            await client.generate_image("prompt", PERSON_IMAGE, REFERENCE_IMAGE)
        assert not called
        await client.close()


class TestUpstreamFailures:
    @pytest.mark.parametrize(
        "transport_error",
        [
            httpx.ConnectError("Connection refused"),
            httpx.ReadTimeout("Timed out"),
            httpx.RemoteProtocolError("Server disconnected"),
        ],
    )
    async def test_transport_errors_become_upstream_errors(self, transport_error):
        def handler(request):
            raise transport_error

        client = _make_client(handler)

        with pytest.raises(photobooth.exceptions.UpstreamGenerationError) as raised:
            await client.generate_image("prompt", PERSON_IMAGE, REFERENCE_IMAGE)

        assert raised.value.__cause__ is transport_error
        await client.close()

    @pytest.mark.parametrize("status_code", [400, 401, 429, 500, 503])
    async def test_non_success_status_is_an_upstream_error(self, status_code):
        client = _make_client(lambda request: httpx.Response(status_code, json={"error": {"message": "no"}}))

        with pytest.raises(photobooth.exceptions.UpstreamGenerationError, match=str(status_code)):
            await client.generate_image("prompt", PERSON_IMAGE, REFERENCE_IMAGE)
        await client.close()

    async def test_oversized_response_is_rejected(self):
        client = _make_client(
            lambda request: httpx.Response(200, json=_image_response(b"x" * 2048)),
            maximum_response_bytes=512,
        )

        with pytest.raises(photobooth.exceptions.UpstreamGenerationError, match="exceeds"):
            await client.generate_image("prompt", PERSON_IMAGE, REFERENCE_IMAGE)
        await client.close()

    async def test_non_json_body_is_rejected(self):
        client = _make_client(lambda request: httpx.Response(200, content=b"<html>gateway</html>"))

        with pytest.raises(photobooth.exceptions.UpstreamGenerationError, match="not JSON"):
            await client.generate_image("prompt", PERSON_IMAGE, REFERENCE_IMAGE)
        await client.close()

    @pytest.mark.parametrize(
        "response_body",
        [
            ["not", "an", "object"],
            {"candidates": [{"content": {"parts": [{"inline_data": {"data": "***not-base64***"}}]}}]},
            {"candidates": ["unexpected"]},
        ],
    )
    async def test_unexpected_structure_is_rejected(self, response_body):
        client = _make_client(lambda request: httpx.Response(200, json=response_body))

        with pytest.raises(photobooth.exceptions.UpstreamGenerationError):
            await client.generate_image("prompt", PERSON_IMAGE, REFERENCE_IMAGE)
        await client.close()


class TestClientLifecycle:
    async def test_close_closes_the_http_client(self):
        client = _make_client(lambda request: httpx.Response(200, json={}))

        await client.close()

        assert client.http_client.is_closed
        assert client.model == "test-model"
