"""
Custom exception classes for the marathon photo booth service.

Every anticipated failure mode of a kiosk request maps to one class in
this module.  The centralised error-handling layer (``error_handling.py``)
turns each class into an HTTP status code and a consistent JSON error
body carrying a machine-readable error code.

Exception hierarchy
-------------------
::

    Exception (Python built-in)
    ├── SessionTransitionError (internal bookkeeping misuse)     → HTTP 500
    └── ServiceError (base class for all service exceptions)
        ├── KioskRateLimitedError                                → HTTP 429
        ├── UnknownKioskError                                    → HTTP 400
        ├── KioskNotFoundError                                   → HTTP 404
        ├── InvalidSelfieError                                   → HTTP 400
        ├── GenerationQueueFullError                             → HTTP 503
        ├── GenerationQueueClosedError                           → HTTP 503
        ├── GenerationTimeoutError                               → HTTP 504
        └── GenerationFailedError                                → HTTP 500
            ├── InvalidBackgroundSelectionError                  → HTTP 400
            ├── AssetReadError                                   → HTTP 500
            ├── OutputPersistenceError                           → HTTP 500
            └── UpstreamGenerationError                          → HTTP 502
                └── NoImageProducedError                         → HTTP 502

Rejections raised *before* a request reaches the generation queue
(rate limit, unknown kiosk, invalid selfie, queue full) never touch the
session ledger.  ``GenerationFailedError`` and its subclasses are raised
*inside* the generation worker, after the session record exists, and are
always recorded as a failed session before they reach the caller.
"""


class ServiceError(Exception):
    """
    Base exception for all service-level errors.

    Every service exception carries a ``detail`` attribute containing a
    human-readable description of the failure, safe for inclusion in API
    responses.  Subclasses override ``default_detail`` for the message
    used when no explicit detail is passed, ``error_code`` for the
    machine-readable code in the response body, and ``http_status_code``
    for the status the error-handling layer responds with.

    Attributes:
        detail: A human-readable description of the error.
    """

    default_detail: str = "A service error occurred."
    error_code: str = "service_error"
    http_status_code: int = 500

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class SessionTransitionError(Exception):
    """
    Raised when a session record is moved out of a terminal state.

    Session status only ever moves ``processing → completed | failed``.
    Hitting this error means a worker attempted to record a second
    outcome for the same session, which is a programming error and is
    deliberately not a ``ServiceError``.
    """


# ── Admission and capacity rejections ─────────────────────────────────────


class KioskRateLimitedError(ServiceError):
    """
    Raised when a kiosk has exhausted its admission budget for the
    current moving window.

    Mapped to HTTP 429 with ``rate_limit_exceeded`` and a ``Retry-After``
    header carrying ``retry_after_seconds``: the time until the oldest
    admission in the kiosk's window expires.
    """

    default_detail = "Too many generation requests from this kiosk. Please wait before trying again."
    error_code = "rate_limit_exceeded"
    http_status_code = 429

    def __init__(
        self,
        retry_after_seconds: int,
        kiosk_identifier: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.retry_after_seconds = retry_after_seconds
        self.kiosk_identifier = kiosk_identifier
        super().__init__(detail)


class UnknownKioskError(ServiceError):
    """
    Raised when a request names a kiosk outside the configured kiosk
    population.  Counters are pre-provisioned per known kiosk, so an
    unknown identifier is rejected rather than silently added.
    """

    default_detail = "The kiosk identifier is not registered with this service."
    error_code = "unknown_kiosk"
    http_status_code = 400


class KioskNotFoundError(ServiceError):
    """Raised by the kiosk status endpoint for an unregistered kiosk."""

    default_detail = "The requested kiosk does not exist."
    error_code = "kiosk_not_found"
    http_status_code = 404


class InvalidSelfieError(ServiceError):
    """
    Raised when the uploaded selfie is empty, too large, or not declared
    as an image.
    """

    default_detail = "The uploaded selfie is not a valid image."
    error_code = "invalid_selfie"
    http_status_code = 400


class GenerationQueueFullError(ServiceError):
    """
    Raised when the generation queue depth is above its soft ceiling.

    Mapped to HTTP 503 with ``service_busy``, a ``Retry-After`` header and
    the current queue depth in ``details`` so kiosks can back off in
    proportion to the backlog.
    """

    default_detail = "The photo booth is busy. Please try again in a moment."
    error_code = "service_busy"
    http_status_code = 503

    def __init__(self, queue_size: int, detail: str | None = None) -> None:
        self.queue_size = queue_size
        super().__init__(detail)


class GenerationQueueClosedError(ServiceError):
    """
    Raised for work submitted after the generation queue began shutting
    down, and delivered to callers whose queued or running work was
    abandoned at shutdown.
    """

    default_detail = "The photo booth is shutting down and cannot accept new work."
    error_code = "service_unavailable"
    http_status_code = 503


class GenerationTimeoutError(ServiceError):
    """
    Raised when the caller-facing wait for a generation result exceeds
    the kiosk's response timeout.  The queued work itself keeps running
    and records its own outcome.
    """

    default_detail = "Image generation is taking longer than expected. Please try again."
    error_code = "generation_timeout"
    http_status_code = 504


# ── Generation worker failures ────────────────────────────────────────────


class GenerationFailedError(ServiceError):
    """
    Base class for every terminal failure inside the generation worker.

    Unexpected exceptions escaping the worker's steps are wrapped in this
    class (chained with ``from``) so callers always receive a
    ``ServiceError`` with a human-readable message.
    """

    default_detail = "Image generation failed."
    error_code = "generation_failed"
    http_status_code = 500


class InvalidBackgroundSelectionError(GenerationFailedError):
    """Raised when the selected background is not in the catalog."""

    default_detail = "The selected background does not exist."
    error_code = "invalid_selection"
    http_status_code = 400


class AssetReadError(GenerationFailedError):
    """Raised when a background reference image cannot be read."""

    default_detail = "The background image could not be loaded."
    error_code = "asset_unavailable"
    http_status_code = 500


class OutputPersistenceError(GenerationFailedError):
    """Raised when the finished image cannot be written to the output sink."""

    default_detail = "The generated image could not be saved."
    error_code = "output_write_failed"
    http_status_code = 500


class UpstreamGenerationError(GenerationFailedError):
    """
    Raised when the external image generation API cannot be reached,
    times out, answers with a non-success status, or returns a body that
    cannot be interpreted.

    Common causes:
        - Missing or revoked API key (HTTP 401/403 from upstream).
        - Upstream quota exhaustion (HTTP 429 from upstream).
        - Network failure between the booth server and the API.
    """

    default_detail = "The image generation service is unavailable."
    error_code = "upstream_failure"
    http_status_code = 502


class NoImageProducedError(UpstreamGenerationError):
    """
    Raised when the external API answered successfully but its response
    carried no image.  Treated exactly like any other upstream failure.
    """

    default_detail = "The image generation service did not return an image."
