"""
Pydantic models for response serialisation and the error contract.

Generate requests arrive as multipart form data, so their fields are
declared directly on the route with ``fastapi.Form``/``fastapi.File``;
this module holds the JSON shapes the service sends back.  Response field
names are snake_case throughout.
"""

import typing

import pydantic

# ──────────────────────────────────────────────────────────────────────────────
#  Generation
# ──────────────────────────────────────────────────────────────────────────────

Prominence = typing.Literal["low", "medium", "high"]


class GenerationResponse(pydantic.BaseModel):
    """Response body for a successful ``POST /api/generate``."""

    success: bool = pydantic.Field(default=True)

    image_url: str = pydantic.Field(
        ...,
        description="Public reference of the finished image.",
        examples=["/outputs/marathon_kiosk-1_1760790000000_3f2a9c1e.png"],
    )

    message: str = pydantic.Field(default="Your marathon photo is ready.")

    session_id: str = pydantic.Field(..., description="Identifier of the generation session.")

    kiosk_id: str = pydantic.Field(..., description="Kiosk the request was submitted from.")

    queue_size: int = pydantic.Field(
        ...,
        ge=0,
        description="Number of tasks waiting in the generation queue when the response was built.",
    )

    processing_time_milliseconds: int = pydantic.Field(
        ...,
        ge=0,
        description="Time from the request's arrival to its result, in milliseconds.",
    )


# ──────────────────────────────────────────────────────────────────────────────
#  Monitoring
# ──────────────────────────────────────────────────────────────────────────────


class KioskCountersModel(pydantic.BaseModel):
    """One kiosk's lifetime counters; ``last_active`` is ISO 8601 or null."""

    total: int
    completed: int
    failed: int
    rejected: int
    in_flight: int
    last_active: str | None = None


class SessionSummaryModel(pydantic.BaseModel):
    """Compact view of one ledger session for the monitoring endpoint."""

    id: str = pydantic.Field(..., description="First eight characters of the session identifier.")
    kiosk_id: str
    status: str
    background: str
    priority: int
    created_at: str
    duration_milliseconds: int | None = None
    error: str | None = None


class MemoryUsageModel(pydantic.BaseModel):
    """Process memory as reported by the operating system, in bytes."""

    resident_set_size_bytes: int
    virtual_memory_size_bytes: int


class MonitorResponse(pydantic.BaseModel):
    """Operator view of the whole booth, computed at request time."""

    kiosks: dict[str, KioskCountersModel]
    queue_size: int
    queue_pending: int
    total_sessions: int
    recent_sessions: list[SessionSummaryModel]
    server_uptime_seconds: float
    memory_usage: MemoryUsageModel
    timestamp: str


class KioskStatusResponse(KioskCountersModel):
    """Counters for one kiosk plus the queue position it would join at."""

    kiosk_id: str
    queue_position: int
    server_status: typing.Literal["online"] = "online"


# ──────────────────────────────────────────────────────────────────────────────
#  Backgrounds
# ──────────────────────────────────────────────────────────────────────────────


class BackgroundEntryModel(pydantic.BaseModel):
    """One selectable background; ``thumbnail`` is a public URL path."""

    id: str
    name: str
    description: str
    thumbnail: str


class BackgroundCategoryModel(pydantic.BaseModel):
    """A named group of backgrounds, in catalog order."""

    name: str
    backgrounds: list[BackgroundEntryModel]


# ──────────────────────────────────────────────────────────────────────────────
#  Error Models
# ──────────────────────────────────────────────────────────────────────────────


class ErrorDetail(pydantic.BaseModel):
    """
    Detailed error information nested inside the error response.

    The ``details`` field can be:
    - An object with structured context (for example ``queue_size`` on
      ``service_busy``)
    - An array of validation error objects (for request_validation_failed)
    - Omitted when no additional context is available
    """

    code: str = pydantic.Field(
        ...,
        description="A machine-readable error code in snake_case format.",
    )

    message: str = pydantic.Field(
        ...,
        description="A human-readable error description safe for display on the kiosk.",
    )

    details: dict | list | None = pydantic.Field(
        default=None,
        description="Additional structured context about the error, when available.",
    )

    correlation_id: str = pydantic.Field(
        ...,
        description="UUID v4 correlation identifier matching the X-Correlation-ID response header.",
    )


class ErrorResponse(pydantic.BaseModel):
    """Standardised error response returned for all error conditions."""

    error: ErrorDetail = pydantic.Field(
        ...,
        description="An object containing error details.",
    )
