"""
Application configuration module.

Loads all configuration values from environment variables with the prefix
PHOTOBOOTH_. Default values are provided for local development. A .env
file is also supported via pydantic-settings.

This module is the single source of truth for all runtime configuration
within the service process.
"""

import pydantic
import pydantic_settings


class ApplicationConfiguration(pydantic_settings.BaseSettings):
    """
    Centralised configuration for the marathon photo booth service.

    Every field maps to an environment variable prefixed with PHOTOBOOTH_.
    For example, the field ``generation_api_key`` is populated from the
    environment variable PHOTOBOOTH_GENERATION_API_KEY.  List fields are
    given as JSON, e.g. ``PHOTOBOOTH_KIOSK_IDENTIFIERS='["kiosk-1","kiosk-2"]'``.

    Configuration categories
    ------------------------
    - **Application**: host, port, CORS, log level
    - **Kiosks**: kiosk population, priority kiosk, priority classes,
      per-kiosk response timeouts
    - **Admission**: moving window length, requests per window, bypass
      identifier for automated tests
    - **Generation queue**: concurrency, dispatch-rate window, soft
      queue-depth ceiling
    - **Generation API**: endpoint, key, model, sampling parameters,
      connection pool, response size ceiling
    - **Assets and storage**: backgrounds, overlay, output directory,
      selfie size ceiling
    - **Housekeeping**: session and output retention and sweep intervals,
      session ledger size
    - **Resilience**: retry-after durations, payload ceiling, end-to-end
      request timeout
    """

    # ── Application settings ─────────────────────────────────────────────

    application_host: str = "127.0.0.1"

    application_port: int = pydantic.Field(default=5000, ge=1, le=65535)

    cors_allowed_origins: list[str] = pydantic.Field(
        default=[],
        description=(
            "Allowed CORS origins as a JSON list. An empty list disables CORS "
            "entirely. Example: '[\"http://localhost:3000\"]'."
        ),
    )

    log_level: str = pydantic.Field(
        default="INFO",
        description=(
            "Minimum log level for structured JSON logging. "
            "Accepted values: DEBUG, INFO, WARNING, ERROR, CRITICAL."
        ),
    )

    # ── Kiosk settings ────────────────────────────────────────────────────

    kiosk_identifiers: list[str] = pydantic.Field(
        default=["kiosk-1", "kiosk-2", "kiosk-3", "kiosk-4"],
        min_length=1,
        description="Identifiers of the physical kiosks this backend serves.",
    )

    priority_kiosk_identifier: str | None = pydantic.Field(
        default="kiosk-3",
        description=(
            "Kiosk whose generation work is dequeued ahead of ordinary kiosks. "
            "Must be one of kiosk_identifiers. Null disables prioritisation."
        ),
    )

    default_kiosk_priority: int = pydantic.Field(
        default=0,
        description="Queue priority class for ordinary kiosks.",
    )

    priority_kiosk_priority: int = pydantic.Field(
        default=1,
        description="Queue priority class for the priority kiosk. Higher runs first.",
    )

    kiosk_response_timeout_seconds: float = pydantic.Field(
        default=120.0,
        gt=0,
        description=(
            "How long an ordinary kiosk's generate request waits for its result "
            "before answering 504. The queued work itself keeps running."
        ),
    )

    priority_kiosk_response_timeout_seconds: float = pydantic.Field(
        default=180.0,
        gt=0,
        description="Response timeout for the priority kiosk.",
    )

    # ── Admission settings ────────────────────────────────────────────────

    admission_window_seconds: float = pydantic.Field(
        default=60.0,
        gt=0,
        description="Length of the per-kiosk moving admission window; fractions round up to whole seconds.",
    )

    admission_maximum_requests_per_window: int = pydantic.Field(
        default=5,
        ge=1,
        description="Generate requests admitted per kiosk inside one admission window.",
    )

    admission_bypass_kiosk_identifier: str | None = pydantic.Field(
        default=None,
        description=(
            "Identifier exempt from admission rate limiting, for automated "
            "end-to-end tests only. Disabled when null. Must not match any "
            "production kiosk identifier; every bypassed request is logged."
        ),
    )

    # ── Generation queue settings ─────────────────────────────────────────

    generation_maximum_concurrency: int = pydantic.Field(
        default=2,
        ge=1,
        description="Maximum number of generation tasks running at once.",
    )

    generation_dispatch_window_seconds: float = pydantic.Field(
        default=1.0,
        gt=0,
        description="Length of the rolling window used to shape the dispatch rate.",
    )

    generation_maximum_dispatches_per_window: int = pydantic.Field(
        default=3,
        ge=1,
        description=(
            "Maximum number of generation tasks started within any rolling "
            "dispatch window, matching the upstream API's request budget."
        ),
    )

    generation_queue_soft_limit: int = pydantic.Field(
        default=10,
        ge=0,
        description=(
            "New generate requests are rejected with 503 (service_busy) while "
            "more than this many tasks are waiting in the queue."
        ),
    )

    generation_shutdown_drain_seconds: float = pydantic.Field(
        default=10.0,
        ge=0,
        description="How long shutdown waits for queued and running generations before abandoning them.",
    )

    # ── Generation API settings ───────────────────────────────────────────

    generation_api_base_url: str = pydantic.Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Root URL of the image generation REST API.",
    )

    generation_api_key: str = pydantic.Field(
        default="",
        description="API key for the image generation API. Readiness reports not_ready while empty.",
    )

    generation_model: str = pydantic.Field(
        default="gemini-2.5-flash-image-preview",
        description="Model name used for image generation.",
    )

    generation_temperature: float = pydantic.Field(default=0.28, ge=0.0, le=2.0)

    generation_top_p: float = pydantic.Field(default=0.9, gt=0.0, le=1.0)

    generation_top_k: int = pydantic.Field(default=32, ge=1)

    timeout_for_generation_requests_in_seconds: float = pydantic.Field(
        default=90.0,
        gt=0,
        description="Per-request timeout for calls to the image generation API.",
    )

    generation_connection_pool_size: int = pydantic.Field(
        default=10,
        ge=1,
        description="Maximum number of connections in the generation API client's pool.",
    )

    generation_maximum_response_bytes: int = pydantic.Field(
        default=33_554_432,
        ge=1,
        description=(
            "Maximum response body size accepted from the generation API. "
            "Larger responses are treated as upstream failures (HTTP 502)."
        ),
    )

    # ── Assets and storage settings ───────────────────────────────────────

    backgrounds_directory: str = pydantic.Field(
        default="backgrounds",
        description="Directory containing the background reference images.",
    )

    overlay_path: str | None = pydantic.Field(
        default="overlays/amsterdam-marathon-2025.png",
        description="Branding overlay composited over every output. Null disables it.",
    )

    outputs_directory: str = pydantic.Field(
        default="outputs",
        description="Directory generated images are written to and served from.",
    )

    outputs_public_url_prefix: str = pydantic.Field(
        default="/outputs",
        description="URL prefix under which output files are served.",
    )

    maximum_selfie_bytes: int = pydantic.Field(
        default=10_485_760,
        ge=1,
        description="Largest accepted selfie upload, in bytes (default 10 MiB).",
    )

    # ── Housekeeping settings ─────────────────────────────────────────────

    session_retention_seconds: float = pydantic.Field(
        default=3600.0,
        gt=0,
        description="Sessions older than this are removed from the ledger by the session sweep.",
    )

    session_sweep_interval_seconds: float = pydantic.Field(default=1800.0, gt=0)

    output_retention_seconds: float = pydantic.Field(
        default=14_400.0,
        gt=0,
        description="Output files older than this are deleted by the output sweep.",
    )

    output_sweep_interval_seconds: float = pydantic.Field(default=3600.0, gt=0)

    maximum_ledger_sessions: int = pydantic.Field(
        default=1000,
        ge=1,
        description="Upper bound on sessions held in memory between sweeps.",
    )

    recent_sessions_limit: int = pydantic.Field(
        default=20,
        ge=0,
        description="Number of recent sessions included in the monitoring response.",
    )

    # ── Resilience settings ───────────────────────────────────────────────

    retry_after_busy_seconds: int = pydantic.Field(
        default=15,
        ge=0,
        description="Retry-After value on 503 service_busy responses (queue over its soft limit).",
    )

    retry_after_not_ready_seconds: int = pydantic.Field(
        default=10,
        ge=0,
        description="Retry-After value on 503 readiness responses.",
    )

    maximum_request_payload_bytes: int = pydantic.Field(
        default=12_582_912,
        ge=1,
        description=(
            "Maximum request payload size in bytes. Must leave room for a "
            "full-size selfie plus multipart framing. Default is 12 MiB."
        ),
    )

    timeout_for_requests_in_seconds: float = pydantic.Field(
        default=300.0,
        gt=0,
        description=(
            "Maximum end-to-end duration in seconds for any single HTTP "
            "request. Requests exceeding this ceiling are aborted with "
            "HTTP 504 (request_timeout)."
        ),
    )

    @pydantic.field_validator(
        "priority_kiosk_identifier",
        "admission_bypass_kiosk_identifier",
        "overlay_path",
        mode="before",
    )
    @classmethod
    def treat_blank_as_unset(cls, optional_value: str | None) -> str | None:
        """Map an empty or whitespace-only environment value to ``None``."""
        if isinstance(optional_value, str) and not optional_value.strip():
            return None
        return optional_value

    @pydantic.model_validator(mode="after")
    def validate_kiosk_settings(self) -> "ApplicationConfiguration":
        """Reject kiosk settings that would make admission or priority ambiguous."""
        if len(set(self.kiosk_identifiers)) != len(self.kiosk_identifiers):
            raise ValueError("kiosk_identifiers must not contain duplicates.")
        if self.priority_kiosk_identifier is not None and self.priority_kiosk_identifier not in self.kiosk_identifiers:
            raise ValueError("priority_kiosk_identifier must be one of kiosk_identifiers.")
        if (
            self.admission_bypass_kiosk_identifier is not None
            and self.admission_bypass_kiosk_identifier in self.kiosk_identifiers
        ):
            raise ValueError("admission_bypass_kiosk_identifier must not match a production kiosk identifier.")
        if self.priority_kiosk_response_timeout_seconds < self.kiosk_response_timeout_seconds:
            raise ValueError(
                "priority_kiosk_response_timeout_seconds must not be shorter than kiosk_response_timeout_seconds.",
            )
        return self

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_prefix="PHOTOBOOTH_",
    )
