"""Tests for configuration.py: ApplicationConfiguration."""

import os

import pydantic
import pytest

import configuration


def _clear_all_configuration_environment_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every PHOTOBOOTH_* variable so the test reads only defaults."""
    for variable_name in list(os.environ):
        if variable_name.startswith("PHOTOBOOTH_"):
            monkeypatch.delenv(variable_name, raising=False)


def _load_configuration(**overrides) -> configuration.ApplicationConfiguration:
    return configuration.ApplicationConfiguration(_env_file=None, **overrides)


class TestApplicationConfigurationDefaults:
    def test_default_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _clear_all_configuration_environment_variables(monkeypatch)
        application_configuration = _load_configuration()

        # ── Application settings ──
        assert application_configuration.application_host == "127.0.0.1"
        assert application_configuration.application_port == 5000
        assert application_configuration.cors_allowed_origins == []
        assert application_configuration.log_level == "INFO"

        # ── Kiosks and admission ──
        assert application_configuration.kiosk_identifiers == ["kiosk-1", "kiosk-2", "kiosk-3", "kiosk-4"]
        assert application_configuration.priority_kiosk_identifier == "kiosk-3"
        assert application_configuration.kiosk_response_timeout_seconds == 120.0
        assert application_configuration.priority_kiosk_response_timeout_seconds == 180.0
        assert application_configuration.admission_window_seconds == 60.0
        assert application_configuration.admission_maximum_requests_per_window == 5
        assert application_configuration.admission_bypass_kiosk_identifier is None

        # ── Generation queue ──
        assert application_configuration.generation_maximum_concurrency == 2
        assert application_configuration.generation_dispatch_window_seconds == 1.0
        assert application_configuration.generation_maximum_dispatches_per_window == 3
        assert application_configuration.generation_queue_soft_limit == 10

        # ── Generation API ──
        assert application_configuration.generation_api_key == ""
        assert application_configuration.generation_model == "gemini-2.5-flash-image-preview"
        assert application_configuration.generation_temperature == 0.28
        assert application_configuration.generation_top_p == 0.9
        assert application_configuration.generation_top_k == 32

        # ── Housekeeping and resilience ──
        assert application_configuration.session_retention_seconds == 3600.0
        assert application_configuration.output_retention_seconds == 14_400.0
        assert application_configuration.maximum_selfie_bytes == 10_485_760
        assert application_configuration.retry_after_busy_seconds == 15
        assert application_configuration.maximum_request_payload_bytes == 12_582_912
        assert application_configuration.timeout_for_requests_in_seconds == 300.0


class TestApplicationConfigurationEnvironment:
    def test_reads_prefixed_environment_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _clear_all_configuration_environment_variables(monkeypatch)
        monkeypatch.setenv("PHOTOBOOTH_APPLICATION_PORT", "8080")
        monkeypatch.setenv("PHOTOBOOTH_KIOSK_IDENTIFIERS", '["north","south"]')
        monkeypatch.setenv("PHOTOBOOTH_PRIORITY_KIOSK_IDENTIFIER", "south")
        monkeypatch.setenv("PHOTOBOOTH_GENERATION_API_KEY", "secret-key")

        application_configuration = _load_configuration()

        assert application_configuration.application_port == 8080
        assert application_configuration.kiosk_identifiers == ["north", "south"]
        assert application_configuration.priority_kiosk_identifier == "south"
        assert application_configuration.generation_api_key == "secret-key"

    def test_blank_optional_values_become_none(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _clear_all_configuration_environment_variables(monkeypatch)
        monkeypatch.setenv("PHOTOBOOTH_PRIORITY_KIOSK_IDENTIFIER", "  ")
        monkeypatch.setenv("PHOTOBOOTH_OVERLAY_PATH", "")

        application_configuration = _load_configuration()

        assert application_configuration.priority_kiosk_identifier is None
        assert application_configuration.overlay_path is None


class TestApplicationConfigurationValidation:
    def test_rejects_duplicate_kiosks(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _clear_all_configuration_environment_variables(monkeypatch)
        with pytest.raises(pydantic.ValidationError):
            _load_configuration(kiosk_identifiers=["kiosk-1", "kiosk-1"], priority_kiosk_identifier=None)

    def test_rejects_priority_kiosk_outside_the_population(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _clear_all_configuration_environment_variables(monkeypatch)
        with pytest.raises(pydantic.ValidationError):
            _load_configuration(kiosk_identifiers=["kiosk-1"], priority_kiosk_identifier="kiosk-9")

    def test_rejects_bypass_identifier_matching_a_kiosk(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _clear_all_configuration_environment_variables(monkeypatch)
        with pytest.raises(pydantic.ValidationError):
            _load_configuration(admission_bypass_kiosk_identifier="kiosk-1")

    def test_rejects_priority_timeout_shorter_than_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _clear_all_configuration_environment_variables(monkeypatch)
        with pytest.raises(pydantic.ValidationError):
            _load_configuration(
                kiosk_response_timeout_seconds=120.0,
                priority_kiosk_response_timeout_seconds=60.0,
            )

    @pytest.mark.parametrize(
        ("field_name", "invalid_value"),
        [
            ("application_port", 0),
            ("admission_maximum_requests_per_window", 0),
            ("generation_maximum_concurrency", 0),
            ("generation_dispatch_window_seconds", 0),
            ("kiosk_identifiers", []),
        ],
    )
    def test_rejects_out_of_range_values(self, monkeypatch: pytest.MonkeyPatch, field_name, invalid_value) -> None:
        _clear_all_configuration_environment_variables(monkeypatch)
        with pytest.raises(pydantic.ValidationError):
            _load_configuration(**{field_name: invalid_value})
