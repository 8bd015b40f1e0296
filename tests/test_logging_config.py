"""Tests for photobooth/logging_config.py."""

import datetime
import json
import logging

import structlog

import photobooth.logging_config


class TestConfigureLogging:
    def setup_method(self):
        """Reset structlog configuration before each test."""
        structlog.reset_defaults()

    def teardown_method(self):
        """Reset structlog configuration after each test."""
        structlog.reset_defaults()
        structlog.contextvars.clear_contextvars()

    def _log_one_event(self, capsys, **event_fields):
        photobooth.logging_config.configure_logging(log_level="INFO")
        structlog.get_logger("test").info("test_event", **event_fields)
        captured = capsys.readouterr()
        return json.loads(captured.out.strip().splitlines()[-1])

    def test_sets_log_level(self):
        photobooth.logging_config.configure_logging(log_level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

        photobooth.logging_config.configure_logging(log_level="INFO")

    def test_unknown_level_falls_back_to_info(self):
        photobooth.logging_config.configure_logging(log_level="LOUD")
        assert logging.getLogger().level == logging.INFO

    def test_repeated_configuration_keeps_one_handler(self):
        photobooth.logging_config.configure_logging(log_level="INFO")
        photobooth.logging_config.configure_logging(log_level="INFO")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_native_structlog_produces_json_on_stdout(self, capsys):
        parsed = self._log_one_event(capsys, key="value")

        assert parsed["event"] == "test_event"
        assert parsed["key"] == "value"

    def test_output_contains_mandatory_fields(self, capsys):
        parsed = self._log_one_event(capsys)

        assert parsed["level"] == "INFO"
        assert parsed["service_name"] == "marathon-photobooth"
        timestamp = datetime.datetime.fromisoformat(parsed["timestamp"].replace("Z", "+00:00"))
        assert timestamp.utcoffset() == datetime.timedelta(0)

    def test_bound_context_is_merged(self, capsys):
        structlog.contextvars.bind_contextvars(correlation_id="abc-123", kiosk_identifier="kiosk-2")

        parsed = self._log_one_event(capsys)

        assert parsed["correlation_id"] == "abc-123"
        assert parsed["kiosk_identifier"] == "kiosk-2"

    def test_standard_library_loggers_share_the_format(self, capsys):
        photobooth.logging_config.configure_logging(log_level="INFO")
        logging.getLogger("uvicorn.error").warning("server message")

        parsed = json.loads(capsys.readouterr().out.strip().splitlines()[-1])

        assert parsed["event"] == "server message"
        assert parsed["level"] == "WARNING"
        assert parsed["service_name"] == "marathon-photobooth"

    def test_chatty_third_party_loggers_are_quietened(self):
        photobooth.logging_config.configure_logging(log_level="DEBUG")

        assert logging.getLogger("httpx").level == logging.WARNING
