"""
Structured logging for the photo booth service.

Every line on stdout is one JSON object carrying ``timestamp`` (ISO 8601,
UTC), ``level`` (upper case), ``event`` and ``service_name``, plus any
fields bound through ``structlog.contextvars``.  The correlation
middleware binds ``correlation_id`` and ``kiosk_identifier``; queued
generation tasks run in the context captured at submission, so their
events carry the same fields as the request that created them.

Records from standard library loggers (Uvicorn, httpx) are rendered by
the same processor chain.
"""

import logging
import sys

import structlog

SERVICE_NAME = "marathon-photobooth"

# httpx logs one line per upstream call, duplicating generation_client events.
_QUIETENED_LOGGERS = ("httpx", "httpcore", "PIL")


def _stamp_service_fields(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    event_dict["service_name"] = SERVICE_NAME
    event_dict["level"] = event_dict.get("level", method_name).upper()
    return event_dict


def _build_stdout_handler(pre_chain: list[structlog.types.Processor]) -> logging.Handler:
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    return stdout_handler


def configure_logging(log_level: str = "INFO") -> None:
    """
    Route structlog and the standard library root logger to JSON on stdout.

    Calling it again replaces the root handler instead of adding a second
    one.  An unrecognised level name means INFO.
    """
    resolved_level = logging.getLevelName(log_level.upper())
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _stamp_service_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [_build_stdout_handler(pre_chain)]
    root_logger.setLevel(resolved_level)

    for quietened_logger_name in _QUIETENED_LOGGERS:
        logging.getLogger(quietened_logger_name).setLevel(max(resolved_level, logging.WARNING))
