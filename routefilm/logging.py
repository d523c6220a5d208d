"""Structured logging setup for routefilm."""

import logging
import os
import sys
from typing import Any

import structlog

LOG_LEVEL_ENV = "ROUTEFILM_LOG_LEVEL"
LOG_JSON_ENV = "ROUTEFILM_LOG_JSON"


def _callsite_adder() -> structlog.processors.CallsiteParameterAdder:
    return structlog.processors.CallsiteParameterAdder(
        parameters=[
            structlog.processors.CallsiteParameter.FILENAME,
            structlog.processors.CallsiteParameter.FUNC_NAME,
            structlog.processors.CallsiteParameter.LINENO,
        ]
    )


def _final_renderer(format_json: bool) -> Any:  # noqa: ANN401
    if format_json:
        return structlog.processors.JSONRenderer()
    # Tracebacks in tests are rendered by the rich hooks in conftest
    return structlog.dev.ConsoleRenderer(colors=True)


def configure_logging(
    level: str | None = None,
    format_json: bool | None = None,
) -> None:
    """Configure structlog and route standard library logging through it.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Falls back to ``ROUTEFILM_LOG_LEVEL`` and then INFO.
        format_json: Emit JSON lines instead of coloured console output.
            Falls back to ``ROUTEFILM_LOG_JSON`` ("1"/"true").
    """
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV, "INFO")
    if format_json is None:
        format_json = os.getenv(LOG_JSON_ENV, "").lower() in {"1", "true", "yes"}

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    shared_processors: list[Any] = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _callsite_adder(),
    ]
    if format_json:
        shared_processors.append(structlog.processors.dict_tracebacks)

    final_processor = _final_renderer(format_json)

    structlog.configure(
        processors=[*shared_processors, final_processor],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    # Third-party libraries (httpx, matplotlib, manim) log through the stdlib
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=final_processor,
        foreign_pre_chain=[structlog.stdlib.add_log_level, _callsite_adder()],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name, typically ``__name__`` of the calling module

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


configure_logging()
