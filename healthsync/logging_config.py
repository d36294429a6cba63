"""Logging setup for healthsync.

All modules log snake_case events with key/value context through structlog,
on top of stdlib ``logging`` as the sink:

    logger = get_logger(__name__)
    logger.warning("circuit_opened", service="ai", failures=5)

Each record gains a ``component`` field (``resilience``, ``cache``,
``queue``...) taken from the logger name, so degraded-mode diagnostics can be
filtered per subsystem. Typed errors passed as values are rendered through
their ``to_dict()``.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

import structlog

from healthsync.errors import ResilienceError

if TYPE_CHECKING:
    from healthsync.container import EngineSettings

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _add_component(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """``healthsync.cache.engine`` -> ``component="cache"``."""
    parts = (event_dict.get("logger") or "").split(".")
    if len(parts) > 1 and parts[0] == "healthsync":
        event_dict.setdefault("component", parts[1])
    return event_dict


def _render_errors(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, ResilienceError):
            event_dict[key] = value.to_dict()
    return event_dict


def _stream_for(log_file: Path | None) -> TextIO:
    if log_file is None:
        return sys.stderr
    log_file.parent.mkdir(parents=True, exist_ok=True)
    return open(log_file, "a", encoding="utf-8")  # noqa: SIM115


def _processors(json_output: bool, colors: bool) -> list[structlog.types.Processor]:
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=colors)
    )
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        _add_component,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _render_errors,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Path | None = None,
    colors: bool = True,
) -> None:
    """Install the healthsync logging pipeline.

    Args:
        level: Minimum level name, case-insensitive
        json_output: One JSON object per line instead of console rendering
        log_file: Append here instead of stderr
        colors: Colorize console output

    Raises:
        ValueError: Unknown level name
    """
    level = level.upper()
    if level not in _LEVELS:
        raise ValueError(f"Unknown log level {level!r}; expected one of {', '.join(_LEVELS)}")

    logging.basicConfig(
        format="%(message)s",
        stream=_stream_for(log_file),
        level=getattr(logging, level),
        force=True,
    )
    structlog.configure(
        processors=_processors(json_output, colors),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def configure_from_settings(settings: EngineSettings) -> None:
    """Configure logging from engine settings.

    Log files land in ``<data_dir>/logs`` when a data directory is set
    and JSON output is requested (device diagnostics upload format).
    """
    log_file = None
    if settings.data_dir is not None and settings.log_json:
        log_file = settings.data_dir / "logs" / "healthsync.log"

    configure_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        log_file=log_file,
        colors=not settings.log_json,
    )
