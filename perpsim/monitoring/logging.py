"""Structured logging for the simulator.

structlog events and stdlib records from third-party libraries share one
processor chain and are rendered by ``ProcessorFormatter`` handlers on the
root logger: stdout in the configured format, and ERROR and above as JSON
lines in a rotating ``errors.log`` when a logs directory is configured.
Context bound with :func:`bind_session` is merged into every event.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import orjson
import structlog

from perpsim.config.settings import MonitoringConfig

ERROR_LOG_NAME = "errors.log"

_QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "openai", "anthropic", "uvicorn.access")

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _orjson_dumps_str(*args: Any, **kwargs: Any) -> str:
    return orjson.dumps(*args, **kwargs).decode()


def _formatter(log_format: str) -> structlog.stdlib.ProcessorFormatter:
    if log_format == "console":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer(serializer=_orjson_dumps_str)
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_SHARED_PROCESSORS,
    )


def _error_file_handler(logs_path: str, monitoring: MonitoringConfig) -> RotatingFileHandler:
    log_dir = Path(logs_path)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / ERROR_LOG_NAME,
        maxBytes=monitoring.error_log_max_bytes,
        backupCount=monitoring.error_log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.ERROR)
    handler.setFormatter(_formatter("json"))
    return handler


def configure_logging(
    log_level: str = "INFO",
    logs_path: str | None = None,
    monitoring: MonitoringConfig | None = None,
) -> None:
    """Install the handlers and structlog configuration. Safe to call again."""
    monitoring = monitoring or MonitoringConfig()
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_formatter(monitoring.log_format))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(console)
    if logs_path:
        root.addHandler(_error_file_handler(logs_path, monitoring))
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_session(**values: Any) -> None:
    """Attach ``values`` to every event logged from this context onward."""
    structlog.contextvars.bind_contextvars(**values)
