from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

from namecard.core.config import get_settings


_LEVEL_NAMES: dict[str, str] = {
    "warning": "warn",
    "critical": "error",
    "exception": "error",
    "notset": "debug",
}


def _default_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    # Lines emitted outside an invocation still name the emitting service.
    event_dict.setdefault("service", get_settings().service_name)
    return event_dict


def _normalize_level(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    # Collapse stdlib level names onto the debug|info|warn|error vocabulary.
    level = str(event_dict.get("level", "info")).lower()
    event_dict["level"] = _LEVEL_NAMES.get(level, level)
    return event_dict


class _NamecardHandler(logging.StreamHandler):
    # Marker type so reconfiguration replaces only handlers installed here.
    pass


def build_formatter(log_format: str = "json") -> structlog.stdlib.ProcessorFormatter:
    # Stdlib records (including `extra=` fields) render through structlog processors.
    renderer: Any
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer(sort_keys=False)
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ExtraAdder(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            _default_service,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _normalize_level,
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            renderer,
        ],
    )


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    settings = get_settings()
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format

    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, _NamecardHandler):
            root.removeHandler(handler)
    handler = _NamecardHandler(stream=sys.stdout)
    handler.setFormatter(build_formatter(log_format))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))
    # Driver chatter would drown invocation logs at debug level.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
