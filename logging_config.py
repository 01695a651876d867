from __future__ import annotations

import logging
import time
from logging.config import dictConfig
from typing import Iterable, Sequence

from models.errors import ConfigurationError
from settings import get_settings

CONTEXT_KEYS = (
    "run_id",
    "station_id",
    "row_number",
    "reason",
    "status",
    "severity",
    "event_count",
    "skipped_count",
    "duration_ms",
    "horizon",
    "evicted",
)

_configured = False


def _render_value(value: object) -> str:
    text = str(value)
    if not text or any(char.isspace() for char in text) or '"' in text:
        return '"' + text.replace('"', '\\"') + '"'
    return text


class ContextualFormatter(logging.Formatter):
    """Formatter that appends ``key=value`` pairs for run and station context.

    Timestamps are rendered in UTC; values containing whitespace (skip reasons,
    validation messages) are quoted so each line stays machine-splittable.
    """

    converter = time.gmtime

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        extra_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or CONTEXT_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context: list[str] = []
        for key in self._extra_keys:
            value = getattr(record, key, None)
            if value is None:
                continue
            context.append(f"{key}={_render_value(value)}")
        if context:
            return f"{message} | {' '.join(context)}"
        return message


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ConfigurationError(f"Unknown log level {level!r}.")
    return resolved


def configure_logging(level: str | int | None = None) -> None:
    """Install the engine's contextual log format on the root logger once."""
    global _configured
    if _configured:
        return

    log_level = _resolve_level(level if level is not None else get_settings().log_level)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": "logging_config.ContextualFormatter",
                    "fmt": "%(asctime)sZ | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "style": "%",
                    "extra_keys": list(CONTEXT_KEYS),
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "contextual",
                }
            },
            "loggers": {
                "httpx": {"level": logging.WARNING},
            },
            "root": {"handlers": ["default"], "level": log_level},
        }
    )

    _configured = True
