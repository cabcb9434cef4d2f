"""Project-wide logging configuration helpers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from logging import Handler, Logger
from pathlib import Path
from typing import Any

__all__ = ["configure_logging", "get_logger", "set_log_level"]

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
ROOT_LOGGER_NAME = "reel_scribe"
NOISY_LOGGERS = ("urllib3", "requests")


def configure_logging(settings: Mapping[str, Any] | None = None, *, force: bool = True) -> None:
    """Configure the root logger from the ``logging`` section of the configuration.

    .. code-block:: yaml

        logging:
          level: INFO
          quiet_http: true
          file:
            enabled: true
            path: ./data/logs/reel-scribe.log

    ``quiet_http`` raises the HTTP client loggers to WARNING so that polling the transcription
    provider does not flood the console.
    """

    settings = settings or {}
    level = _coerce_level(settings.get("level"))

    logging.basicConfig(level=level, format=DEFAULT_FORMAT, force=force)

    if settings.get("quiet_http", True):
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    handler = _build_file_handler(settings.get("file"))
    if handler is not None:
        logging.getLogger().addHandler(handler)


def get_logger(name: str | None = None) -> Logger:
    """Return a module logger; defaults to the package logger."""
    return logging.getLogger(name if name else ROOT_LOGGER_NAME)


def set_log_level(level: str | int) -> None:
    """Set the log level on the root logger."""
    logging.getLogger().setLevel(_coerce_level(level))


def _build_file_handler(file_settings: Any) -> Handler | None:
    if not isinstance(file_settings, Mapping) or not file_settings.get("enabled"):
        return None
    path_value = file_settings.get("path")
    if not path_value:
        return None
    log_path = Path(path_value).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    return handler


def _coerce_level(level: Any) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str) and level:
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    return logging.INFO
