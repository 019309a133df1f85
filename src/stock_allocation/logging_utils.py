from __future__ import annotations

import json
import logging
from datetime import datetime, tzinfo
from typing import Any, Dict

from .clock import UTC_TZ

LOGGER_NAME = "stock_allocation"


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``ctx_*`` extras are lifted to top-level keys."""

    def __init__(self, tz: tzinfo = UTC_TZ) -> None:
        super().__init__()
        self._tz = tz

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=self._tz).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key.startswith("ctx_"):
                payload[key[4:]] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_json_logging(*, level: str | int = logging.INFO, tz: tzinfo = UTC_TZ) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(tz))
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child logger under the package root so one handler serves every module."""

    if name == LOGGER_NAME or name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


__all__ = ["JsonFormatter", "LOGGER_NAME", "get_logger", "setup_json_logging"]
