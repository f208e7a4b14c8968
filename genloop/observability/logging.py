from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

SDK_LOGGER_NAME = "genloop"
TRAFFIC_LOGGER_NAME = "genloop.traffic"

_EXTRA_KEYS = (
    "trace_id",
    "session",
    "agent",
    "tool_name",
    "tool_call_id",
    "iteration",
    "state",
    "duration_ms",
    "outcome",
    "direction",
    "payload",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname.lower(),
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def get_sdk_logger(level: str | int | None = None) -> logging.Logger:
    logger = logging.getLogger(SDK_LOGGER_NAME)
    if level is not None:
        logger.setLevel(level)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    if level is None:
        logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


def get_traffic_logger() -> logging.Logger:
    return logging.getLogger(TRAFFIC_LOGGER_NAME)
