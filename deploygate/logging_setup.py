"""Structured JSON logging for DeployGate."""

import json
import logging
import logging.config
from datetime import datetime, timezone


# Attributes every LogRecord carries; anything else came in through extra=.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """Emit each log record as a single-line JSON object.

    Standard fields:
        ts        ISO-8601 UTC timestamp
        level     DEBUG / INFO / WARNING / ERROR / CRITICAL
        logger    logger name
        msg       formatted message
        exc       exception traceback (only when an exception is present)

    Any keys passed via ``extra=`` are merged into the top-level object, so
    ``logger.info("Webhook OK", extra={"webhook_id": hook.id})`` yields a
    ``webhook_id`` field.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                payload[key] = value

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def build_logging_config(level: str = "INFO") -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "deploygate.logging_setup.JsonFormatter",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json",
            },
        },
        "root": {
            "level": level.upper(),
            "handlers": ["console"],
        },
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},   # suppress noisy access log
            "sqlalchemy.engine": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
        },
    }


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(build_logging_config(level))
