from __future__ import annotations

import json
import logging
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from logging.config import dictConfig
from typing import Any

from cadence.settings import Settings, get_settings

_LEVEL_NAMES = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
_request_id: ContextVar[str | None] = ContextVar("cadence_request_id", default=None)

# Every C0 control character plus DEL, with the common whitespace ones kept readable.
_CONTROL_TABLE = {code: f"\\x{code:02x}" for code in (*range(0x20), 0x7F)}
_CONTROL_TABLE.update({ord("\n"): "\\n", ord("\r"): "\\r", ord("\t"): "\\t"})


def normalize_log_level(raw_level: str) -> str:
    level = raw_level.strip().upper()
    return level if level in _LEVEL_NAMES else "INFO"


def get_request_id() -> str | None:
    return _request_id.get()


def set_request_id(request_id: str) -> Token[str | None]:
    return _request_id.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id.reset(token)


class RequestContextFilter(logging.Filter):
    """Stamp each record with the id of the HTTP request being served, or "-"."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record; `log_with_fields` data lands under "fields"."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "message": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def _format_log_value(value: object) -> str:
    if isinstance(value, datetime):
        text = value.isoformat()
    elif isinstance(value, str):
        text = value
    else:
        text = str(value)
    return text.translate(_CONTROL_TABLE)


def _log_values(fields: dict[str, object]) -> dict[str, str]:
    return {
        key: _format_log_value(fields[key]) for key in sorted(fields) if fields[key] is not None
    }


def format_log_fields(**fields: object) -> str:
    """Render `key=value` pairs sorted by key, skipping None values.

    Values are escaped so user-supplied text (event names, tokens) cannot
    start a new log line.
    """

    return " ".join(f"{key}={value}" for key, value in _log_values(fields).items())


def log_with_fields(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    exc_info: Any | None = None,
    **fields: object,
) -> None:
    values = _log_values(fields)
    if not values:
        logger.log(level, "%s", message, exc_info=exc_info)
        return
    field_text = " ".join(f"{key}={value}" for key, value in values.items())
    logger.log(
        level,
        "%s %s",
        message,
        field_text,
        exc_info=exc_info,
        extra={"fields": values},
    )


def configure_logging(settings: Settings | None = None) -> None:
    selected = settings if settings is not None else get_settings()
    level = normalize_log_level(selected.log_level)
    sql_level = "INFO" if selected.database_echo else "WARNING"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_context": {"()": "cadence.logging_config.RequestContextFilter"},
            },
            "formatters": {
                "plain": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] [req=%(request_id)s] %(message)s",
                },
                "json": {"()": "cadence.logging_config.JsonLogFormatter"},
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "filters": ["request_context"],
                    "formatter": "json" if selected.log_json else "plain",
                }
            },
            "root": {"handlers": ["default"], "level": level},
            "loggers": {
                "cadence": {"level": level},
                "uvicorn": {"level": level},
                "uvicorn.error": {"level": level},
                # Request lines come from cadence.http instead.
                "uvicorn.access": {"level": "WARNING"},
                "sqlalchemy.engine": {"level": sql_level},
                "aiosqlite": {"level": "WARNING"},
            },
        }
    )
