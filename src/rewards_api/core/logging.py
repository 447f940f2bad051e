"""Structured JSON logging for the rewards service."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Callable, Dict, Mapping

from loguru import logger
from opentelemetry import trace

# Attributes every stdlib LogRecord carries; anything else is caller context.
_STDLIB_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}

# Payout destinations are earner PII; only the tail is kept in log payloads.
_MASKED_EXTRA_KEYS = frozenset({"destination", "destination_details", "vpa", "phone"})

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "apscheduler")


def mask_destination(value: Any) -> str:
    """Mask a payout destination, keeping the last four characters."""

    text = "" if value is None else str(value)
    if len(text) <= 4:
        return "*" * len(text)
    return f"{'*' * (len(text) - 4)}{text[-4:]}"


def _redact(extra: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: mask_destination(value) if key in _MASKED_EXTRA_KEYS else value for key, value in extra.items()}


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, sqlalchemy, apscheduler) through Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        context = {key: value for key, value in vars(record).items() if key not in _STDLIB_RECORD_FIELDS}
        message = record.getMessage().replace("{", "{{").replace("}", "}}")
        logger.bind(logger_name=record.name, **context).opt(depth=6, exception=record.exc_info).log(level, message)


def _json_sink(service: Mapping[str, str]) -> Callable[[Any], None]:
    def _write(message: Any) -> None:
        record = message.record
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["extra"].get("logger_name", record["name"]),
            **service,
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = format(span_context.trace_id, "032x")
            payload["span_id"] = format(span_context.span_id, "016x")

        extra = {key: value for key, value in record["extra"].items() if key != "logger_name"}
        payload.update(_redact(extra))
        if record["exception"] is not None:
            payload["exception"] = repr(record["exception"].value)

        sys.stdout.write(json.dumps(payload, default=str) + "\n")

    return _write


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Replace Loguru's default sink with one JSON line per record."""

    logger.remove()
    logger.add(
        _json_sink({"service": service_name, "environment": environment, "version": version}),
        level=level,
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["InterceptHandler", "configure_logging", "mask_destination"]
