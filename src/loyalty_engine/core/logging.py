from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


# Attributes every stdlib LogRecord carries; anything else arrived via ``extra=``.
_STDLIB_RECORD_ATTRS = set(LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "taskName"}

# Structured keys the ledger services bind; grouped so log queries can filter on ``ledger.*``.
_LEDGER_KEYS = (
    "user_id",
    "merchant_id",
    "transaction_id",
    "redemption_id",
    "kickback_event_id",
    "type",
    "points",
    "balance_before",
    "balance_after",
)


class InterceptHandler(logging.Handler):
    """Route stdlib records (uvicorn, sqlalchemy, alembic) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = str(record.msg)

        extra = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_ATTRS}
        bound = logger.bind(**extra) if extra else logger
        bound.opt(depth=6, exception=record.exc_info).log(level, message.replace("{", "{{").replace("}", "}}"))


def build_log_payload(record: Dict[str, Any], metadata: Dict[str, str]) -> Dict[str, Any]:
    """Flatten a Loguru record into the JSON document shipped to the log pipeline."""

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "service": metadata.get("service_name", "unknown"),
        "environment": metadata.get("environment", "unknown"),
        "version": metadata.get("version", "unknown"),
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    extra = dict(record["extra"])
    ledger = {key: extra.pop(key) for key in _LEDGER_KEYS if key in extra}
    if ledger:
        payload["ledger"] = ledger
    payload.update(extra)

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    return payload


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
) -> None:
    """Replace Loguru sinks with one JSON-lines sink on stdout and bridge stdlib logging."""

    metadata = {"service_name": service_name, "environment": environment, "version": version}

    def _sink(message: Any) -> None:
        payload = build_log_payload(message.record, metadata)
        sys.stdout.write(json.dumps(payload, default=str) + "\n")

    logger.remove()
    logger.add(_sink, level=level.upper(), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
