from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

STRUCTURED_FIELDS: tuple[str, ...] = (
    "document_id",
    "invoice_id",
    "approval_id",
    "job_id",
    "stage",
    "latency_ms",
    "outcome",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            if hasattr(record, name):
                payload[name] = getattr(record, name)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    if root.handlers:
        for handler in root.handlers:
            handler.setFormatter(JsonFormatter())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)


def log_event(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    extra = {k: v for k, v in fields.items() if k in STRUCTURED_FIELDS and v is not None}
    logger.log(level, message, extra=extra)


def log_document_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    document_id: str,
    stage: str | None = None,
    latency_ms: int | None = None,
    outcome: str | None = None,
    invoice_id: str | None = None,
) -> None:
    log_event(
        logger,
        level,
        message,
        document_id=document_id,
        stage=stage,
        latency_ms=latency_ms,
        outcome=outcome,
        invoice_id=invoice_id,
    )
