# app/config/logging.py

import json
import logging
from datetime import datetime, timezone

from app.core.context import correlation_id_ctx, user_id_ctx

# Structured fields passed through `extra=` that end up in the JSON line.
_EXTRA_FIELDS = (
    "duration_ms",
    "user_id",
    "action",
    "resource",
    "resource_id",
    "path",
    "method",
    "code",
    "severity",
    "channel",
    "alert_id",
    "rule_id",
    "alert_type",
    "policy",
    "subject",
    "deleted_count",
    "archived_count",
    "error",
)


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "correlation_id": correlation_id_ctx.get(),
            "user_id": user_id_ctx.get(),
        }
        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value
        return json.dumps(log_record, default=str)


def configure_logging(log_level: str):
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.addHandler(handler)
