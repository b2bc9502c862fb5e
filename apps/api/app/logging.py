from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_workspace_id
from app.core.config import get_settings


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__)

_HTTP_FIELDS = frozenset({"method", "path", "status_code", "duration_ms", "route_group"})
_IMPORT_FIELDS = frozenset(
    {
        "file_name",
        "file_type",
        "content_chars",
        "row_count",
        "entity_type",
        "temp_id",
        "counts",
        "total_created",
        "total_failed",
        "match_count",
    }
)
_EXTRACTION_FIELDS = frozenset({"attempt", "stop_reason", "failure_reason", "response_chars"})
_KNOWN_FIELDS = _HTTP_FIELDS | _IMPORT_FIELDS | _EXTRACTION_FIELDS | {"service", "workspace_id", "error"}

ERROR_FIELD_LIMIT = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    workspace_id = get_workspace_id()
    if workspace_id is not None:
        record.workspace_id = workspace_id
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; only whitelisted ``extra`` fields are emitted."""

    def format(self, record: logging.LogRecord) -> str:
        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        error = fields.get("error")
        if isinstance(error, str):
            fields["error"] = error[:ERROR_FIELD_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    level_name = (level or get_settings().log_level).upper()
    resolved = logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(resolved)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._crm_configured = True  # type: ignore[attr-defined]
