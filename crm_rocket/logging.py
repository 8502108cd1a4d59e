from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from crm_rocket.context import get_actor_user_id, get_correlation_id
from crm_rocket.core.config import get_settings


_HTTP_FIELDS = frozenset({"method", "path", "status_code", "duration_ms", "request_id", "client"})
_CRM_FIELDS = frozenset({"entity_type", "entity_id", "event_type", "table", "status"})
_PROVIDER_FIELDS = frozenset({"provider", "bucket", "file_path", "error"})
_KNOWN_FIELDS = _HTTP_FIELDS | _CRM_FIELDS | _PROVIDER_FIELDS
_MAX_ERROR_LENGTH = 500

# chatty client libraries; provider calls are already logged and traced
_QUIET_LOGGERS = ("httpx", "httpcore")


class RequestContextFilter(logging.Filter):
    """Stamp the request's correlation id and acting user on records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        if not getattr(record, "actor_user_id", None):
            record.actor_user_id = get_actor_user_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # actor_user_id stays off the factory; request logs pass it as an extra
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {key: value for key, value in vars(record).items() if key in _KNOWN_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "actor_user_id": getattr(record, "actor_user_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_rocket_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    root_logger._crm_rocket_configured = True  # type: ignore[attr-defined]
