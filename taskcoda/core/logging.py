from __future__ import annotations

from datetime import datetime, timezone
import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

from taskcoda.core.config import get_settings


_CONFIGURED = False

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_JSON_FORMAT = "%(message)s"


class JsonFormatter(jsonlogger.JsonFormatter):
    # One JSON object per record with UTC timestamp, level and logger name.
    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["ts"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name


def configure_logging(*, force: bool = False) -> None:
    # Configure the root logger once per process; later calls are no-ops unless forced.
    global _CONFIGURED
    if _CONFIGURED and not force:
        return
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        handler.setFormatter(JsonFormatter(_JSON_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    # httpx logs every request at INFO, which drowns out application events.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _CONFIGURED = True
