from __future__ import annotations

import json
import logging
import sys

from taskcoda.core.logging import JsonFormatter


def _record(msg: str, *args, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="taskcoda.services.quota",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


def test_json_formatter_emits_one_object_per_record() -> None:
    formatter = JsonFormatter("%(message)s")
    line = formatter.format(_record("quota_exceeded organization_id=%s", "org_1"))

    payload = json.loads(line)
    assert payload["message"] == "quota_exceeded organization_id=org_1"
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "taskcoda.services.quota"
    assert payload["ts"].endswith("+00:00")


def test_json_formatter_includes_exception_text() -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        exc_info = sys.exc_info()
    formatter = JsonFormatter("%(message)s")
    payload = json.loads(formatter.format(_record("webhook_failed", exc_info=exc_info)))

    assert "ValueError: boom" in payload["exc_info"]
