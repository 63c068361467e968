"""Formatters: one JSON object per line for files, short lines for the console."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from core.logging.context import get_log_context
from core.security import sanitize_error_message

# Structured fields copied from ``extra=`` onto the JSON line
EXTRA_FIELDS = (
    "job_id",
    "slice_key",
    "bucket",
    "destination",
    "credentials",
    "bytes_written",
    "duration_ms",
    "clients_closed",
    "operation",
    "error_category",
    "error_message",
)


def _utc_timestamp(record: logging.LogRecord) -> str:
    created = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return created.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JSONFormatter(logging.Formatter):
    """
    JSON lines with the task's log context merged in.

    Context variables (job, slice, stage, worker) are written first so that
    explicit ``extra=`` fields win. error_message is always sanitized.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update((k, v) for k, v in get_log_context().items() if v)

        if record.levelno >= logging.ERROR or record.levelno == logging.DEBUG:
            entry["file"] = f"{record.filename}:{record.lineno}"

        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if isinstance(entry.get("error_message"), str):
            entry["error_message"] = sanitize_error_message(entry["error_message"])

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """``time - LEVEL - [stage] - [job] - message`` with the job id shortened."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        fields = [
            datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]
        if ctx["stage"]:
            fields.append(f"[{ctx['stage']}]")
        job_id = getattr(record, "job_id", None) or ctx["job_id"]
        if job_id:
            fields.append(f"[{str(job_id)[:8]}]")
        fields.append(record.getMessage())

        line = " - ".join(fields)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line
