"""Structured logging setup shared by the worker, API and CLI processes.

``PULSE_LOG_FORMAT`` picks the output: ``json`` (default) or ``text``.
Fields named ``pulse_*`` travel into JSON output either through ``extra=``
or through :func:`log_context`, which binds them for the current task.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
import sys
import traceback
from typing import Any, Iterator

FIELD_PREFIX = "pulse_"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_bound_fields: ContextVar[dict[str, Any]] = ContextVar("pulse_log_fields", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach ``pulse_*`` fields to every record logged inside the block."""
    unknown = [name for name in fields if not name.startswith(FIELD_PREFIX)]
    if unknown:
        raise ValueError(f"log context fields must start with {FIELD_PREFIX!r}: {unknown}")
    token = _bound_fields.set({**_bound_fields.get(), **fields})
    try:
        yield
    finally:
        _bound_fields.reset(token)


class ContextFieldsFilter(logging.Filter):
    """Copy task-bound fields onto records; explicit ``extra=`` values win."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in _bound_fields.get().items():
            if not hasattr(record, name):
                setattr(record, name, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }
        entry.update(
            (name, value)
            for name, value in vars(record).items()
            if name.startswith(FIELD_PREFIX)
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(entry, default=str)


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Replace root handlers with a single stderr handler in the chosen format."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(ContextFieldsFilter())
    handler.setFormatter(
        JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT)
    )

    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
