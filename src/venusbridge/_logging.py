"""Structured JSON log formatter and logging configuration.

On a GX device or a small Linux host the bridge usually runs under
systemd or in a container, where one JSON object per line is easier
to filter than free text.  :class:`JsonFormatter` emits NDJSON records
carrying ``service`` and ``version`` so a log collector can group
entries without extra parsing rules.

Records logged with ``extra={"device": ..., "bus_path": ...}`` keep
those fields as top-level JSON keys, which lets an operator follow one
virtual device through the log::

    {"timestamp": "...", "level": "WARNING", "logger": "venusbridge._registrar",
     "message": "...", "service": "venusbridge", "device": "electrical.batteries.house"}
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler

from venusbridge._settings import LoggingSettings

_MEGABYTE = 1024 * 1024

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

CONTEXT_FIELDS = ("device", "bus_path", "device_class")
"""Record attributes copied into JSON output when a log call sets them."""


class JsonFormatter(logging.Formatter):
    """Render each record as one line of JSON.

    Always present: ``timestamp`` (UTC, ISO 8601), ``level``,
    ``logger``, ``message`` and ``service``.  ``version`` is left out
    when empty; ``exception``, ``stack_info`` and the
    :data:`CONTEXT_FIELDS` appear only when the record carries them.
    """

    def __init__(self, *, service: str = "", version: str = "") -> None:
        super().__init__()
        self._static = {"service": service}
        if version:
            self._static["version"] = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self._static,
        }
        entry.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(entry, default=str)


def _build_handlers(settings: LoggingSettings) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        handlers.append(
            RotatingFileHandler(
                settings.file,
                maxBytes=settings.max_file_size_mb * _MEGABYTE,
                backupCount=settings.backup_count,
            ),
        )
    return handlers


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Point the root logger at stderr, plus a rotating file when configured.

    Existing root handlers are removed first, so calling this twice
    does not duplicate output.

    Args:
        settings: Level, format and optional log file.
        service: Bridge name stamped on JSON records.
        version: Bridge version stamped on JSON records.
    """
    formatter = (
        JsonFormatter(service=service, version=version)
        if settings.format == "json"
        else logging.Formatter(TEXT_FORMAT)
    )

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in _build_handlers(settings):
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(settings.level)
