"""Unit tests for venusbridge._logging — JSON formatter and config.

Test Techniques Used:
    - Specification-based Testing: JsonFormatter output schema
    - State Inspection: Root logger handler/level after configure
    - Fixture Isolation: Save/restore root logger state
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from venusbridge._logging import JsonFormatter, configure_logging
from venusbridge._settings import LoggingSettings


@pytest.fixture
def _restore_root_logger() -> Iterator[None]:
    """Save and restore root logger handlers and level.

    Ensures tests that call ``configure_logging()`` don't leak
    state across subsequent tests.
    """
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for h in root.handlers:
        if h not in original_handlers:
            h.close()
    root.handlers = original_handlers
    root.setLevel(original_level)


def _make_record(
    message: str = "hello",
    level: int = logging.INFO,
    **extra: object,
) -> logging.LogRecord:
    record = logging.LogRecord(
        name="venusbridge.test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """JSON output schema.

    Technique: Specification-based Testing.
    """

    def test_base_fields(self) -> None:
        formatter = JsonFormatter(service="venusbridge", version="1.0.0")
        entry = json.loads(formatter.format(_make_record("Connected")))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "venusbridge.test"
        assert entry["message"] == "Connected"
        assert entry["service"] == "venusbridge"
        assert entry["version"] == "1.0.0"
        assert entry["timestamp"].endswith("+00:00")

    def test_version_omitted_when_empty(self) -> None:
        entry = json.loads(JsonFormatter(service="venusbridge").format(_make_record()))
        assert "version" not in entry

    def test_device_context_fields(self) -> None:
        record = _make_record(
            device="electrical.batteries.house",
            bus_path="/Soc",
            device_class="battery",
        )
        entry = json.loads(JsonFormatter().format(record))

        assert entry["device"] == "electrical.batteries.house"
        assert entry["bus_path"] == "/Soc"
        assert entry["device_class"] == "battery"

    def test_absent_context_fields_omitted(self) -> None:
        entry = json.loads(JsonFormatter().format(_make_record()))
        assert not {"device", "bus_path", "device_class"} & set(entry)

    def test_exception_included(self) -> None:
        try:
            msg = "boom"
            raise RuntimeError(msg)
        except RuntimeError:
            record = _make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        entry = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]

    def test_single_line(self) -> None:
        output = JsonFormatter().format(_make_record("line one\nline two"))
        assert "\n" not in output


@pytest.mark.usefixtures("_restore_root_logger")
class TestConfigureLogging:
    """Root logger configuration.

    Technique: State Inspection.
    """

    def test_json_handler_installed(self) -> None:
        configure_logging(LoggingSettings(), service="venusbridge", version="1.0.0")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO

    def test_text_format(self) -> None:
        configure_logging(LoggingSettings(format="text", level="DEBUG"), service="venusbridge")

        root = logging.getLogger()
        formatter = root.handlers[0].formatter
        assert not isinstance(formatter, JsonFormatter)
        assert root.level == logging.DEBUG

    def test_replaces_existing_handlers(self) -> None:
        logging.getLogger().addHandler(logging.NullHandler())
        configure_logging(LoggingSettings(), service="venusbridge")
        configure_logging(LoggingSettings(), service="venusbridge")
        assert len(logging.getLogger().handlers) == 1

    def test_file_handler(self, tmp_path: Path) -> None:
        log_file = tmp_path / "venusbridge.log"
        configure_logging(
            LoggingSettings(file=str(log_file), max_file_size_mb=2, backup_count=5),
            service="venusbridge",
        )

        handlers = logging.getLogger().handlers
        rotating = [h for h in handlers if isinstance(h, RotatingFileHandler)]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 2 * 1024 * 1024
        assert rotating[0].backupCount == 5

        logging.getLogger("venusbridge.test").warning("written")
        rotating[0].flush()
        assert "written" in log_file.read_text(encoding="utf-8")
