from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

import pytest

from cadence.logging_config import (
    JsonLogFormatter,
    RequestContextFilter,
    configure_logging,
    format_log_fields,
    log_with_fields,
    normalize_log_level,
    reset_request_id,
    set_request_id,
)
from cadence.settings import Settings


def test_format_log_fields_escapes_control_characters() -> None:
    fields = format_log_fields(event_name="Choir\nforged", note="a\rb\tc\x00")

    assert "event_name=Choir\\nforged" in fields
    assert "note=a\\rb\\tc\\x00" in fields
    assert "\n" not in fields.replace("\\n", "")
    assert "\r" not in fields.replace("\\r", "")


def test_format_log_fields_sorts_keys_and_skips_none() -> None:
    assert format_log_fields(zeta=1, alpha="x", skipped=None) == "alpha=x zeta=1"


def test_format_log_fields_renders_datetimes_as_iso() -> None:
    when = datetime(2025, 1, 5, 10, 0, tzinfo=UTC)
    assert format_log_fields(first=when) == "first=2025-01-05T10:00:00+00:00"


def test_log_with_fields_keeps_one_line_per_record(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="cadence.feed")
    log_with_fields(
        logging.getLogger("cadence.feed"),
        logging.INFO,
        "feed generated",
        calendar="Grace\r\nChapel",
        events=3,
    )

    [message] = [record.getMessage() for record in caplog.records]
    assert message == "feed generated calendar=Grace\\r\\nChapel events=3"


def test_normalize_log_level_falls_back_to_info() -> None:
    assert normalize_log_level(" debug ") == "DEBUG"
    assert normalize_log_level("verbose") == "INFO"


def test_json_formatter_includes_request_id() -> None:
    record = logging.LogRecord("cadence.http", logging.INFO, __file__, 1, "hello", None, None)
    record.request_id = "req-1"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "hello"
    assert payload["logger"] == "cadence.http"
    assert payload["request_id"] == "req-1"


def test_configure_logging_applies_levels_and_request_filter() -> None:
    root = logging.getLogger()
    cadence_logger = logging.getLogger("cadence")
    sql_logger = logging.getLogger("sqlalchemy.engine")
    previous = [(lg, lg.level) for lg in (root, cadence_logger, sql_logger)]
    try:
        configure_logging(Settings(log_level="WARNING", database_echo=True))
        assert root.level == logging.WARNING
        assert cadence_logger.level == logging.WARNING
        assert sql_logger.level == logging.INFO
        [handler] = root.handlers
        assert any(isinstance(f, RequestContextFilter) for f in handler.filters)
    finally:
        for lg, level in previous:
            lg.setLevel(level)


def test_request_context_filter_tags_records() -> None:
    record = logging.LogRecord("cadence.series", logging.INFO, __file__, 1, "msg", None, None)
    token = set_request_id("abc123")
    try:
        assert RequestContextFilter().filter(record)
    finally:
        reset_request_id(token)
    assert getattr(record, "request_id") == "abc123"

    untagged = logging.LogRecord("cadence.series", logging.INFO, __file__, 1, "msg", None, None)
    RequestContextFilter().filter(untagged)
    assert getattr(untagged, "request_id") == "-"


def test_json_formatter_carries_structured_fields(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="cadence.series")
    log_with_fields(
        logging.getLogger("cadence.series"),
        logging.INFO,
        "extended series",
        created=4,
        root_event_id="abc",
    )

    [record] = caplog.records
    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "extended series created=4 root_event_id=abc"
    assert payload["fields"] == {"created": "4", "root_event_id": "abc"}
