"""Tests for structured logging context."""
import json
import logging

from statsync.core.logging import (
    ColoredFormatter, JSONFormatter, clear_correlation_id, clear_job_id, set_correlation_id, set_job_id,
)


def _record(msg="Sync teams finished", **extra):
    record = logging.LogRecord("statsync.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context_ids():
    corr = set_correlation_id("req-1")
    job = set_job_id("job-9")
    try:
        data = json.loads(JSONFormatter().format(_record(pages=3)))
    finally:
        clear_job_id(job)
        clear_correlation_id(corr)

    assert data["message"] == "Sync teams finished"
    assert data["correlation_id"] == "req-1"
    assert data["job_id"] == "job-9"
    assert data["extra"] == {"pages": 3}


def test_json_formatter_without_job():
    data = json.loads(JSONFormatter().format(_record()))

    assert "job_id" not in data
    assert data["correlation_id"] == ""


def test_colored_formatter_appends_job_id():
    job = set_job_id("job-9")
    try:
        line = ColoredFormatter().format(_record())
    finally:
        clear_job_id(job)

    assert line.endswith("| job_id=job-9")
