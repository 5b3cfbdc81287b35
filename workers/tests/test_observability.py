"""Tests for structured logging and in-process metrics."""

import json
import logging
import sys
from unittest.mock import AsyncMock, patch

import pytest

from pulse_workers.health import _http_response, health_payload
from pulse_workers.logging import ContextFieldsFilter, JSONFormatter, log_context
from pulse_workers.metrics import get_metrics, record_intervention, record_score_unit


def _record(**extra):
    record = logging.LogRecord("pulse_workers.batch", logging.INFO, __file__, 1, "scored %s", ("u-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_pulse_extras():
    line = JSONFormatter().format(_record(pulse_user_id="u-1", pulse_rule="reduce_load", other="x"))
    entry = json.loads(line)
    assert entry["message"] == "scored u-1"
    assert entry["level"] == "INFO"
    assert entry["pulse_user_id"] == "u-1"
    assert entry["pulse_rule"] == "reduce_load"
    assert "other" not in entry


def test_json_formatter_serializes_exceptions():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    entry = json.loads(JSONFormatter().format(record))
    assert "RuntimeError: boom" in entry["exception"]


def test_score_unit_and_intervention_counters():
    before = get_metrics()
    record_score_unit("timed_out")
    record_intervention("force_break", applied=True)
    record_intervention("force_break", applied=False)
    after = get_metrics()

    assert after["score_units"]["timed_out"] == before["score_units"]["timed_out"] + 1
    stats = after["interventions"]["force_break"]
    previous = before["interventions"].get("force_break", {"applied": 0, "failed": 0})
    assert stats["applied"] == previous["applied"] + 1
    assert stats["failed"] == previous["failed"] + 1


def test_log_context_binds_fields_until_exit():
    record_filter = ContextFieldsFilter()
    with log_context(pulse_user_id="u-1", pulse_date="2026-03-10"):
        with log_context(pulse_rule="force_break"):
            inner = _record()
            record_filter.filter(inner)
        outer = _record(pulse_user_id="explicit")
        record_filter.filter(outer)
    after = _record()
    record_filter.filter(after)

    assert (inner.pulse_user_id, inner.pulse_rule) == ("u-1", "force_break")
    assert outer.pulse_user_id == "explicit"
    assert not hasattr(outer, "pulse_rule")
    assert not hasattr(after, "pulse_user_id")


def test_log_context_rejects_unprefixed_fields():
    with pytest.raises(ValueError):
        with log_context(user_id="u-1"):
            pass


def test_http_response_frames_json_body():
    raw = _http_response(503, {"status": "degraded"})
    head, body = raw.split(b"\r\n\r\n", 1)
    assert head.startswith(b"HTTP/1.1 503 Service Unavailable")
    assert f"Content-Length: {len(body)}".encode() in head
    assert json.loads(body) == {"status": "degraded"}


@pytest.mark.asyncio
async def test_health_payload_degrades_when_database_unreachable():
    with patch("pulse_workers.health.psycopg.AsyncConnection.connect",
               new=AsyncMock(side_effect=OSError("connection refused"))):
        payload = await health_payload("postgresql://nowhere/pulse")

    assert payload["status"] == "degraded"
    assert payload["db"] == "error"
    assert payload["services"] == {}
    assert "score_units" in payload["metrics"]
