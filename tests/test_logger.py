"""Tests for the JSON logger."""

import io
import json
import logging
import sys

from cafcoop.logger import REDACTED, JSONFormatter, StructuredLogger


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_records_are_json_with_native_extra_values(tmp_path):
    stream = io.StringIO()
    log = StructuredLogger(
        name="logtest.json", level=logging.DEBUG, stream=stream,
        log_file=str(tmp_path / "json.log"),
    )

    log.info("Profile %s loaded", "auth-1", extra={"attempt": 2, "existed": False})

    [entry] = _lines(stream)
    assert entry["message"] == "Profile auth-1 loaded"
    assert entry["level"] == "INFO"
    assert entry["logger_name"] == "logtest.json"
    assert entry["extra"] == {"attempt": 2, "existed": False}


def test_credential_fields_are_redacted(tmp_path):
    stream = io.StringIO()
    log = StructuredLogger(
        name="logtest.redact", stream=stream, log_file=str(tmp_path / "redact.log"),
    )

    log.warning(
        "Session refreshed",
        extra={"access_token": "eyJhbGci", "apikey": "anon-key", "user_id": "auth-1"},
    )

    [entry] = _lines(stream)
    assert entry["extra"]["access_token"] == REDACTED
    assert entry["extra"]["apikey"] == REDACTED
    assert entry["extra"]["user_id"] == "auth-1"
    assert "eyJhbGci" not in stream.getvalue()


def test_file_handler_writes_same_payload(tmp_path):
    log_file = tmp_path / "nested" / "cafcoop.log"
    log = StructuredLogger(
        name="logtest.file", stream=io.StringIO(), log_file=str(log_file),
    )

    log.error("Provisioning failed")
    for handler in log.logger.handlers:
        handler.flush()

    entry = json.loads(log_file.read_text(encoding="utf-8").splitlines()[0])
    assert entry["message"] == "Provisioning failed"


def test_child_shares_parent_handlers(tmp_path):
    stream = io.StringIO()
    parent = StructuredLogger(
        name="logtest.parent", stream=stream, log_file=str(tmp_path / "parent.log"),
    )

    child = parent.child("gateway")
    child.info("Supabase client initialized")

    assert child.name == "logtest.parent.gateway"
    assert child.logger.handlers == []
    [entry] = _lines(stream)
    assert entry["logger_name"] == "logtest.parent.gateway"


def test_reusing_a_name_does_not_duplicate_output(tmp_path):
    stream = io.StringIO()
    first = StructuredLogger(
        name="logtest.reuse", stream=stream, log_file=str(tmp_path / "reuse.log"),
    )
    StructuredLogger(name="logtest.reuse", stream=stream)

    first.info("once")

    assert len(_lines(stream)) == 1


def test_exception_is_formatted():
    formatter = JSONFormatter()
    try:
        raise ValueError("bad key")
    except ValueError:
        record = logging.LogRecord(
            name="x", level=logging.ERROR, pathname="", lineno=0,
            msg="failed", args=(), exc_info=sys.exc_info(),
        )

    entry = json.loads(formatter.format(record))

    assert "ValueError: bad key" in entry["exception"]
