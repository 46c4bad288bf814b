"""
Tests for audit records and the request-scoped logger.
"""

from typing import Any

import pytest

from src.healthgate.config import AuditSettings
from src.healthgate.core.audit import AuditLogger, RequestLogger


class TestRequestLogger:
    """Test context merging and sanitization."""

    def test_bound_context_is_merged(self, recording_logger: Any) -> None:
        log = RequestLogger(recording_logger).bind(path="/api/echo")
        log.info("hello", extra=1)
        assert recording_logger.events == [("info", "hello", {"path": "/api/echo", "extra": 1})]

    def test_sanitized_logger_redacts_event_and_values(self, recording_logger: Any) -> None:
        """Test patient tokens are redacted in the event and in bound values."""
        log = RequestLogger(recording_logger, sanitize=True, context={"ip": "203.0.113.7"})
        log.warning("Lookup for Doe^John", nir="1850512345678", ids=["12345678"])

        level, event, values = recording_logger.events[0]
        assert level == "warning"
        assert event == "Lookup for [PATIENT_NAME]"
        assert values == {"ip": "203.0.113.xxx", "nir": "[SSN]", "ids": ["[PATIENT_ID]"]}

    def test_sanitization_does_not_leak_to_other_loggers(self, recording_logger: Any) -> None:
        """Test one request's sanitizing logger leaves a sibling logger untouched."""
        sanitized = RequestLogger(recording_logger, sanitize=True)
        plain = RequestLogger(recording_logger)

        sanitized.info("Doe^John")
        plain.info("Doe^John")

        assert [event for _, event, _ in recording_logger.events] == ["[PATIENT_NAME]", "Doe^John"]

    def test_with_sanitization_returns_new_logger(self, recording_logger: Any) -> None:
        log = RequestLogger(recording_logger)
        assert log.with_sanitization(True).sanitize is True
        assert log.sanitize is False


class TestAuditLogger:
    """Test audit record lifecycle."""

    def test_open_anonymizes(self, recording_logger: Any) -> None:
        audit = AuditLogger(AuditSettings(), logger=recording_logger)
        record = audit.open("GET", "/api/patient/42", "203.0.113.7", "Mozilla/5.0", health_data=True)

        assert record.ip == "203.0.113.xxx"
        assert record.health_data is True
        assert len(record.session_id) == 16
        assert "203.0.113.7" not in record.session_id

    def test_session_id_is_stable(self, recording_logger: Any) -> None:
        audit = AuditLogger(AuditSettings(), logger=recording_logger)
        first = audit.open("GET", "/a", "203.0.113.7", "ua")
        second = audit.open("POST", "/b", "203.0.113.7", "ua")
        other = audit.open("GET", "/a", "203.0.113.8", "ua")
        assert first.session_id == second.session_id
        assert first.session_id != other.session_id

    def test_close_emits_exactly_once(self, recording_logger: Any) -> None:
        """Test a record is emitted once, with status and timing filled in."""
        audit = AuditLogger(AuditSettings(), logger=recording_logger)
        record = audit.open("POST", "/api/echo", "203.0.113.7", "ua")
        log = audit.request_logger()

        assert audit.close(record, 201, log) is True
        assert audit.close(record, 500, log) is False

        assert len(recording_logger.audit_records) == 1
        emitted = recording_logger.audit_records[0]
        assert emitted["status_code"] == 201
        assert emitted["success"] is True
        assert emitted["response_time_ms"] >= 0
        assert emitted["ip"] == "203.0.113.xxx"
        assert "started_at" not in emitted
        assert "emitted" not in emitted

    @pytest.mark.parametrize("status_code,success", [(200, True), (399, True), (400, False), (500, False)])
    def test_success_flag(self, recording_logger: Any, status_code: int, success: bool) -> None:
        audit = AuditLogger(AuditSettings(), logger=recording_logger)
        record = audit.open("GET", "/", None, None)
        audit.close(record, status_code, audit.request_logger())
        assert recording_logger.audit_records[0]["success"] is success

    def test_sanitization_can_be_disabled(self, recording_logger: Any) -> None:
        audit = AuditLogger(AuditSettings(sanitize_health_logs=False), logger=recording_logger)
        assert audit.request_logger(sanitize=True).sanitize is False
