"""Tests for the redacting structured logger."""

import logging

import pytest

from sis_resilience.observability.logging import (
    MAX_LOGGED_MESSAGE_LENGTH,
    ResilienceLogger,
    redact_context,
    redact_sensitive,
    redact_stack_trace,
    safe_str,
)


class TestRedaction:

    @pytest.mark.parametrize("raw,expected", [
        ("ssn 123-45-6789 rejected", "ssn ***-**-**** rejected"),
        ("contact jane.doe@district.org", "contact ****@****.***"),
        ("guardian phone 555-123-4567", "guardian phone ***-***-****"),
        ("guardian phone (555) 123-4567", "guardian phone ***-***-****"),
        ("upstream 10.20.30.40 refused", "upstream ***.***.***.*** refused"),
        ("cannot reach sis-db01.district.internal", "cannot reach [internal-host]"),
        ("student Jane Doe not found", "student **** **** not found"),
    ])
    def test_patterns(self, raw, expected):
        assert redact_sensitive(raw) == expected

    def test_plain_text_untouched(self):
        assert redact_sensitive("connection refused by upstream") == "connection refused by upstream"

    def test_empty(self):
        assert redact_sensitive(None) == ""
        assert redact_sensitive("") == ""

    def test_stack_trace_paths_removed(self):
        stack = 'File "/srv/app/sis/client.py", line 12, in fetch_roster'

        assert redact_stack_trace(stack) == 'File "/***", line 12, in fetch_roster'
        assert redact_stack_trace(None) == ""

    def test_context_keys_and_values(self):
        context = {
            "student_name": "Jane Doe",
            "school": "RHS",
            "notes": ("call 555-123-4567",),
            "auth": {"Token": "abc123", "attempt": 2},
        }

        assert redact_context(context) == {
            "student_name": "****",
            "school": "RHS",
            "notes": ["call ***-***-****"],
            "auth": {"Token": "****", "attempt": 2},
        }
        assert context["student_name"] == "Jane Doe"

    def test_deep_context_is_truncated(self):
        context = current = {}
        for _ in range(10):
            current["child"] = {}
            current = current["child"]

        redacted = redact_context(context)

        for _ in range(6):
            redacted = redacted["child"]
        assert redacted == "[nested]"


class TestSafeStr:

    def test_unprintable(self):
        class Broken:
            def __str__(self):
                raise RuntimeError("boom")

        assert safe_str(Broken()) == "<unprintable Broken>"

    def test_truncates(self):
        text = safe_str("x" * (MAX_LOGGED_MESSAGE_LENGTH + 100))

        assert text.endswith("...[truncated]")
        assert len(text) == MAX_LOGGED_MESSAGE_LENGTH + len("...[truncated]")


class TestResilienceLogger:

    def test_structured_fields(self, caplog):
        caplog.set_level(logging.DEBUG, logger="sis_resilience")
        logger = ResilienceLogger("dlq")

        logger.info("Added operation", operation_id="op-1", correlation_id=None, retry="1/3")

        record = caplog.records[-1]
        assert record.name == "sis_resilience.dlq"
        assert record.levelno == logging.INFO
        assert record.getMessage() == "[component=dlq operation_id=op-1 retry=1/3] Added operation"

    def test_error_text_redacted(self, caplog):
        caplog.set_level(logging.DEBUG, logger="sis_resilience")
        logger = ResilienceLogger("client")

        logger.error("Lookup failed", error=ValueError("student Jane Doe has ssn 123-45-6789"))

        message = caplog.records[-1].getMessage()
        assert "error_type=ValueError" in message
        assert "Jane Doe" not in message
        assert "123-45-6789" not in message
        assert "**** ****" in message

    def test_warning_with_error(self, caplog):
        caplog.set_level(logging.DEBUG, logger="sis_resilience")

        ResilienceLogger("circuit_breaker").warning("Probe failed", error=ConnectionError("refused"))

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "error_msg=refused" in record.getMessage()

    def test_track_operation_success(self, caplog):
        caplog.set_level(logging.DEBUG, logger="sis_resilience")
        logger = ResilienceLogger("client")

        with logger.track_operation("dlq_sweep", correlation_id="req-9") as metadata:
            assert len(metadata["operation_id"]) == 8
            assert metadata["method"] == "dlq_sweep"

        messages = [record.getMessage() for record in caplog.records]
        assert any("Starting dlq_sweep" in m for m in messages)
        completed = [m for m in messages if "Completed dlq_sweep" in m]
        assert completed and "correlation_id=req-9" in completed[0]
        assert "duration_ms=" in completed[0]

    def test_track_operation_failure(self, caplog):
        caplog.set_level(logging.DEBUG, logger="sis_resilience")
        logger = ResilienceLogger("client")

        with pytest.raises(RuntimeError):
            with logger.track_operation("dlq_sweep", operation_id="sweep-1"):
                raise RuntimeError("storage offline")

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert "Failed dlq_sweep" in record.getMessage()
        assert "operation_id=sweep-1" in record.getMessage()
        assert "error_type=RuntimeError" in record.getMessage()
