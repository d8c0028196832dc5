from __future__ import annotations

import json
import logging
import sys
from typing import Any

import pytest

from unitoperator.src.logs import (
    JSONFormatter,
    configure_logging,
    reconcile_context,
    redact_sensitive_text,
)


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
        **extra: Any,
    ) -> logging.LogRecord:
        record = logging.LogRecord(
            name="unitoperator.unit",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )
        record.__dict__.update(extra)
        return record

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "unitoperator.unit"
        assert "ts" in parsed
        assert "error" not in parsed
        assert "controller" not in parsed
        assert "key" not in parsed

    def test_format_carries_reconcile_context(self) -> None:
        record = self._make_record(**reconcile_context("unitset", "tenants", "demo"))

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["controller"] == "unitset"
        assert parsed["key"] == "tenants/demo"

    def test_format_includes_redacted_error_on_exception(self) -> None:
        try:
            raise ValueError("password=hunter2")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "hunter2" not in parsed["error"]
        assert "[REDACTED]" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0


def test_redact_sensitive_text() -> None:
    message = redact_sensitive_text(
        "token=abc123 Authorization: Bearer abc.def.ghi url=/api?access_token=qwerty"
    )

    assert "abc123" not in message
    assert "abc.def.ghi" not in message
    assert "qwerty" not in message
    assert redact_sensitive_text("unit demo-0 ready") == "unit demo-0 ready"


def test_redact_config_value_passwords() -> None:
    message = redact_sensitive_text("sync failed: mysql_root_password: s3cr3t is invalid")

    assert "s3cr3t" not in message
    assert message.endswith("[REDACTED] is invalid")


def test_configure_logging_installs_json_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", root.level)
    monkeypatch.setattr(logging.getLogger("kubernetes"), "level", logging.NOTSET)

    configure_logging("debug")

    assert root.level == logging.DEBUG
    assert isinstance(root.handlers[0].formatter, JSONFormatter)
    assert logging.getLogger("kubernetes").level == logging.INFO
