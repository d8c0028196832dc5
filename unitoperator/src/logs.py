"""Structured JSON logging for the operator process.

Records may carry ``controller`` and ``key`` attributes (pass them through
``extra``); they become top-level fields so log queries can filter on one
reconcile loop or one object. Message and traceback text is scrubbed of
credentials before it is written.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"), r"\1[REDACTED]"),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    # Rendered config values pushed to units (mysql root password and similar).
    (re.compile(r"(?i)(\w*_password\s*[:=]\s*)(\S+)"), r"\1[REDACTED]"),
)

CONTEXT_FIELDS = ("controller", "key")


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def reconcile_context(controller: str, namespace: str, name: str) -> dict[str, str]:
    """``extra`` mapping that tags a record with its reconcile loop and object key."""
    return {"controller": controller, "key": f"{namespace}/{name}"}


class JSONFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``logger``, ``msg``, optional context and ``error``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value:
                entry[field] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # The kubernetes client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(logging.root.level, logging.INFO))
