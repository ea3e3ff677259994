"""Logging setup for orchestration runs.

Records go to stderr so that ``--json`` command output on stdout stays
machine-readable. Structured records carry the orchestration context
(plan, phase, task, session, agent) when callers pass it via ``extra``.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict

REDACTED = "[REDACTED]"

# (pattern, replacement) pairs applied in order
_REDACTIONS = [
    (re.compile(r"sk-[A-Za-z0-9_-]{16,}"), REDACTED),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._-]{16,}"), REDACTED),
    (
        re.compile(r"(?i)((?:api[_-]?key|token|secret|password)\s*[=:]\s*)[^\s,;]+"),
        r"\1" + REDACTED,
    ),
]

CONTEXT_FIELDS = ("plan_id", "phase_id", "task_id", "session_id", "agent")

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Library loggers that are chatty at DEBUG
_QUIET_LOGGERS = ("asyncio", "markdown_it")


def sanitize_log_message(message: str) -> str:
    """Replace credentials in ``message`` with a redaction marker."""
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message


class SanitizingFilter(logging.Filter):
    """Redacts credentials from a record's message and string arguments.

    Worker output and prompts are logged in places, and either may echo
    a key back.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = sanitize_log_message(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(
                sanitize_log_message(a) if isinstance(a, str) else a
                for a in record.args
            )
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, including any orchestration context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if hasattr(record, name)
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(fmt=_TEXT_FORMAT, datefmt="%H:%M:%S")


def configure_logging(
    level: str = "INFO", format: str = "text", sanitize_logs: bool = True
) -> None:
    """Install a single stderr handler on the root logger.

    Calling this again replaces the previous handler, so the CLI callback
    can run once per invocation without stacking output.

    Args:
        level: Log level name; unknown names fall back to INFO
        format: ``"text"`` or ``"json"``
        sanitize_logs: Redact credentials before records are emitted
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(
        JSONFormatter() if format.lower() == "json" else TextFormatter()
    )
    if sanitize_logs:
        handler.addFilter(SanitizingFilter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
