"""Retry utilities: error classification and exponential backoff.

Pure functions with no I/O. ``Session`` uses them to decide whether a failed
attempt is worth another try and how long to wait before it.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable


class ErrorCode(str, Enum):
    """Classified failure kinds for a session attempt."""

    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    MODEL_BUSY = "model_busy"
    NETWORK_ERROR = "network_error"
    CANCELLED = "cancelled"
    OFF_TOPIC = "off_topic"
    MODEL_UNAVAILABLE = "model_unavailable"
    LM_ERROR = "lm_error"
    UNKNOWN = "unknown"


RETRYABLE_CODES = frozenset(
    {
        ErrorCode.RATE_LIMITED,
        ErrorCode.TIMEOUT,
        ErrorCode.TRANSIENT,
        ErrorCode.MODEL_BUSY,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.LM_ERROR,
        ErrorCode.UNKNOWN,
    }
)

_NETWORK_ERRORS = (ConnectionError, BrokenPipeError)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff configuration for session retries.

    Attributes:
        max_retries: Attempts after the first one.
        base_delay_ms: Delay for attempt 0 before doubling.
        max_delay_ms: Ceiling applied before jitter.
        jitter: Draw the delay uniformly from ``[0, clamped)``.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter: bool = True


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass(frozen=True)
class SessionError:
    """A classified failure attached to a session status."""

    code: ErrorCode
    message: str
    retryable: bool
    original_error: Any = None

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }


def resolve_retry_config(partial: dict | None = None) -> RetryConfig:
    """Merge partial overrides onto the defaults."""
    if not partial:
        return DEFAULT_RETRY_CONFIG
    return replace(DEFAULT_RETRY_CONFIG, **partial)


def compute_backoff_delay(
    attempt: int,
    config: RetryConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff delay in milliseconds for a zero-based attempt.

    Without jitter the result is ``min(base * 2**attempt, max)``. With jitter
    it is uniform in ``[0, clamped)``.
    """
    clamped = min(config.base_delay_ms * (2**attempt), config.max_delay_ms)
    if not config.jitter:
        return clamped
    return float(int(rand() * clamped))


def is_retryable_error(error: SessionError) -> bool:
    """Whether a classified error is worth another attempt."""
    return error.retryable and error.code in RETRYABLE_CODES


def _make(code: ErrorCode, message: str, err: Any) -> SessionError:
    return SessionError(
        code=code,
        message=message,
        retryable=code in RETRYABLE_CODES,
        original_error=err,
    )


def classify_error(err: Any) -> SessionError:
    """Classify a raw failure into a ``SessionError``.

    A structured ``code`` attribute is inspected first; plain exceptions fall
    back to message heuristics.
    """
    code = getattr(err, "code", None)
    if code is not None and not isinstance(err, asyncio.CancelledError):
        code_text = str(getattr(code, "value", code)).lower()
        message = str(getattr(err, "message", None) or err or "Unknown error")

        if "rate" in code_text or "429" in message:
            return _make(ErrorCode.RATE_LIMITED, message, err)
        if "off_topic" in code_text:
            return _make(ErrorCode.OFF_TOPIC, message, err)
        if "not_found" in code_text or "not available" in message:
            return _make(ErrorCode.MODEL_UNAVAILABLE, message, err)
        return _make(ErrorCode.LM_ERROR, message, err)

    if isinstance(err, asyncio.CancelledError):
        return _make(ErrorCode.CANCELLED, str(err) or "cancelled", err)

    if isinstance(err, BaseException):
        message = str(err)
        lowered = message.lower()
        if "cancel" in lowered or "abort" in lowered:
            return _make(ErrorCode.CANCELLED, message, err)
        if "429" in message:
            return _make(ErrorCode.RATE_LIMITED, message, err)
        if isinstance(err, TimeoutError):
            return _make(ErrorCode.TIMEOUT, message or "timed out", err)
        if isinstance(err, _NETWORK_ERRORS):
            return _make(ErrorCode.NETWORK_ERROR, message, err)
        return _make(ErrorCode.UNKNOWN, message, err)

    return _make(ErrorCode.UNKNOWN, str(err), err)
