"""Tests for retry classification and backoff."""

import asyncio

import pytest

from packai.orchestration.retry import (
    DEFAULT_RETRY_CONFIG,
    ErrorCode,
    RetryConfig,
    SessionError,
    classify_error,
    compute_backoff_delay,
    is_retryable_error,
    resolve_retry_config,
)


class CodedError(Exception):
    def __init__(self, code, message=""):
        super().__init__(message)
        self.code = code
        self.message = message


# ---------------------------------------------------------------------------
# Backoff tests
# ---------------------------------------------------------------------------


class TestComputeBackoffDelay:
    def test_doubles_without_jitter(self):
        config = RetryConfig(base_delay_ms=100, max_delay_ms=10000, jitter=False)
        assert compute_backoff_delay(0, config) == 100
        assert compute_backoff_delay(1, config) == 200
        assert compute_backoff_delay(3, config) == 800

    def test_clamped_to_max(self):
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=5000, jitter=False)
        assert compute_backoff_delay(10, config) == 5000

    def test_jitter_scales_clamped_delay(self):
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=30000, jitter=True)
        assert compute_backoff_delay(1, config, rand=lambda: 0.5) == 1000
        assert compute_backoff_delay(1, config, rand=lambda: 0.0) == 0

    def test_jitter_stays_below_clamp(self):
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=4000, jitter=True)
        delay = compute_backoff_delay(5, config, rand=lambda: 0.9999)
        assert 0 <= delay < 4000


class TestResolveRetryConfig:
    def test_none_gives_defaults(self):
        assert resolve_retry_config(None) is DEFAULT_RETRY_CONFIG

    def test_partial_override(self):
        config = resolve_retry_config({"max_retries": 7})
        assert config.max_retries == 7
        assert config.base_delay_ms == DEFAULT_RETRY_CONFIG.base_delay_ms


# ---------------------------------------------------------------------------
# Classification tests
# ---------------------------------------------------------------------------


class TestClassifyError:
    def test_coded_rate_limit(self):
        error = classify_error(CodedError("RateLimit", "slow down"))
        assert error.code == ErrorCode.RATE_LIMITED
        assert error.retryable

    def test_coded_429_message(self):
        error = classify_error(CodedError("Blocked", "HTTP 429"))
        assert error.code == ErrorCode.RATE_LIMITED

    def test_coded_off_topic_not_retryable(self):
        error = classify_error(CodedError("off_topic", "refused"))
        assert error.code == ErrorCode.OFF_TOPIC
        assert not error.retryable

    def test_coded_not_found(self):
        error = classify_error(CodedError("model_not_found", "no such model"))
        assert error.code == ErrorCode.MODEL_UNAVAILABLE
        assert not error.retryable

    def test_other_coded_error_is_lm_error(self):
        error = classify_error(CodedError("Blocked", "content filtered"))
        assert error.code == ErrorCode.LM_ERROR
        assert error.retryable

    def test_cancelled_error(self):
        assert classify_error(asyncio.CancelledError()).code == ErrorCode.CANCELLED

    @pytest.mark.parametrize("message", ["Request cancelled", "operation aborted"])
    def test_cancel_message(self, message):
        error = classify_error(RuntimeError(message))
        assert error.code == ErrorCode.CANCELLED
        assert not error.retryable

    def test_timeout(self):
        assert classify_error(TimeoutError()).code == ErrorCode.TIMEOUT

    def test_connection_error(self):
        error = classify_error(ConnectionResetError("reset by peer"))
        assert error.code == ErrorCode.NETWORK_ERROR

    def test_plain_exception_is_unknown(self):
        error = classify_error(ValueError("boom"))
        assert error.code == ErrorCode.UNKNOWN
        assert error.message == "boom"
        assert error.retryable

    def test_non_exception_value(self):
        error = classify_error("weird")
        assert error.code == ErrorCode.UNKNOWN
        assert error.message == "weird"

    def test_keeps_original_error(self):
        err = ValueError("x")
        assert classify_error(err).original_error is err


class TestIsRetryableError:
    def test_requires_flag_and_code(self):
        assert is_retryable_error(SessionError(ErrorCode.TIMEOUT, "t", True))
        assert not is_retryable_error(SessionError(ErrorCode.TIMEOUT, "t", False))
        assert not is_retryable_error(SessionError(ErrorCode.OFF_TOPIC, "o", True))

    def test_to_dict(self):
        error = SessionError(ErrorCode.TIMEOUT, "slow", True)
        assert error.to_dict() == {
            "code": "timeout",
            "message": "slow",
            "retryable": True,
        }
