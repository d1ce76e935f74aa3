"""Tests for the error taxonomy helpers."""

import pytest

from imgflow.core.errors import (
    ContentPolicyError,
    ErrorCategory,
    ExecutionError,
    ModerationUnavailableError,
    ProviderError,
    error_category,
    is_retryable,
    wrap_error,
)


class TestWrapError:
    def test_plain_exception(self):
        cause = RuntimeError("boom")
        error = wrap_error(cause, category=ErrorCategory.EXECUTION, step_id="gen")
        assert isinstance(error, ExecutionError)
        assert error.message == "boom"
        assert error.step_id == "gen"
        assert error.__cause__ is cause

    def test_timeout_is_retryable_provider_error(self):
        error = wrap_error(TimeoutError(), step_id="gen")
        assert isinstance(error, ProviderError)
        assert error.retryable
        assert error.message == "TimeoutError"

    def test_typed_error_passes_through(self):
        original = ContentPolicyError(["violence"])
        assert wrap_error(original, step_id="gen") is original
        assert original.step_id == "gen"

    def test_to_dict(self):
        data = wrap_error(RuntimeError("boom"), code="PROVIDER_ERROR", step_id="gen").to_dict()
        assert data["code"] == "PROVIDER_ERROR"
        assert data["category"] == "internal"
        assert data["stepId"] == "gen"


class TestClassification:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (ModerationUnavailableError("down"), True),
            (ProviderError("limited", retryable=True), True),
            (ContentPolicyError(["violence"]), False),
            (RuntimeError("boom"), False),
        ],
    )
    def test_is_retryable(self, error, expected):
        assert is_retryable(error) is expected

    def test_error_category(self):
        assert error_category(ContentPolicyError(["violence"])) == ErrorCategory.EXECUTION
        assert error_category(ProviderError("x")) == ErrorCategory.PROVIDER_ERROR
        assert error_category(ValueError("x")) == ErrorCategory.INTERNAL
