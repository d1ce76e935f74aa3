"""Error taxonomy shared by the compiler, executor and scheduler.

Every error carries a machine-readable ``code``, a ``category`` used to pick a
handling strategy, and a ``retryable`` hint. Compile-time problems are
``validation`` errors raised before any step runs; runtime failures are
``execution``, ``provider_error`` or ``provider_config`` depending on origin.
"""

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    USER_INPUT = "user_input"
    PROVIDER_ERROR = "provider_error"
    PROVIDER_CONFIG = "provider_config"
    VALIDATION = "validation"
    EXECUTION = "execution"
    NETWORK = "network"
    INTERNAL = "internal"


class FlowError(Exception):
    """Base exception for all imgflow errors."""

    code: str = "FLOW_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        provider: str | None = None,
        operation: str | None = None,
        step_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if category is not None:
            self.category = category
        if retryable is not None:
            self.retryable = retryable
        self.provider = provider
        self.operation = operation
        self.step_id = step_id
        self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "retryable": self.retryable,
            "provider": self.provider,
            "operation": self.operation,
            "stepId": self.step_id,
            "cause": str(self.__cause__) if self.__cause__ else None,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code}, message={self.message!r})"


class ValidationError(FlowError):
    """Bad or missing user-supplied parameters."""

    code = "INVALID_INPUT"
    category = ErrorCategory.USER_INPUT


# ---------------------------------------------------------------------------
# Graph-shape problems (raised by the compiler and branch planner)
# ---------------------------------------------------------------------------


class GraphValidationError(FlowError):
    code = "GRAPH_INVALID"
    category = ErrorCategory.VALIDATION


class CycleError(GraphValidationError):
    """The graph contains a cycle, so some nodes can never become ready."""

    code = "CYCLE_DETECTED"

    def __init__(self, cycle: list[str], blocked: list[str] | None = None) -> None:
        self.cycle = cycle
        self.blocked = blocked or []
        message = f"Graph contains a cycle: {' -> '.join(cycle + cycle[:1])}"
        if self.blocked:
            message += f" (blocked downstream: {', '.join(self.blocked)})"
        super().__init__(message)


class UnknownReferenceError(GraphValidationError):
    """An edge or step references a node/variable that does not exist."""

    code = "UNREACHABLE_NODE"


class MissingConnectionError(GraphValidationError):
    code = "MISSING_CONNECTION"


class DuplicateConnectionError(GraphValidationError):
    code = "DUPLICATE_CONNECTION"


class BranchWiringError(GraphValidationError):
    code = "BRANCH_WIRING"


# ---------------------------------------------------------------------------
# Runtime failures
# ---------------------------------------------------------------------------


class ExecutionError(FlowError):
    """Runtime failure resolving or writing variables, or processing a value."""

    code = "EXECUTION_ERROR"
    category = ErrorCategory.EXECUTION


class ContentPolicyError(ExecutionError):
    """A generated image was flagged by the moderation check."""

    code = "CONTENT_POLICY"

    def __init__(self, categories: list[str], *, step_id: str | None = None) -> None:
        self.categories = categories
        flagged = ", ".join(categories) if categories else "unspecified"
        super().__init__(
            f"Content policy violation: image flagged for {flagged}. This content cannot be saved.",
            step_id=step_id,
        )


class ModerationUnavailableError(ExecutionError):
    code = "SERVICE_UNAVAILABLE"
    retryable = True


class ProviderError(FlowError):
    """An external capability failed (rate limit, timeout, bad response)."""

    code = "PROVIDER_ERROR"
    category = ErrorCategory.PROVIDER_ERROR


class ConfigurationError(FlowError):
    code = "CONFIGURATION_ERROR"
    category = ErrorCategory.PROVIDER_CONFIG


class ProviderNotFoundError(ConfigurationError):
    code = "PROVIDER_NOT_FOUND"

    def __init__(self, provider_type: str, provider_name: str) -> None:
        super().__init__(
            f"Provider {provider_name!r} not found for type {provider_type!r}",
            provider=provider_name,
            operation=provider_type,
        )


class NetworkError(FlowError):
    code = "NETWORK_ERROR"
    category = ErrorCategory.NETWORK
    retryable = True


class InternalError(FlowError):
    code = "INTERNAL_ERROR"
    category = ErrorCategory.INTERNAL


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


_CATEGORY_CLASSES: dict[ErrorCategory, type[FlowError]] = {
    ErrorCategory.USER_INPUT: ValidationError,
    ErrorCategory.PROVIDER_ERROR: ProviderError,
    ErrorCategory.PROVIDER_CONFIG: ConfigurationError,
    ErrorCategory.VALIDATION: GraphValidationError,
    ErrorCategory.EXECUTION: ExecutionError,
    ErrorCategory.NETWORK: NetworkError,
    ErrorCategory.INTERNAL: InternalError,
}


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, FlowError) and error.retryable


def error_category(error: BaseException) -> ErrorCategory:
    if isinstance(error, FlowError):
        return error.category
    return ErrorCategory.INTERNAL


def wrap_error(
    error: BaseException,
    *,
    code: str | None = None,
    category: ErrorCategory = ErrorCategory.INTERNAL,
    retryable: bool = False,
    provider: str | None = None,
    operation: str | None = None,
    step_id: str | None = None,
) -> FlowError:
    """Normalize any exception into a ``FlowError``.

    Typed errors pass through unchanged apart from gaining a ``step_id`` when
    they did not have one yet.
    """
    if isinstance(error, FlowError):
        if error.step_id is None:
            error.step_id = step_id
        return error
    if isinstance(error, TimeoutError):
        category, retryable = ErrorCategory.PROVIDER_ERROR, True
    cls = _CATEGORY_CLASSES.get(category, FlowError)
    return cls(
        str(error) or type(error).__name__,
        code=code,
        category=category,
        retryable=retryable,
        provider=provider,
        operation=operation,
        step_id=step_id,
        cause=error,
    )
