"""Structured error types for llm_toolloop.

Two families live here. Model and configuration errors abort a loop (or stop
it from starting); tool-level errors are raised by execution handles and are
always converted into ``ToolResult`` failures by the registry so the model can
see them and self-correct:

    from llm_toolloop.errors import ModelAuthError, ToolExecutionError

    async def divide(a: float, b: float) -> float:
        if b == 0:
            raise ToolExecutionError("Cannot divide by zero", code="division_by_zero")
        return a / b
"""

from __future__ import annotations

import asyncio
from typing import Any

# Failure kinds carried by ToolFailure.kind
TOOL_NOT_FOUND = "tool_not_found"
TOOL_EXECUTION_ERROR = "tool_execution_error"
TRANSPORT_ERROR = "transport_error"
TIMEOUT = "timeout"
CANCELLED = "cancelled"

FAILURE_KINDS: frozenset[str] = frozenset({
    TOOL_NOT_FOUND,
    TOOL_EXECUTION_ERROR,
    TRANSPORT_ERROR,
    TIMEOUT,
    CANCELLED,
})


class ToolLoopError(Exception):
    """Base for all llm_toolloop errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


# ---------------------------------------------------------------------------
# Setup errors (raised before the loop starts)
# ---------------------------------------------------------------------------


class ConfigurationError(ToolLoopError, ValueError):
    """Invalid loop/registry/skill configuration."""


class ConnectError(ToolLoopError):
    """Could not open a remote tool provider or list its tools."""


# ---------------------------------------------------------------------------
# Fatal loop errors
# ---------------------------------------------------------------------------


class ModelError(ToolLoopError):
    """The completion provider failed. Fatal to the loop."""


class ModelRateLimitError(ModelError):
    """Transient rate limit (429)."""


class ModelQuotaExhaustedError(ModelError):
    """Permanent quota/billing exhaustion."""


class ModelAuthError(ModelError):
    """Authentication failed (401/403)."""


class ModelContentFilterError(ModelError):
    """The provider refused the request on content-policy grounds."""


class ModelTransientError(ModelError):
    """Server error (500/502/503), connection failure."""


class ModelNotFoundError(ModelError):
    """Model doesn't exist (404)."""


class MalformedResponseError(ModelError):
    """Provider answered, but the response could not be classified."""


class ModelTimeoutError(ModelError):
    """The model call exceeded the caller-supplied deadline."""


class LoopCancelledError(ToolLoopError):
    """The loop was cancelled through its external cancellation signal."""


# ---------------------------------------------------------------------------
# Tool-level errors (converted to ToolResult failures, never fatal)
# ---------------------------------------------------------------------------


class ToolNotFoundError(ToolLoopError):
    """No tool with the requested name is registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolExecutionError(ToolLoopError):
    """The tool ran and reported a domain-level failure."""

    def __init__(
        self,
        message: str,
        *,
        code: str = TOOL_EXECUTION_ERROR,
        detail: Any = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.code = code
        self.detail = detail


class TransportError(ToolLoopError):
    """The remote tool could not be reached or answered with a protocol error."""

    def __init__(
        self,
        message: str,
        *,
        detail: Any = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.code = TRANSPORT_ERROR
        self.detail = detail


# ---------------------------------------------------------------------------
# Model error classification
# ---------------------------------------------------------------------------

# Patterns that indicate permanent quota exhaustion (not transient rate limit).
_QUOTA_PATTERNS = [
    "quota",
    "billing",
    "insufficient",
    "exceeded your current",
    "plan and billing",
    "account deactivated",
    "account suspended",
]


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def classify_error(error: Exception) -> type[ModelError]:
    """Classify a provider exception into a ModelError subtype.

    Uses litellm exception types first, falls back to string matching.
    """
    import litellm as _lt

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ModelTimeoutError
    timeout_types = _litellm_error_types(_lt, ("Timeout",))
    if timeout_types and isinstance(error, timeout_types):
        return ModelTimeoutError

    auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
    if auth_types and isinstance(error, auth_types):
        return ModelAuthError

    not_found_types = _litellm_error_types(_lt, ("NotFoundError",))
    if not_found_types and isinstance(error, not_found_types):
        return ModelNotFoundError

    content_types = _litellm_error_types(_lt, ("ContentPolicyViolationError",))
    if content_types and isinstance(error, content_types):
        return ModelContentFilterError

    budget_types = _litellm_error_types(_lt, ("BudgetExceededError",))
    if budget_types and isinstance(error, budget_types):
        return ModelQuotaExhaustedError

    rate_types = _litellm_error_types(_lt, ("RateLimitError",))
    if rate_types and isinstance(error, rate_types):
        error_str = str(error).lower()
        if any(p in error_str for p in _QUOTA_PATTERNS):
            return ModelQuotaExhaustedError
        return ModelRateLimitError

    transient_types = _litellm_error_types(
        _lt,
        (
            "InternalServerError",
            "ServiceUnavailableError",
            "APIConnectionError",
            "BadGatewayError",
        ),
    )
    if transient_types and isinstance(error, transient_types):
        return ModelTransientError

    # Fallback: string pattern matching
    error_str = str(error).lower()

    if any(p in error_str for p in _QUOTA_PATTERNS):
        return ModelQuotaExhaustedError
    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return ModelAuthError
    if "403" in error_str or "forbidden" in error_str or "permission" in error_str:
        return ModelAuthError
    if "404" in error_str or "not found" in error_str or "does not exist" in error_str:
        return ModelNotFoundError
    if "content" in error_str and ("policy" in error_str or "filter" in error_str):
        return ModelContentFilterError
    if "rate" in error_str and "limit" in error_str:
        return ModelRateLimitError
    if "timeout" in error_str or "timed out" in error_str:
        return ModelTimeoutError
    if any(p in error_str for p in ("connection", "500", "502", "503", "server error")):
        return ModelTransientError

    return ModelError


def wrap_error(error: Exception) -> ModelError:
    """Wrap a provider exception in the appropriate ModelError subclass.

    If the error is already a ModelError, returns it unchanged.
    """
    if isinstance(error, ModelError):
        return error
    cls = classify_error(error)
    return cls(str(error) or type(error).__name__, original=error)
