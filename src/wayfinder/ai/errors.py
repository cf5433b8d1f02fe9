"""Error taxonomy for the agent engine.

Cancellation is modelled separately (see :mod:`wayfinder.ai.agent.cancellation`)
and never flows through these types. Tool-level failures are encoded in
:class:`~wayfinder.ai.types.ToolExecutionResult` rather than raised, so the
exceptions below only cover provider faults and loop-fatal conditions.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping

__all__ = [
    "ErrorCode",
    "AgentError",
    "ProviderOverloadedError",
    "AuthenticationError",
    "ModelNotFoundError",
    "ToolDispatchError",
    "FallbackFailedError",
    "error_status_code",
    "is_overloaded_error",
    "is_authentication_error",
    "is_model_not_found_error",
    "is_cancellation",
    "format_error_for_user",
    "combine_errors",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for machine-readable error codes."""

    # Provider errors
    OVERLOADED = "overloaded"
    AUTHENTICATION = "authentication"
    MODEL_NOT_FOUND = "model_not_found"

    # Tool errors
    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_ARGUMENTS = "invalid_arguments"
    TOOL_TIMEOUT = "tool_timeout"
    TOOL_FAILED = "tool_failed"

    # Loop errors
    CANCELLED = "cancelled"
    LOOP_FAILED = "loop_failed"
    FALLBACK_FAILED = "fallback_failed"

    INTERNAL_ERROR = "internal_error"


_MODEL_NOT_FOUND_MESSAGE = "You do not have access to this model or the model does not exist"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class AgentError(Exception):
    """Base exception for engine errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logging and telemetry."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Provider Errors
# -----------------------------------------------------------------------------

@dataclass
class ProviderOverloadedError(AgentError):
    """The provider reported that it is temporarily overloaded."""

    error_code: str = field(default=ErrorCode.OVERLOADED)
    message: str = field(default="The model provider is overloaded")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Wait a moment and try again")

    severity: ClassVar[str] = "warning"


@dataclass
class AuthenticationError(AgentError):
    """The provider rejected the configured credentials."""

    error_code: str = field(default=ErrorCode.AUTHENTICATION)
    message: str = field(default="Authentication with the model provider failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check that your API key is set and valid")


@dataclass
class ModelNotFoundError(AgentError):
    """The configured model does not exist or is not accessible."""

    error_code: str = field(default=ErrorCode.MODEL_NOT_FOUND)
    message: str = field(default=_MODEL_NOT_FOUND_MESSAGE)
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check the model name with your API provider")

    model: str | None = field(default=None)


@dataclass
class ToolDispatchError(AgentError):
    """Catastrophic dispatch failure (not an ordinary tool failure)."""

    error_code: str = field(default=ErrorCode.INTERNAL_ERROR)
    message: str = field(default="Tool dispatch failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    tool_name: str | None = field(default=None)


@dataclass
class FallbackFailedError(AgentError):
    """Both the agentic path and the non-agentic fallback failed."""

    error_code: str = field(default=ErrorCode.FALLBACK_FAILED)
    message: str = field(default="The request failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    primary_error: str = field(default="")
    fallback_error: str = field(default="")

    @classmethod
    def from_errors(cls, primary: BaseException, secondary: BaseException) -> FallbackFailedError:
        return cls(
            message=combine_errors(primary, secondary),
            primary_error=format_error_for_user(primary),
            fallback_error=format_error_for_user(secondary),
        )


# -----------------------------------------------------------------------------
# Classifiers
# -----------------------------------------------------------------------------

_OVERLOADED_STATUS = {503, 529}
_AUTH_HINTS = ("api key", "apikey", "unauthorized", "authentication", "invalid authentication")
_TROUBLESHOOTING_MARKER = "Troubleshooting URL"


def _error_body(exc: BaseException) -> Mapping[str, Any]:
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        nested = body.get("error")
        if isinstance(nested, Mapping):
            return nested
        return body
    nested = getattr(exc, "error", None)
    if isinstance(nested, Mapping):
        return nested
    return {}


def error_status_code(exc: BaseException) -> int | None:
    """Best-effort HTTP status extraction from SDK and httpx exceptions."""

    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None) or getattr(response, "status", None)
    if status is None:
        status = _error_body(exc).get("status")
    if isinstance(status, str):
        try:
            return int(status)
        except ValueError:
            return None
    return status if isinstance(status, int) else None


def is_overloaded_error(exc: BaseException) -> bool:
    """Return ``True`` for transient provider overload errors."""

    if isinstance(exc, ProviderOverloadedError):
        return True
    if error_status_code(exc) in _OVERLOADED_STATUS:
        return True
    body = _error_body(exc)
    if str(body.get("type", "")).lower() == "overloaded_error":
        return True
    return "overloaded" in str(exc).lower()


def is_authentication_error(exc: BaseException) -> bool:
    """Return ``True`` when the error most likely stems from bad credentials."""

    if isinstance(exc, AuthenticationError):
        return True
    if error_status_code(exc) == 401:
        return True
    body = _error_body(exc)
    message = body.get("message")
    lowered = (message if isinstance(message, str) else str(exc)).lower()
    code = str(body.get("code") or "").lower()
    error_type = str(body.get("type") or "").lower()
    return any(hint in lowered or hint in code or hint in error_type for hint in _AUTH_HINTS)


def is_model_not_found_error(exc: BaseException) -> bool:
    if isinstance(exc, ModelNotFoundError):
        return True
    return str(_error_body(exc).get("code") or "") == ErrorCode.MODEL_NOT_FOUND


def is_cancellation(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return True
    return isinstance(exc, AgentError) and exc.error_code == ErrorCode.CANCELLED


# -----------------------------------------------------------------------------
# User-facing rendering
# -----------------------------------------------------------------------------


def _strip_troubleshooting(message: str) -> str:
    index = message.find(_TROUBLESHOOTING_MARKER)
    if index == -1:
        return message
    return message[:index].rstrip()


def format_error_for_user(exc: BaseException) -> str:
    """Render an exception as the message shown to the end user."""

    if isinstance(exc, FallbackFailedError):
        return exc.message
    if is_model_not_found_error(exc):
        message = _MODEL_NOT_FOUND_MESSAGE
        model = getattr(exc, "model", None)
        if model:
            message = f"{message} ({model})"
        message = f"{message}. Please check with your API provider."
    elif isinstance(exc, AgentError):
        message = exc.message
    else:
        body_message = _error_body(exc).get("message")
        message = str(body_message) if isinstance(body_message, str) else str(exc)
        if not message:
            message = type(exc).__name__

    message = _strip_troubleshooting(message)
    if is_authentication_error(exc):
        message = (
            "Something went wrong. Please check if you have set your API key."
            "\nOr check the model configuration."
            f"\nError Details: {message}"
        )
    return message


def combine_errors(primary: BaseException, secondary: BaseException) -> str:
    """Join the agentic and fallback failures into one message, agentic first."""

    return (
        f"Agent mode failed: {format_error_for_user(primary)}"
        f"\nFallback also failed: {format_error_for_user(secondary)}"
    )
