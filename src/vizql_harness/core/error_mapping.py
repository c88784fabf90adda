"""Map failures to plain-language messages with recovery suggestions.

Categories:
  MCP_INVALID_PARAMS    - the tool service rejected the arguments
  MCP_NO_DATA           - the query matched nothing
  MCP_TIMEOUT           - a tool call ran out of time
  MCP_NETWORK           - the tool service could not be reached
  MCP_SERVER_ERROR      - the tool service failed internally
  LLM_TIMEOUT           - the model gateway ran out of time
  LLM_NETWORK           - the model gateway could not be reached
  LLM_REQUEST_FAILED    - any other model gateway failure
  TOOL_EXECUTION_FAILED - an unexpected fault inside tool dispatch
  UNKNOWN               - anything else
"""

from __future__ import annotations

import enum
import logging
import re
import traceback
from dataclasses import dataclass, field
from typing import Any

from vizql_harness.errors import ModelGatewayError, ToolError

_logger = logging.getLogger(__name__)


class ErrorCategory(enum.Enum):
    MCP_INVALID_PARAMS = "MCP_INVALID_PARAMS"
    MCP_NO_DATA = "MCP_NO_DATA"
    MCP_NETWORK = "MCP_NETWORK"
    MCP_TIMEOUT = "MCP_TIMEOUT"
    MCP_SERVER_ERROR = "MCP_SERVER_ERROR"
    LLM_REQUEST_FAILED = "LLM_REQUEST_FAILED"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    LLM_NETWORK = "LLM_NETWORK"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    UNKNOWN = "UNKNOWN"


@dataclass
class UserFacingError:
    """What the caller is told about a failure."""

    message: str
    recovery_suggestions: list[str]
    category: ErrorCategory
    technical_details: dict[str, Any] = field(default_factory=dict)

    def to_event_data(self) -> dict[str, Any]:
        """Payload fields for an ``error`` progress event."""
        return {
            "message": self.message,
            "recoverySuggestions": list(self.recovery_suggestions),
            "code": self.technical_details.get("code"),
            "details": self.technical_details.get("details"),
        }


# ---------------------------------------------------------------------------
# Message catalogue
# ---------------------------------------------------------------------------

_RETRY_LATER = "Wait a moment and try again"
_CHECK_NETWORK = "Check your network connection"
_CONTACT_SUPPORT = "If the problem persists, contact support"
_REPHRASE = "Try rephrasing your query"

_CATALOGUE: dict[ErrorCategory, tuple[str, tuple[str, ...]]] = {
    ErrorCategory.MCP_INVALID_PARAMS: (
        "The query parameters are invalid. Please check your field names, filters, or date ranges.",
        (
            "Check that all field names match the datasource metadata",
            "Verify filter values are in the correct format",
            "Try removing unsupported fields or filters",
            "Check date range format (use YYYY-MM-DD or ISO 8601 format)",
        ),
    ),
    ErrorCategory.MCP_NO_DATA: (
        "No data found matching your query. Try adjusting your filters or date range.",
        (
            "Try a different date range",
            "Remove or adjust filters that might be too restrictive",
            "Check that field names are correct",
            "Try a broader query to see available data",
        ),
    ),
    ErrorCategory.MCP_TIMEOUT: (
        "The request took too long to complete. Please try again with a simpler query.",
        (
            "Try a simpler query with fewer fields or filters",
            "Reduce the date range",
            _RETRY_LATER,
            _CHECK_NETWORK,
        ),
    ),
    ErrorCategory.MCP_NETWORK: (
        "Network error occurred. Please check your connection and try again.",
        (
            "Check your internet connection",
            _RETRY_LATER,
            "Verify the service is available",
        ),
    ),
    ErrorCategory.MCP_SERVER_ERROR: (
        "A server error occurred. Please try again in a moment.",
        (_RETRY_LATER, "Try a simpler query", _CONTACT_SUPPORT),
    ),
    ErrorCategory.LLM_TIMEOUT: (
        "The AI service took too long to respond. Please try again.",
        (_RETRY_LATER, "Try a simpler or shorter query", _CHECK_NETWORK),
    ),
    ErrorCategory.LLM_NETWORK: (
        "Network error connecting to AI service. Please check your connection and try again.",
        (
            "Check your internet connection",
            _RETRY_LATER,
            "Verify the service is available",
        ),
    ),
    ErrorCategory.LLM_REQUEST_FAILED: (
        "An error occurred while processing your request. Please try again.",
        (_REPHRASE, _RETRY_LATER, _CONTACT_SUPPORT),
    ),
    ErrorCategory.TOOL_EXECUTION_FAILED: (
        "A tool failed unexpectedly while answering your question. Please try again.",
        (_REPHRASE, _RETRY_LATER, _CONTACT_SUPPORT),
    ),
    ErrorCategory.UNKNOWN: (
        "An unexpected error occurred. Please try again.",
        (_REPHRASE, _RETRY_LATER, _CONTACT_SUPPORT),
    ),
}

_GENERIC_QUERY = (
    "An error occurred while processing your query. Please try again.",
    (_REPHRASE, "Check that all parameters are correct", _RETRY_LATER),
)
_GENERIC_TIMEOUT = (
    "The request took too long to complete. Please try again.",
    (_RETRY_LATER, "Try a simpler query", _CHECK_NETWORK),
)


def _mentions(text: str, *needles: str) -> bool:
    lowered = text.lower()
    return any(n in lowered for n in needles)


def _is_timeout(text: str) -> bool:
    return _mentions(text, "timeout", "timed out")


def _is_network(text: str) -> bool:
    return _mentions(text, "network", "connection", "fetch")


def _build(
    category: ErrorCategory,
    technical: dict[str, Any],
    entry: tuple[str, tuple[str, ...]] | None = None,
    extra: list[str] | None = None,
) -> UserFacingError:
    message, suggestions = entry or _CATALOGUE[category]
    return UserFacingError(
        message=message,
        recovery_suggestions=list(suggestions) + list(extra or []),
        category=category,
        technical_details=technical,
    )


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

def map_tool_error(error: ToolError) -> UserFacingError:
    code = error.code
    technical = {
        "code": code,
        "message": error.message,
        "details": error.details or None,
        "type": "ToolError",
    }
    extra = error.recovery_suggestions

    if code == -32602:
        return _build(ErrorCategory.MCP_INVALID_PARAMS, technical, extra=extra)
    if _mentions(error.message, "no data", "empty", "no results"):
        return _build(ErrorCategory.MCP_NO_DATA, technical, extra=extra)
    if _is_timeout(error.message):
        return _build(ErrorCategory.MCP_TIMEOUT, technical, extra=extra)
    if _is_network(error.message):
        return _build(ErrorCategory.MCP_NETWORK, technical, extra=extra)
    if code in (-32603, -32000) or (code is not None and 500 <= code < 600):
        return _build(ErrorCategory.MCP_SERVER_ERROR, technical, extra=extra)
    return _build(ErrorCategory.MCP_INVALID_PARAMS, technical, entry=_GENERIC_QUERY, extra=extra)


def map_model_error(error: ModelGatewayError) -> UserFacingError:
    technical = {
        "code": error.code,
        "message": error.message,
        "details": error.details or None,
        "type": "ModelGatewayError",
    }
    if _is_timeout(error.message):
        return _build(ErrorCategory.LLM_TIMEOUT, technical)
    if _is_network(error.message):
        return _build(ErrorCategory.LLM_NETWORK, technical)
    return _build(ErrorCategory.LLM_REQUEST_FAILED, technical)


def map_error(error: BaseException) -> UserFacingError:
    """Map any exception to a :class:`UserFacingError`."""
    if isinstance(error, ToolError):
        return map_tool_error(error)
    if isinstance(error, ModelGatewayError):
        return map_model_error(error)

    message = str(error)
    technical = {"message": message, "type": type(error).__name__}
    if _is_network(message):
        return _build(ErrorCategory.MCP_NETWORK, technical)
    if _is_timeout(message):
        return _build(ErrorCategory.MCP_TIMEOUT, technical, entry=_GENERIC_TIMEOUT)
    return _build(ErrorCategory.UNKNOWN, technical)


def unexpected_tool_failure(error: BaseException, tool_name: str) -> UserFacingError:
    """Mapping for a fault raised inside dispatch that is not a ``ToolError``."""
    return _build(
        ErrorCategory.TOOL_EXECUTION_FAILED,
        {
            "message": f"{tool_name}: {type(error).__name__}: {error}",
            "type": type(error).__name__,
        },
    )


# ---------------------------------------------------------------------------
# Redacted logging
# ---------------------------------------------------------------------------

_REDACTIONS = (
    (re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+", re.IGNORECASE), "Bearer [REDACTED]"),
    (re.compile(r"api[_-]?key[=:]\s*[A-Za-z0-9\-._~+/]+", re.IGNORECASE), "api_key=[REDACTED]"),
    (re.compile(r"token[=:]\s*[A-Za-z0-9\-._~+/]+", re.IGNORECASE), "token=[REDACTED]"),
)


def redact(text: str) -> str:
    """Strip bearer tokens and API keys from *text*."""
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def log_error(
    error: UserFacingError,
    context: str | None = None,
    exc: BaseException | None = None,
) -> None:
    """Log a mapped failure without leaking credentials.

    The category and user message go out at error level; suggestions,
    codes and the redacted traceback only at debug level.
    """
    where = f" [{context}]" if context else ""
    _logger.error("ERROR%s [%s]: %s", where, error.category.value, error.message)

    if not _logger.isEnabledFor(logging.DEBUG):
        return
    if error.recovery_suggestions:
        _logger.debug("Recovery suggestions: %s", error.recovery_suggestions)
    technical = error.technical_details
    if technical.get("code") is not None:
        _logger.debug("Error code: %s", technical["code"])
    if technical.get("message"):
        _logger.debug("Technical message: %s", redact(str(technical["message"])))
    if exc is not None and exc.__traceback__ is not None:
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        _logger.debug("Stack trace:\n%s", redact(trace))
