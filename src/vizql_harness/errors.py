"""Exception taxonomy for vizql-harness.

Expected tool failures travel back to the model as error ``ToolResult``
objects and never leave the dispatcher.  The exceptions here describe
faults: a bad caller argument, a remote service failure while it is being
classified for retry, a model gateway failure, or a terminal run failure.
"""

from __future__ import annotations

import enum
from typing import Any


class HarnessError(Exception):
    """Base class for all vizql-harness errors."""


class InvalidInputError(HarnessError, ValueError):
    """Malformed caller arguments.  Never retried."""


# ---------------------------------------------------------------------------
# Tool service errors
# ---------------------------------------------------------------------------

class ToolErrorKind(enum.Enum):
    """Classification used for retry decisions and user-facing mapping."""

    INVALID_INPUT = "invalid_input"
    REMOTE_PROTOCOL = "remote_protocol"
    REMOTE_TRANSPORT = "remote_transport"


class ToolError(HarnessError):
    """Failure of a call to the tool-execution service.

    Parameters
    ----------
    message:
        Human-readable description (the original service message when one
        exists).
    kind:
        Error classification.
    code:
        HTTP status, negative JSON-RPC code, ``408`` for timeouts, or
        ``None`` for network faults without a status.
    details:
        Structured diagnostics such as status text and a truncated body.
    cause:
        Underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        kind: ToolErrorKind = ToolErrorKind.REMOTE_TRANSPORT,
        code: int | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.code = code
        self.details = details or {}
        self.cause = cause
        self.recovery_suggestions: list[str] = []
        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        """Whether the backoff loop may retry this failure."""
        if self.kind is not ToolErrorKind.REMOTE_TRANSPORT:
            return False
        code = self.code
        if code is None:
            return True
        if code < 0:
            return False
        if code >= 500 or code in (408, 429):
            return True
        return False

    def __repr__(self) -> str:
        return (
            f"ToolError({self.message!r}, kind={self.kind.value}, "
            f"code={self.code!r})"
        )


def invalid_params(message: str, **details: Any) -> ToolError:
    """Build a local ``-32602`` validation error."""
    return ToolError(
        message, kind=ToolErrorKind.INVALID_INPUT, code=-32602,
        details=details or None,
    )


# ---------------------------------------------------------------------------
# Model gateway errors
# ---------------------------------------------------------------------------

class ModelGatewayError(HarnessError):
    """Any failure contacting the model gateway.  Fatal to a run."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


# ---------------------------------------------------------------------------
# Engine errors
# ---------------------------------------------------------------------------

class RoundBudgetExceeded(HarnessError):
    """The round bound was reached without a final answer."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"Max iterations ({max_rounds}) reached")
        self.max_rounds = max_rounds


class OrchestrationError(HarnessError):
    """Terminal failure of one orchestration run.

    ``user_error`` carries the plain-language message and recovery
    suggestions that were also pushed as the ``error`` progress event.
    """

    def __init__(self, message: str, user_error: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_error = user_error

    @property
    def recovery_suggestions(self) -> list[str]:
        if self.user_error is None:
            return []
        return list(self.user_error.recovery_suggestions)
