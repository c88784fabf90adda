"""Core orchestration components for vizql-harness."""

from vizql_harness.core.citations import Citation, extract_citations
from vizql_harness.core.context import ContextProvider, ContextSnapshot
from vizql_harness.core.error_mapping import ErrorCategory, UserFacingError, map_error
from vizql_harness.core.history import ConversationState, ConversationStore

__all__ = [
    "Citation",
    "ContextProvider",
    "ContextSnapshot",
    "ConversationState",
    "ConversationStore",
    "ErrorCategory",
    "UserFacingError",
    "extract_citations",
    "map_error",
]
