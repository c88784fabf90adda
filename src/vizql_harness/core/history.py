"""In-memory conversation history keyed by session id."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from vizql_harness.types import ROLE_ASSISTANT, ROLE_USER

_logger = logging.getLogger(__name__)

MAX_STORED_MESSAGES = 50

_CONTEXT_FIELDS = (
    "datasource_luid",
    "datasource_name",
    "workbook_id",
    "workbook_name",
    "view_id",
    "view_name",
)


@dataclass
class ConversationState:
    """One session's stored turns plus its current selection."""

    session_id: str
    messages: list[dict[str, str]] = field(default_factory=list)
    datasource_luid: str | None = None
    datasource_name: str | None = None
    workbook_id: str | None = None
    workbook_name: str | None = None
    view_id: str | None = None
    view_name: str | None = None
    last_access: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_access = time.monotonic()


class ConversationStore:
    """Session-keyed store with bounded per-session history.

    Not persisted: a process restart forgets every session.
    """

    def __init__(self, max_messages: int = MAX_STORED_MESSAGES) -> None:
        self._sessions: dict[str, ConversationState] = {}
        self._max_messages = max_messages

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create(self, session_id: str | None = None, **context: Any) -> ConversationState:
        """Start a session; a fresh UUID is used unless *session_id* is given."""
        state = ConversationState(session_id=session_id or str(uuid.uuid4()))
        self._apply_context(state, context)
        self._sessions[state.session_id] = state
        _logger.debug("Created session %s", state.session_id)
        return state

    def get_or_create(self, session_id: str | None = None, **context: Any) -> ConversationState:
        """Return *session_id*'s state (merging *context*), or a new session.

        An unknown *session_id* is adopted for the new session.
        """
        if session_id and session_id in self._sessions:
            state = self._sessions[session_id]
            self._apply_context(state, context)
            state.touch()
            return state
        return self.create(session_id, **context)

    def get(self, session_id: str) -> ConversationState | None:
        state = self._sessions.get(session_id)
        if state is not None:
            state.touch()
        return state

    def update_context(self, session_id: str, **context: Any) -> None:
        """Update selection fields; anything outside the selection is ignored."""
        state = self._sessions.get(session_id)
        if state is None:
            return
        self._apply_context(state, context)
        state.touch()

    def add_message(self, session_id: str, role: str, content: str) -> None:
        state = self.get(session_id)
        if state is None:
            _logger.debug("add_message for unknown session %s ignored", session_id)
            return
        if len(state.messages) >= self._max_messages:
            state.messages = state.messages[-(self._max_messages - 1):]
        state.messages.append({"role": role, "content": content})

    def recent(self, session_id: str, limit: int) -> list[dict[str, str]]:
        """Last *limit* user/assistant messages of a session (oldest first)."""
        state = self._sessions.get(session_id)
        if state is None or limit <= 0:
            return []
        turns = [m for m in state.messages if m["role"] in (ROLE_USER, ROLE_ASSISTANT)]
        return [dict(m) for m in turns[-limit:]]

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def cleanup_expired(self, ttl: float) -> int:
        """Drop sessions idle for more than *ttl* seconds.  Returns the count."""
        now = time.monotonic()
        expired = [sid for sid, s in self._sessions.items() if now - s.last_access > ttl]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            _logger.info("Expired %d idle session(s)", len(expired))
        return len(expired)

    @staticmethod
    def _apply_context(state: ConversationState, context: dict[str, Any]) -> None:
        for key in _CONTEXT_FIELDS:
            if context.get(key) is not None:
                setattr(state, key, context[key])
