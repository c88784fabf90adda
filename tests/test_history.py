"""Tests for the in-memory conversation store."""

from __future__ import annotations

from unittest.mock import patch

from vizql_harness.core.history import ConversationStore


class TestConversationStore:
    def test_create_generates_id(self):
        store = ConversationStore()
        state = store.create(datasource_luid="ds-1")
        assert state.session_id in store
        assert state.datasource_luid == "ds-1"
        assert len(store) == 1

    def test_get_or_create_adopts_unknown_id(self):
        store = ConversationStore()
        state = store.get_or_create("session-abc")
        assert state.session_id == "session-abc"
        assert store.get_or_create("session-abc") is state

    def test_context_merge_ignores_none_and_unknown(self):
        store = ConversationStore()
        store.create("s", datasource_luid="ds-1", workbook_id="wb-1")
        store.update_context("s", workbook_id=None, view_id="v-1", not_a_field="x")
        state = store.get("s")
        assert state.workbook_id == "wb-1"
        assert state.view_id == "v-1"
        assert not hasattr(state, "not_a_field")

    def test_messages_bounded(self):
        store = ConversationStore(max_messages=50)
        store.create("s")
        for i in range(60):
            store.add_message("s", "user", f"m{i}")
        messages = store.get("s").messages
        assert len(messages) == 50
        assert messages[0]["content"] == "m10"
        assert messages[-1]["content"] == "m59"

    def test_recent(self):
        store = ConversationStore()
        store.create("s")
        for i, role in enumerate(["user", "assistant", "system", "user"]):
            store.add_message("s", role, f"m{i}")
        assert store.recent("s", 2) == [
            {"role": "assistant", "content": "m1"},
            {"role": "user", "content": "m3"},
        ]
        assert store.recent("s", 0) == []
        assert store.recent("missing", 5) == []

    def test_add_to_unknown_session_ignored(self):
        store = ConversationStore()
        store.add_message("missing", "user", "hi")
        assert len(store) == 0

    def test_cleanup_expired(self):
        store = ConversationStore()
        store.create("old").last_access = 100.0
        store.create("new").last_access = 150.0
        with patch("vizql_harness.core.history.time.monotonic", return_value=200.0):
            assert store.cleanup_expired(ttl=60) == 1
        assert "old" not in store
        assert "new" in store

    def test_delete(self):
        store = ConversationStore()
        store.create("s")
        store.delete("s")
        store.delete("s")
        assert store.get("s") is None
