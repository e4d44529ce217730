"""Tests for the SQLite store."""

import sqlite3
from unittest.mock import patch

import pytest

from repochat.core import Citation, Project
from repochat.store import ChatStore, SessionNotFound, StoreError


class TestCatalog:
    def test_list_projects_keeps_order(self, store, sample_projects):
        projects = store.list_projects()
        assert [p.id for p in projects] == [p.id for p in sample_projects]
        assert projects[0].tags == ["ui"]
        assert projects[0].repo_identifier == "acme/widget"

    def test_replace_projects(self, store):
        count = store.replace_projects([Project(id="x", name="acme/x")])
        assert count == 1
        assert [p.repo_identifier for p in store.list_projects()] == ["acme/x"]

    def test_empty_store(self, tmp_path):
        assert ChatStore(tmp_path / "nested" / "dir" / "db.sqlite").list_projects() == []


class TestSessions:
    def test_record_turn_creates_session(self, store):
        citations = [Citation(1, "acme/widget", path="README.md")]
        session = store.record_turn("s1", "visitor-a", "what is widget?", "A toolkit.", citations, "acme/widget")

        assert session.id == "s1"
        assert session.visitor_id == "visitor-a"
        assert session.last_message_summary == "A toolkit."
        assert session.active_repo == "acme/widget"
        assert session.last_message_at is not None

        messages = store.list_messages("s1", "visitor-a")
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].citations == []
        assert messages[1].citations == citations

    def test_record_turn_appends_to_existing_session(self, store):
        store.record_turn("s1", "visitor-a", "q1", "a1", [])
        store.record_turn("s1", "visitor-a", "q2", "a2", [], None)

        messages = store.list_messages("s1", "visitor-a")
        assert [m.content for m in messages] == ["q1", "a1", "q2", "a2"]

    def test_active_repo_kept_when_not_given(self, store):
        store.record_turn("s1", "visitor-a", "q1", "a1", [], "acme/widget")
        session = store.record_turn("s1", "visitor-a", "q2", "a2", [], None)
        assert session.active_repo == "acme/widget"

    def test_summary_is_truncated(self, store):
        session = store.record_turn("s1", "visitor-a", "q", "x" * 500, [])
        assert len(session.last_message_summary) == 120
        assert session.last_message_summary.endswith("...")

    def test_record_turn_rejects_other_visitor(self, store):
        store.record_turn("s1", "visitor-a", "q1", "a1", [])
        with pytest.raises(SessionNotFound):
            store.record_turn("s1", "visitor-b", "q2", "a2", [])
        assert len(store.list_messages("s1", "visitor-a")) == 2

    def test_list_messages_limit_keeps_newest(self, store):
        for i in range(3):
            store.record_turn("s1", "visitor-a", f"q{i}", f"a{i}", [])
        messages = store.list_messages("s1", "visitor-a", limit=3)
        assert [m.content for m in messages] == ["a1", "q2", "a2"]

    def test_list_messages_requires_owner(self, store):
        store.record_turn("s1", "visitor-a", "q", "a", [])
        with pytest.raises(SessionNotFound):
            store.list_messages("s1", "visitor-b")
        with pytest.raises(SessionNotFound):
            store.list_messages("missing", "visitor-a")

    def test_list_sessions_per_visitor(self, store):
        store.record_turn("s1", "visitor-a", "q", "a", [])
        store.record_turn("s2", "visitor-b", "q", "a", [])
        store.record_turn("s3", "visitor-a", "q", "a", [])

        sessions = store.list_sessions("visitor-a")
        assert {s.id for s in sessions} == {"s1", "s3"}
        assert store.list_sessions("nobody") == []

    def test_create_session_and_append_message(self, store):
        session = store.create_session("visitor-a")
        assert store.get_session(session.id).visitor_id == "visitor-a"

        store.append_message(session.id, "user", "hello")
        store.append_message(session.id, "assistant", "hi", [Citation(1, "acme/widget")])
        messages = store.list_messages(session.id, "visitor-a")
        assert [m.content for m in messages] == ["hello", "hi"]
        assert messages[1].citations[0].repo == "acme/widget"

    def test_create_duplicate_session(self, store):
        store.create_session("visitor-a", session_id="dup")
        with pytest.raises(StoreError):
            store.create_session("visitor-a", session_id="dup")

    def test_append_to_missing_session(self, store):
        with pytest.raises(SessionNotFound):
            store.append_message("missing", "user", "hello")

    def test_get_missing_session(self, store):
        assert store.get_session("missing") is None

    def test_sqlite_errors_become_store_errors(self, store):
        with patch.object(store, "_insert_message", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(StoreError):
                store.record_turn("s1", "visitor-a", "q", "a", [])
        # The failed turn left nothing behind
        assert store.get_session("s1") is None
