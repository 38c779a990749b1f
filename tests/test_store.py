"""
Tests for the in-memory and SQL stores.

Every behavioral test runs against both implementations.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from meeting_copilot.error_handling import InputValidationError, SessionNotFoundError, StorageError
from meeting_copilot.sql_store import SqlStore
from meeting_copilot.store import InMemoryStore, MonotonicClock


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryStore()
    return SqlStore.from_url("sqlite://")


class TestMonotonicClock:
    """Test cases for MonotonicClock."""

    def test_never_repeats_an_instant(self):
        frozen = datetime(2024, 5, 1, 9, 0, 0)
        clock = MonotonicClock(source=lambda: frozen)

        first, second, third = clock(), clock(), clock()

        assert first == frozen
        assert first < second < third

    def test_does_not_go_backwards(self):
        times = iter([datetime(2024, 5, 1, 9, 0, 5), datetime(2024, 5, 1, 9, 0, 0)])
        clock = MonotonicClock(source=lambda: next(times))

        first = clock()
        second = clock()

        assert second == first + timedelta(microseconds=1)


class TestSessions:
    """Session lifecycle."""

    def test_create_and_get(self, store):
        session = store.create_session("user-1")

        loaded = store.get_session(session.id)

        assert loaded.id == session.id
        assert loaded.owner_id == "user-1"
        assert loaded.name is None
        assert loaded.is_active

    def test_get_unknown_session(self, store):
        assert store.get_session("missing") is None

    def test_create_requires_owner(self, store):
        with pytest.raises(InputValidationError):
            store.create_session("")

    def test_end_and_resume(self, store):
        session = store.create_session("user-1")

        ended = store.end_session(session.id)
        assert ended.ended_at is not None
        assert not ended.is_active

        resumed = store.resume_session(session.id)
        assert resumed.ended_at is None
        assert resumed.is_active
        assert resumed.updated_at > ended.updated_at

    def test_list_sessions_newest_first_per_owner(self, store):
        first = store.create_session("user-1")
        second = store.create_session("user-1")
        store.create_session("user-2")

        sessions = store.list_sessions("user-1")

        assert [s.id for s in sessions] == [second.id, first.id]

    def test_set_session_name(self, store):
        session = store.create_session("user-1")

        store.set_session_name(session.id, "Quarterly planning")

        assert store.get_session(session.id).name == "Quarterly planning"

    @pytest.mark.parametrize("operation", ["end_session", "resume_session"])
    def test_unknown_session_operations(self, store, operation):
        with pytest.raises(SessionNotFoundError):
            getattr(store, operation)("missing")


class TestTranscripts:
    """Snippet storage and transcript listing."""

    def test_append_requires_session(self, store):
        with pytest.raises(SessionNotFoundError):
            store.append_snippet("missing", 0.0, 60.0)

    def test_new_snippet_has_no_transcript(self, store):
        session = store.create_session("user-1")
        snippet_id = store.append_snippet(session.id, 0.0, 60.0)

        snippet = store.get_snippet(snippet_id)

        assert snippet.transcript is None
        assert store.list_transcribed_since(session.id) == []

    def test_listing_is_ordered_by_capture_time(self, store):
        session = store.create_session("user-1")
        late = store.append_snippet(session.id, 120.0, 60.0)
        early = store.append_snippet(session.id, 0.0, 60.0)
        store.set_transcript(late, "second")
        store.set_transcript(early, "first")

        entries = store.list_transcribed_since(session.id)

        assert [e.text for e in entries] == ["first", "second"]
        assert [e.timestamp for e in entries] == [0.0, 120.0]

    def test_listing_since_is_strict_and_restartable(self, store):
        session = store.create_session("user-1")
        first = store.append_snippet(session.id, 0.0, 60.0)
        store.set_transcript(first, "intro")
        watermark = store.get_snippet(first).updated_at
        second = store.append_snippet(session.id, 60.0, 60.0)
        store.set_transcript(second, "topic A")

        once = store.list_transcribed_since(session.id, watermark)
        again = store.list_transcribed_since(session.id, watermark)

        assert [e.text for e in once] == ["topic A"]
        assert once == again

    def test_sessions_do_not_leak(self, store):
        one = store.create_session("user-1")
        other = store.create_session("user-1")
        store.set_transcript(store.append_snippet(other.id, 0.0, 60.0), "elsewhere")

        assert store.list_transcribed_since(one.id) == []

    def test_set_transcript_bumps_modified_time(self, store):
        session = store.create_session("user-1")
        snippet_id = store.append_snippet(session.id, 0.0, 60.0)
        created = store.get_snippet(snippet_id).updated_at

        store.set_transcript(snippet_id, "hello")

        assert store.get_snippet(snippet_id).updated_at > created

    def test_embedding_does_not_bump_modified_time(self, store):
        session = store.create_session("user-1")
        snippet_id = store.append_snippet(session.id, 0.0, 60.0)
        store.set_transcript(snippet_id, "hello")
        before = store.get_snippet(snippet_id).updated_at

        store.set_snippet_embedding(snippet_id, [0.1, 0.2])

        snippet = store.get_snippet(snippet_id)
        assert snippet.embedding == [0.1, 0.2]
        assert snippet.updated_at == before

    def test_unknown_snippet(self, store):
        with pytest.raises(InputValidationError):
            store.set_transcript("missing", "text")


class TestDocuments:
    """Current document per session."""

    def test_no_document_initially(self, store):
        session = store.create_session("user-1")

        assert store.get_current(session.id) is None

    def test_upsert_creates_then_updates_in_place(self, store):
        session = store.create_session("user-1")

        created = store.upsert_generated(session.id, "- one", ["one"])
        updated = store.upsert_generated(session.id, "- one\n- two", ["one", "two"])

        assert updated.id == created.id
        assert updated.bullets == ["one", "two"]
        assert updated.last_llm_update > created.last_llm_update
        assert store.get_current(session.id).content == "- one\n- two"

    def test_upsert_records_watermark(self, store):
        session = store.create_session("user-1")
        as_of = store.now()

        document = store.upsert_generated(session.id, "text", ["text"], as_of=as_of)

        assert document.last_llm_update == as_of
        assert document.updated_at > as_of

    def test_human_edit_creates_document_with_empty_bullets(self, store):
        session = store.create_session("user-1")

        document = store.record_human_edit(session.id, "my notes")

        assert document.content == "my notes"
        assert document.bullets == []
        assert document.last_llm_update is None
        assert document.has_pending_human_edit

    def test_human_edit_keeps_bullets_and_marks_pending(self, store):
        session = store.create_session("user-1")
        generated = store.upsert_generated(session.id, "- one", ["one"])

        edited = store.record_human_edit(session.id, "- one, edited")

        assert edited.id == generated.id
        assert edited.bullets == ["one"]
        assert edited.last_human_edit > edited.last_llm_update
        assert edited.has_pending_human_edit

    def test_generation_after_edit_clears_pending_state(self, store):
        session = store.create_session("user-1")
        store.record_human_edit(session.id, "mine")

        document = store.upsert_generated(session.id, "merged", ["merged"])

        assert not document.has_pending_human_edit


class TestReferenceLibraryStorage:
    """Reference documents and chunks."""

    def test_only_embedded_chunks_are_listed(self, store):
        reference = store.add_reference_document("user-1", "Handbook", "text")
        chunks = store.add_reference_chunks(reference.id, ["part one", "part two"])

        store.set_chunk_embedding(chunks[0].id, [1.0, 0.0])

        listed = store.list_embedded_chunks()
        assert [c.content for c in listed] == ["part one"]
        assert listed[0].document_title == "Handbook"
        assert listed[0].embedding == [1.0, 0.0]

    def test_chunks_filtered_by_owner(self, store):
        mine = store.add_reference_document("user-1", "Mine", "text")
        theirs = store.add_reference_document("user-2", "Theirs", "text")
        for reference in (mine, theirs):
            chunk = store.add_reference_chunks(reference.id, ["content"])[0]
            store.set_chunk_embedding(chunk.id, [1.0])

        assert [c.document_title for c in store.list_embedded_chunks("user-1")] == ["Mine"]
        assert len(store.list_embedded_chunks()) == 2

    def test_chunks_require_document(self, store):
        with pytest.raises(InputValidationError):
            store.add_reference_chunks("missing", ["content"])


class TestSqlStoreFailures:
    """Storage failures surface as StorageError."""

    def test_database_error_becomes_storage_error(self):
        store = SqlStore.from_url("sqlite://")
        session = store.create_session("user-1")

        with patch.object(
            store, "_current_row", side_effect=OperationalError("SELECT", {}, Exception("disk I/O error"))
        ):
            with pytest.raises(StorageError):
                store.upsert_generated(session.id, "text", ["text"])

        assert store.get_current(session.id) is None
