"""
Tests for the session insight orchestrator.
"""

import threading
from unittest.mock import Mock

import pytest

from meeting_copilot.config import AppConfig, RetrievalConfig
from meeting_copilot.error_handling import (
    ErrorRecoveryManager, GenerationError, InputValidationError, RetrievalError,
    SessionNotFoundError
)
from meeting_copilot.insight import SessionInsightOrchestrator, parse_insight_response
from meeting_copilot.models import InsightStrategy, Passage
from meeting_copilot.prompts import (
    CURRENT_DOCUMENT, EDITED_DOCUMENT, NEW_TRANSCRIPTS, REFERENCE_CONTEXT, TRANSCRIPT_HISTORY
)
from meeting_copilot.sql_store import SqlStore
from meeting_copilot.store import InMemoryStore

from fakes import ScriptedGenerator, add_transcript, section_lines


def make_orchestrator(store, generator, retriever=None, config=None, error_manager=None):
    return SessionInsightOrchestrator(
        store, store, store, generator,
        retriever=retriever, config=config, error_manager=error_manager
    )


class TestParseInsightResponse:
    """Test cases for splitting a response into content and bullets."""

    def test_non_list_lines_stay_in_content_only(self):
        content, bullets = parse_insight_response("- buy milk\nFoo\n- call Bob\n")

        assert bullets == ["buy milk", "call Bob"]
        assert content == "- buy milk\nFoo\n- call Bob"
        assert "Foo" in content

    def test_recognizes_glyph_and_numbered_markers(self):
        _, bullets = parse_insight_response("• first\n2. second\n- third")

        assert bullets == ["first", "second", "third"]

    def test_keeps_first_three_bullets(self):
        _, bullets = parse_insight_response("- a\n- b\n- c\n- d\n- e")

        assert bullets == ["a", "b", "c"]

    def test_response_without_list_lines_is_single_bullet(self):
        content, bullets = parse_insight_response("  The team agreed on the launch date.  \n")

        assert content == "The team agreed on the launch date."
        assert bullets == ["The team agreed on the launch date."]

    def test_numbers_inside_text_are_not_bullets(self):
        _, bullets = parse_insight_response("Revenue grew 1.5 million\n- Hiring paused")

        assert bullets == ["Hiring paused"]

    def test_indented_bullets_are_recognized(self):
        _, bullets = parse_insight_response("## Key points\n  - Ship on Friday\n")

        assert bullets == ["Ship on Friday"]

    @pytest.mark.parametrize("response", ["", "   \n\n  ", None])
    def test_empty_response_is_a_generation_error(self, response):
        with pytest.raises(GenerationError):
            parse_insight_response(response)


class TestNotReady:
    """Sessions without transcripts."""

    def test_no_transcripts_and_no_document_is_not_ready(self, store, generator):
        session = store.create_session("user-1")
        orchestrator = make_orchestrator(store, generator)

        result = orchestrator.ensure_insight(session.id)

        assert result.is_not_ready
        assert not result.is_failed
        assert result.document is None
        assert result.strategy == InsightStrategy.NO_TRANSCRIPTS
        assert generator.calls == []
        assert store.get_current(session.id) is None

    def test_untranscribed_snippets_do_not_count(self, store, generator):
        session = store.create_session("user-1")
        store.append_snippet(session.id, 0.0, 60.0)
        orchestrator = make_orchestrator(store, generator)

        assert orchestrator.ensure_insight(session.id).is_not_ready

    def test_silent_transcripts_do_not_count(self, store, generator):
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "")
        add_transcript(store, session.id, 60, "   ")
        orchestrator = make_orchestrator(store, generator)

        assert orchestrator.ensure_insight(session.id).is_not_ready
        assert generator.calls == []

    def test_silent_chunk_does_not_trigger_regeneration(self, store, generator):
        session = store.create_session("user-1")
        orchestrator = make_orchestrator(store, generator)
        add_transcript(store, session.id, 0, "intro")
        first = orchestrator.ensure_insight(session.id)
        calls_after_first = len(generator.calls)

        add_transcript(store, session.id, 60, "")
        second = orchestrator.ensure_insight(session.id)

        assert second.strategy == InsightStrategy.NO_NEW_TRANSCRIPTS
        assert second.document.model_dump() == first.document.model_dump()
        assert len(generator.calls) == calls_after_first

    def test_existing_document_is_returned_without_transcripts(self, store, generator):
        session = store.create_session("user-1")
        orchestrator = make_orchestrator(store, generator)
        orchestrator.save_human_edit(session.id, "Agenda: budget")

        result = orchestrator.ensure_insight(session.id)

        assert result.is_ready
        assert result.strategy == InsightStrategy.NO_TRANSCRIPTS
        assert result.document.content == "Agenda: budget"
        assert generator.calls == []


class TestStrategySelection:
    """Strategy decisions and the inputs handed to generation."""

    @pytest.fixture(params=["memory", "sql"])
    def store(self, request):
        if request.param == "memory":
            return InMemoryStore()
        return SqlStore.from_url("sqlite://")

    @pytest.fixture
    def session(self, store):
        return store.create_session("user-1")

    @pytest.fixture
    def orchestrator(self, store, generator):
        return make_orchestrator(store, generator)

    def test_meeting_scenario(self, store, generator, session, orchestrator):
        """Fresh generation, then an incremental update with only the new transcript."""
        add_transcript(store, session.id, 0, "intro")
        add_transcript(store, session.id, 60, "topic A")
        add_transcript(store, session.id, 120, "topic A cont.")

        first = orchestrator.ensure_insight(session.id)

        assert first.is_ready
        assert first.strategy == InsightStrategy.FRESH_GENERATION
        fresh_prompt = generator.document_calls[0]
        assert section_lines(fresh_prompt, TRANSCRIPT_HISTORY) == ["intro", "topic A", "topic A cont."]
        assert section_lines(fresh_prompt, CURRENT_DOCUMENT) is None
        assert len(generator.naming_calls) == 1
        assert store.get_session(session.id).name == "Weekly Sync"

        add_transcript(store, session.id, 180, "topic B")
        second = orchestrator.ensure_insight(session.id)

        assert second.strategy == InsightStrategy.INCREMENTAL_UPDATE
        incremental_prompt = generator.document_calls[1]
        assert section_lines(incremental_prompt, NEW_TRANSCRIPTS) == ["topic B"]
        assert section_lines(incremental_prompt, TRANSCRIPT_HISTORY) == [
            "intro", "topic A", "topic A cont.", "topic B"
        ]
        assert "\n".join(section_lines(incremental_prompt, CURRENT_DOCUMENT)) == first.document.content
        assert len(generator.naming_calls) == 1
        assert second.document.id == first.document.id

    def test_second_call_without_new_transcripts_is_idempotent(self, store, generator, session, orchestrator):
        add_transcript(store, session.id, 0, "intro")
        first = orchestrator.ensure_insight(session.id)
        calls_after_first = len(generator.calls)

        second = orchestrator.ensure_insight(session.id)

        assert second.strategy == InsightStrategy.NO_NEW_TRANSCRIPTS
        assert second.document.model_dump() == first.document.model_dump()
        assert len(generator.calls) == calls_after_first

    def test_document_content_only_grows_in_transcripts(self, store, generator, session, orchestrator):
        included = []
        for index, text in enumerate(["alpha", "beta", "gamma", "delta"]):
            add_transcript(store, session.id, index * 60, text)
            included.append(text)
            content = orchestrator.ensure_insight(session.id).document.content
            assert all(t in content for t in included)

    def test_human_edit_forces_conflict_merge(self, store, generator, session, orchestrator):
        add_transcript(store, session.id, 0, "intro")
        orchestrator.ensure_insight(session.id)
        orchestrator.save_human_edit(session.id, "My own notes")
        add_transcript(store, session.id, 60, "topic B")

        result = orchestrator.ensure_insight(session.id)

        assert result.strategy == InsightStrategy.CONFLICT_MERGE
        prompt = generator.document_calls[-1]
        assert section_lines(prompt, EDITED_DOCUMENT) == ["My own notes"]
        assert section_lines(prompt, CURRENT_DOCUMENT) is None
        assert section_lines(prompt, NEW_TRANSCRIPTS) == ["topic B"]
        assert not result.document.has_pending_human_edit

    def test_merged_edit_is_not_merged_again(self, store, generator, session, orchestrator):
        add_transcript(store, session.id, 0, "intro")
        orchestrator.ensure_insight(session.id)
        orchestrator.save_human_edit(session.id, "My own notes")
        add_transcript(store, session.id, 60, "topic B")
        orchestrator.ensure_insight(session.id)
        add_transcript(store, session.id, 120, "topic C")

        result = orchestrator.ensure_insight(session.id)

        assert result.strategy == InsightStrategy.INCREMENTAL_UPDATE

    def test_edit_without_new_transcripts_is_kept(self, store, generator, session, orchestrator):
        add_transcript(store, session.id, 0, "intro")
        orchestrator.ensure_insight(session.id)
        orchestrator.save_human_edit(session.id, "Rewritten by hand")
        calls = len(generator.calls)

        result = orchestrator.ensure_insight(session.id)

        assert result.strategy == InsightStrategy.NO_NEW_TRANSCRIPTS
        assert result.document.content == "Rewritten by hand"
        assert len(generator.calls) == calls

    def test_document_created_by_edit_is_merged(self, store, generator, session, orchestrator):
        orchestrator.save_human_edit(session.id, "Prepared agenda")
        add_transcript(store, session.id, 0, "intro")

        result = orchestrator.ensure_insight(session.id)

        assert result.strategy == InsightStrategy.CONFLICT_MERGE
        prompt = generator.document_calls[0]
        assert section_lines(prompt, EDITED_DOCUMENT) == ["Prepared agenda"]
        assert section_lines(prompt, NEW_TRANSCRIPTS) == ["intro"]

    def test_transcript_arriving_during_generation_is_picked_up_next(
        self, store, generator, session, orchestrator
    ):
        add_transcript(store, session.id, 0, "intro")
        late = store.append_snippet(session.id, 60, 60.0)
        generator.before_document = lambda: store.set_transcript(late, "late arrival")

        first = orchestrator.ensure_insight(session.id)
        generator.before_document = None
        second = orchestrator.ensure_insight(session.id)

        assert "late arrival" not in first.document.content
        assert second.strategy == InsightStrategy.INCREMENTAL_UPDATE
        assert section_lines(generator.document_calls[-1], NEW_TRANSCRIPTS) == ["late arrival"]

    def test_modified_transcript_is_included_again(self, store, generator, session, orchestrator):
        add_transcript(store, session.id, 0, "intro")
        snippet_id = add_transcript(store, session.id, 60, "topic A")
        orchestrator.ensure_insight(session.id)

        store.set_transcript(snippet_id, "topic A revised")
        result = orchestrator.ensure_insight(session.id)

        assert result.strategy == InsightStrategy.INCREMENTAL_UPDATE
        assert section_lines(generator.document_calls[-1], NEW_TRANSCRIPTS) == ["topic A revised"]


class TestSessionNaming:
    """One-time naming of a session."""

    def test_naming_is_requested_once(self, store, generator):
        session = store.create_session("user-1")
        orchestrator = make_orchestrator(store, generator)

        add_transcript(store, session.id, 0, "intro")
        orchestrator.ensure_insight(session.id)
        add_transcript(store, session.id, 60, "topic A")
        orchestrator.ensure_insight(session.id)

        assert len(generator.document_calls) == 2
        assert len(generator.naming_calls) == 1

    def test_name_is_stripped_of_quotes(self, store):
        generator = ScriptedGenerator(name='"Budget Review"')
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "let's review the budget")

        make_orchestrator(store, generator).ensure_insight(session.id)

        assert store.get_session(session.id).name == "Budget Review"

    def test_naming_uses_earliest_transcripts(self, store, generator):
        session = store.create_session("user-1")
        for index, text in enumerate(["one", "two", "three", "four"]):
            add_transcript(store, session.id, index * 60, text)

        make_orchestrator(store, generator).ensure_insight(session.id)

        assert section_lines(generator.naming_calls[0], "TRANSCRIPT") == ["one", "two", "three"]

    def test_naming_failure_is_not_fatal(self, store, generator):
        generator.fail_naming = True
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "intro")

        result = make_orchestrator(store, generator).ensure_insight(session.id)

        assert result.is_ready
        assert result.strategy == InsightStrategy.FRESH_GENERATION
        assert store.get_session(session.id).name is None

    def test_named_session_is_not_renamed(self, store, generator):
        session = store.create_session("user-1")
        store.set_session_name(session.id, "Existing name")
        add_transcript(store, session.id, 0, "intro")

        make_orchestrator(store, generator).ensure_insight(session.id)

        assert generator.naming_calls == []
        assert store.get_session(session.id).name == "Existing name"


class TestRetrievalPolicy:
    """Reference context lookup around generation."""

    @pytest.fixture
    def session(self, store):
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "what is our travel budget")
        return session

    @pytest.fixture
    def passage(self):
        return Passage(
            chunk_id="c1",
            document_id="d1",
            document_title="Handbook",
            content="Travel budget is 2k per quarter",
            similarity=0.91
        )

    def test_passages_are_added_to_the_prompt(self, store, generator, session, passage):
        retriever = Mock()
        retriever.search.return_value = [passage]
        config = AppConfig(retrieval=RetrievalConfig(match_count=2, match_threshold=0.5))

        make_orchestrator(store, generator, retriever, config).ensure_insight(session.id)

        retriever.search.assert_called_once_with("what is our travel budget", 2, 0.5)
        context = section_lines(generator.document_calls[0], REFERENCE_CONTEXT)
        assert context == ["- (Handbook) Travel budget is 2k per quarter"]

    def test_query_uses_only_new_transcripts(self, store, generator, session):
        retriever = Mock()
        retriever.search.return_value = []
        orchestrator = make_orchestrator(store, generator, retriever)
        orchestrator.ensure_insight(session.id)
        add_transcript(store, session.id, 60, "hotel policy")

        orchestrator.ensure_insight(session.id)

        assert retriever.search.call_args_list[-1].args[0] == "hotel policy"

    def test_query_is_truncated(self, store, generator):
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "x" * 50)
        retriever = Mock()
        retriever.search.return_value = []
        config = AppConfig(retrieval=RetrievalConfig(max_query_chars=10))

        make_orchestrator(store, generator, retriever, config).ensure_insight(session.id)

        assert retriever.search.call_args.args[0] == "x" * 10

    def test_retrieval_failure_is_swallowed(self, store, generator, session):
        retriever = Mock()
        retriever.search.side_effect = RetrievalError("embedding service down")

        result = make_orchestrator(store, generator, retriever).ensure_insight(session.id)

        assert result.is_ready
        assert result.strategy == InsightStrategy.FRESH_GENERATION
        assert section_lines(generator.document_calls[0], REFERENCE_CONTEXT) is None

    def test_disabled_retrieval_is_not_called(self, store, generator, session):
        retriever = Mock()
        config = AppConfig(retrieval=RetrievalConfig(enabled=False))

        make_orchestrator(store, generator, retriever, config).ensure_insight(session.id)

        retriever.search.assert_not_called()


class TestFailures:
    """Generation failures and invalid requests."""

    def test_generation_failure_propagates(self, store, generator):
        generator.fail_documents = True
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "intro")
        orchestrator = make_orchestrator(store, generator)

        with pytest.raises(GenerationError):
            orchestrator.ensure_insight(session.id)

        assert store.get_current(session.id) is None
        assert generator.naming_calls == []

    def test_failed_generation_is_retried_on_next_call(self, store, generator):
        generator.fail_documents = True
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "intro")
        orchestrator = make_orchestrator(store, generator)
        with pytest.raises(GenerationError):
            orchestrator.ensure_insight(session.id)

        generator.fail_documents = False
        result = orchestrator.ensure_insight(session.id)

        assert result.strategy == InsightStrategy.FRESH_GENERATION

    def test_empty_generation_is_a_failure(self, store):
        generator = ScriptedGenerator(responses=["   "])
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "intro")

        with pytest.raises(GenerationError):
            make_orchestrator(store, generator).ensure_insight(session.id)

    def test_request_insight_reports_failure(self, store, generator):
        generator.fail_documents = True
        manager = ErrorRecoveryManager()
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "intro")

        result = make_orchestrator(store, generator, error_manager=manager).request_insight(session.id)

        assert result.is_failed
        assert result.error.category == "generation"
        assert result.document is None
        assert result.message.startswith("Could not update the document.")
        assert result.error.message == "Ollama API error: 500 - boom"
        assert manager.get_error_summary()["total_errors"] == 1

    def test_request_insight_passes_not_ready_through(self, store, generator):
        session = store.create_session("user-1")

        result = make_orchestrator(store, generator).request_insight(session.id)

        assert result.is_not_ready

    def test_unknown_session(self, store, generator):
        orchestrator = make_orchestrator(store, generator)

        with pytest.raises(SessionNotFoundError):
            orchestrator.ensure_insight("missing")
        assert orchestrator.request_insight("missing").error.category == "validation"

    @pytest.mark.parametrize("session_id", ["", "   ", None])
    def test_missing_session_id(self, store, generator, session_id):
        with pytest.raises(InputValidationError):
            make_orchestrator(store, generator).ensure_insight(session_id)

    def test_human_edit_requires_content(self, store, generator):
        session = store.create_session("user-1")

        with pytest.raises(InputValidationError):
            make_orchestrator(store, generator).save_human_edit(session.id, None)

        assert store.get_current(session.id) is None


class TestSerialization:
    """Concurrent calls for one session."""

    def test_concurrent_calls_for_one_session_do_not_overlap(self, store, generator):
        generator.delay = 0.05
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "intro")
        orchestrator = make_orchestrator(store, generator)
        results = []

        threads = [
            threading.Thread(target=lambda: results.append(orchestrator.ensure_insight(session.id)))
            for _ in range(3)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert generator.max_active == 1
        assert len(generator.document_calls) == 1
        strategies = sorted(r.strategy.value for r in results)
        assert strategies == ["fresh_generation", "no_new_transcripts", "no_new_transcripts"]

    def test_edit_waits_for_generation_in_flight(self, store, generator):
        session = store.create_session("user-1")
        add_transcript(store, session.id, 0, "intro")
        orchestrator = make_orchestrator(store, generator)
        started = threading.Event()
        release = threading.Event()

        def block():
            started.set()
            release.wait(2)

        generator.before_document = block
        worker = threading.Thread(target=orchestrator.ensure_insight, args=(session.id,))
        worker.start()
        started.wait(2)

        editor = threading.Thread(target=orchestrator.save_human_edit, args=(session.id, "manual"))
        editor.start()
        editor.join(0.1)
        assert store.get_current(session.id) is None

        release.set()
        worker.join()
        editor.join()

        document = store.get_current(session.id)
        assert document.content == "manual"
        assert document.has_pending_human_edit
