"""
Session insight orchestrator.

Decides, per session, whether the insight document needs regenerating, picks
the prompt strategy (fresh, incremental or conflict merge), enriches the
prompt with retrieved reference passages, stores the generated document and
names the session once.
"""

import logging
import re
import threading
from typing import Dict, List, Optional, Tuple

from .config import AppConfig
from .error_handling import (
    ErrorRecoveryManager, GenerationError, InputValidationError, ProcessingError,
    SessionNotFoundError, handle_processing_error
)
from .generation import TextGenerator, format_messages_for_log
from .models import (
    Document, InsightResult, InsightStrategy, Passage, Session, TranscriptEntry
)
from .prompts import (
    build_conflict_prompt, build_fresh_prompt, build_incremental_prompt,
    build_naming_prompt, clean_session_name
)
from .retrieval import Retriever
from .store import DocumentStore, SessionStore, TranscriptStore

logger = logging.getLogger(__name__)

MAX_BULLETS = 3

_BULLET_LINE = re.compile(r"^\s*(?:[-•]|\d+\.)\s+(\S.*?)\s*$")


def parse_insight_response(response: str) -> Tuple[str, List[str]]:
    """
    Split a generated response into document content and display bullets.

    Only lines starting with "-", "•" or "N." count as bullets; the first
    three are kept with their markers removed. Other lines stay in the
    content but never become bullets. A response without any list line
    yields the whole trimmed response as its single bullet.

    Args:
        response: Raw generated text

    Returns:
        Tuple of (content, bullets)

    Raises:
        GenerationError: If the response is empty
    """
    content = (response or "").strip()
    if not content:
        raise GenerationError("Generation returned an empty document")

    bullets = []
    for line in content.splitlines():
        match = _BULLET_LINE.match(line)
        if match:
            bullets.append(match.group(1))
            if len(bullets) == MAX_BULLETS:
                break

    return content, bullets or [content]


class SessionLocks:
    """One lock per session id, created on first use."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def for_session(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock


class SessionInsightOrchestrator:
    """
    Keeps each session's insight document in step with its transcripts.

    At most one ensure_insight run or human edit per session is in flight at
    a time; different sessions proceed in parallel.
    """

    def __init__(
        self,
        session_store: SessionStore,
        transcript_store: TranscriptStore,
        document_store: DocumentStore,
        generator: TextGenerator,
        retriever: Optional[Retriever] = None,
        config: Optional[AppConfig] = None,
        error_manager: Optional[ErrorRecoveryManager] = None
    ):
        self.session_store = session_store
        self.transcript_store = transcript_store
        self.document_store = document_store
        self.generator = generator
        self.retriever = retriever
        self.config = config or AppConfig()
        self.error_manager = error_manager or ErrorRecoveryManager()
        self._locks = SessionLocks()

    def ensure_insight(self, session_id: str) -> InsightResult:
        """
        Bring the session's document up to date and return it.

        Args:
            session_id: Session to synchronize

        Returns:
            InsightResult that is ready (with document and strategy) or not
            ready when the session has neither transcripts nor a document

        Raises:
            InputValidationError: If session_id is missing
            SessionNotFoundError: If the session does not exist
            GenerationError: If document generation fails
            StorageError: If a store is unavailable
        """
        session = self._require_session(session_id)
        with self._locks.for_session(session.id):
            # Re-read under the lock so a name assigned by the previous run is seen
            return self._synchronize(self._require_session(session.id))

    def request_insight(self, session_id: str) -> InsightResult:
        """
        ensure_insight with failures folded into a failed result.

        Used by callers that branch on the result status instead of catching
        exceptions, such as the HTTP layer and the in-process poller.
        """
        try:
            return self.ensure_insight(session_id)
        except ProcessingError as e:
            error = handle_processing_error(
                e, "insight", "ensure_insight", session_id=session_id, manager=self.error_manager
            )
            return InsightResult.failed(error.category.value, error.message, error.user_message)

    def save_human_edit(self, session_id: str, content: str) -> Document:
        """
        Store a full replacement of the document written by the user.

        Waits for any generation in flight for the session, so the edit is
        ordered after it and is merged on the next ensure_insight.
        """
        if content is None:
            raise InputValidationError("Missing required field: content")
        session = self._require_session(session_id)
        with self._locks.for_session(session.id):
            document = self.document_store.record_human_edit(session.id, content)
        logger.info(f"Saved human edit for session {session.id} ({len(content)} characters)")
        return document

    def _require_session(self, session_id: str) -> Session:
        if not session_id or not str(session_id).strip():
            raise InputValidationError("Missing required field: sessionId")
        session = self.session_store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def _synchronize(self, session: Session) -> InsightResult:
        # Watermark taken before reading: a transcript landing during this run
        # is newer than the stored LLM update and is picked up by the next run.
        as_of = self.document_store.now()
        current = self.document_store.get_current(session.id)
        # Silent chunks transcribe to blank text and carry nothing to merge
        history = [
            entry for entry in self.transcript_store.list_transcribed_since(session.id)
            if entry.text.strip()
        ]

        if not history:
            if current is not None:
                logger.debug(f"Session {session.id}: no transcripts, returning existing document")
                return InsightResult.ready(current, InsightStrategy.NO_TRANSCRIPTS)
            logger.debug(f"Session {session.id}: no transcripts yet")
            return InsightResult.not_ready()

        if current is None or current.last_llm_update is None:
            new_transcripts = history
        else:
            new_transcripts = [e for e in history if e.updated_at > current.last_llm_update]

        if not new_transcripts and current is not None:
            logger.debug(f"Session {session.id}: no new transcripts since last update")
            return InsightResult.ready(current, InsightStrategy.NO_NEW_TRANSCRIPTS)

        if current is None:
            strategy = InsightStrategy.FRESH_GENERATION
        elif current.has_pending_human_edit:
            strategy = InsightStrategy.CONFLICT_MERGE
        else:
            strategy = InsightStrategy.INCREMENTAL_UPDATE

        logger.info(f"Session {session.id}: {strategy.value} with "
                    f"{len(new_transcripts)} new of {len(history)} transcripts")

        passages = self._retrieve_context(session.id, new_transcripts)

        if strategy == InsightStrategy.FRESH_GENERATION:
            messages = build_fresh_prompt(history, passages)
        elif strategy == InsightStrategy.CONFLICT_MERGE:
            messages = build_conflict_prompt(current.content, new_transcripts, history, passages)
        else:
            messages = build_incremental_prompt(current.content, new_transcripts, history, passages)

        logger.debug(f"Generation prompt: {format_messages_for_log(messages)}")

        try:
            response = self.generator.generate(
                messages, self.config.llm.max_tokens, self.config.llm.temperature
            )
            content, bullets = parse_insight_response(response)
        except GenerationError as e:
            logger.error(f"Document generation failed for session {session.id}: {e}")
            raise

        if session.name is None:
            self._name_session(session.id, history)

        document = self.document_store.upsert_generated(session.id, content, bullets, as_of=as_of)
        logger.info(f"Session {session.id}: document updated ({len(content)} characters, "
                    f"{len(bullets)} bullets)")
        return InsightResult.ready(document, strategy)

    def _retrieve_context(self, session_id: str, transcripts: List[TranscriptEntry]) -> List[Passage]:
        """Best-effort passage lookup; any failure yields no context."""
        if self.retriever is None or not self.config.retrieval.enabled:
            return []

        query = " ".join(entry.text for entry in transcripts).strip()
        if not query:
            return []

        try:
            passages = self.retriever.search(
                query[:self.config.retrieval.max_query_chars],
                self.config.retrieval.match_count,
                self.config.retrieval.match_threshold
            )
        except ProcessingError as e:
            logger.warning(f"Retrieval failed for session {session_id}, continuing without context: {e}")
            return []

        logger.debug(f"Retrieved {len(passages)} passages for session {session_id}")
        return passages

    def _name_session(self, session_id: str, history: List[TranscriptEntry]) -> None:
        """Name the session from its earliest transcripts; failures are skipped."""
        earliest = history[:self.config.llm.naming_transcript_count]
        try:
            raw = self.generator.generate(
                build_naming_prompt(earliest),
                self.config.llm.naming_max_tokens,
                self.config.llm.naming_temperature
            )
            name = clean_session_name(raw or "")
            if name is None:
                logger.warning(f"Session naming returned nothing usable for session {session_id}")
                return
            self.session_store.set_session_name(session_id, name)
            logger.info(f"Named session {session_id}: {name}")
        except ProcessingError as e:
            logger.warning(f"Session naming failed for session {session_id}: {e}")
