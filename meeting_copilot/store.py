"""
Store interfaces and the in-memory store.

The orchestrator, ingestion and HTTP layer only talk to the narrow protocols
defined here. ``InMemoryStore`` implements all of them behind a single lock;
``sql_store.SqlStore`` implements the same protocols on SQLAlchemy.
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

from .error_handling import InputValidationError, SessionNotFoundError
from .models import (
    Document, ReferenceChunk, ReferenceDocument, Session, Snippet, TranscriptEntry
)

logger = logging.getLogger(__name__)


class MonotonicClock:
    """
    Wall clock that never returns the same instant twice.

    Last-modified comparisons are strict, so two writes landing on the same
    clock tick must still be ordered.
    """

    def __init__(self, source: Callable[[], datetime] = datetime.now):
        self._source = source
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = self._source()
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
            return now


class SessionStore(Protocol):
    """Session lifecycle records."""

    def create_session(self, owner_id: str) -> Session:
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def list_sessions(self, owner_id: str) -> List[Session]:
        """Sessions of an owner, most recently started first."""
        ...

    def end_session(self, session_id: str) -> Session:
        ...

    def resume_session(self, session_id: str) -> Session:
        ...

    def set_session_name(self, session_id: str, name: str) -> Session:
        ...


class TranscriptStore(Protocol):
    """Append-only per-chunk transcripts."""

    def append_snippet(self, session_id: str, timestamp: float, duration: float) -> str:
        """Create a snippet without transcript and return its id."""
        ...

    def get_snippet(self, snippet_id: str) -> Optional[Snippet]:
        ...

    def set_transcript(self, snippet_id: str, text: str) -> None:
        ...

    def set_snippet_embedding(self, snippet_id: str, embedding: List[float]) -> None:
        ...

    def list_transcribed_since(
        self, session_id: str, since: Optional[datetime] = None
    ) -> List[TranscriptEntry]:
        """
        Transcribed snippets of a session ordered by capture timestamp.

        Args:
            session_id: Owning session
            since: Only snippets last modified strictly after this instant (all if None)

        Returns:
            Entries ordered by capture timestamp ascending; snippets whose
            transcript is still None are excluded
        """
        ...


class DocumentStore(Protocol):
    """Current insight document per session."""

    def now(self) -> datetime:
        """Current instant on the clock used for last-modified times."""
        ...

    def get_current(self, session_id: str) -> Optional[Document]:
        """The most recently updated document of the session, if any."""
        ...

    def upsert_generated(
        self,
        session_id: str,
        content: str,
        bullets: List[str],
        as_of: Optional[datetime] = None
    ) -> Document:
        """
        Store generated content, updating the current document in place.

        Args:
            session_id: Owning session
            content: Full generated text
            bullets: Derived short list
            as_of: Instant recorded as the last LLM update (now if None)
        """
        ...

    def record_human_edit(self, session_id: str, content: str) -> Document:
        """Replace content with a human edit, creating the document if needed."""
        ...


class ReferenceStore(Protocol):
    """Reference documents and their chunks used for retrieval."""

    def add_reference_document(self, owner_id: str, title: str, content: str) -> ReferenceDocument:
        ...

    def add_reference_chunks(self, document_id: str, chunks: List[str]) -> List[ReferenceChunk]:
        ...

    def set_chunk_embedding(self, chunk_id: str, embedding: List[float]) -> None:
        ...

    def list_embedded_chunks(self, owner_id: Optional[str] = None) -> List[ReferenceChunk]:
        ...


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryStore:
    """In-memory implementation of every store protocol."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.clock = clock or MonotonicClock()
        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._snippets: Dict[str, Snippet] = {}
        self._documents: Dict[str, List[Document]] = {}
        self._references: Dict[str, ReferenceDocument] = {}
        self._chunks: Dict[str, ReferenceChunk] = {}

    def now(self) -> datetime:
        return self.clock()

    # Sessions

    def create_session(self, owner_id: str) -> Session:
        if not owner_id:
            raise InputValidationError("owner_id is required")
        with self._lock:
            now = self.clock()
            session = Session(id=_new_id(), owner_id=owner_id, started_at=now, updated_at=now)
            self._sessions[session.id] = session
            return session.model_copy()

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy() if session else None

    def list_sessions(self, owner_id: str) -> List[Session]:
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.owner_id == owner_id]
            sessions.sort(key=lambda s: s.started_at, reverse=True)
            return [s.model_copy() for s in sessions]

    def end_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._require_session(session_id)
            now = self.clock()
            return self._replace_session(session.model_copy(update={"ended_at": now, "updated_at": now}))

    def resume_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._require_session(session_id)
            return self._replace_session(
                session.model_copy(update={"ended_at": None, "updated_at": self.clock()})
            )

    def set_session_name(self, session_id: str, name: str) -> Session:
        with self._lock:
            session = self._require_session(session_id)
            return self._replace_session(
                session.model_copy(update={"name": name, "updated_at": self.clock()})
            )

    def _require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def _replace_session(self, session: Session) -> Session:
        self._sessions[session.id] = session
        return session.model_copy()

    # Snippets

    def append_snippet(self, session_id: str, timestamp: float, duration: float) -> str:
        with self._lock:
            self._require_session(session_id)
            now = self.clock()
            snippet = Snippet(
                id=_new_id(),
                session_id=session_id,
                timestamp=timestamp,
                duration=duration,
                created_at=now,
                updated_at=now
            )
            self._snippets[snippet.id] = snippet
            return snippet.id

    def get_snippet(self, snippet_id: str) -> Optional[Snippet]:
        with self._lock:
            snippet = self._snippets.get(snippet_id)
            return snippet.model_copy(deep=True) if snippet else None

    def set_transcript(self, snippet_id: str, text: str) -> None:
        with self._lock:
            snippet = self._require_snippet(snippet_id)
            self._snippets[snippet_id] = snippet.model_copy(
                update={"transcript": text, "updated_at": self.clock()}
            )

    def set_snippet_embedding(self, snippet_id: str, embedding: List[float]) -> None:
        # Does not count as a modification of the transcript
        with self._lock:
            snippet = self._require_snippet(snippet_id)
            self._snippets[snippet_id] = snippet.model_copy(update={"embedding": list(embedding)})

    def list_transcribed_since(
        self, session_id: str, since: Optional[datetime] = None
    ) -> List[TranscriptEntry]:
        with self._lock:
            entries = [
                TranscriptEntry(
                    snippet_id=s.id,
                    text=s.transcript,
                    timestamp=s.timestamp,
                    updated_at=s.updated_at
                )
                for s in self._snippets.values()
                if s.session_id == session_id
                and s.transcript is not None
                and (since is None or s.updated_at > since)
            ]
        entries.sort(key=lambda e: (e.timestamp, e.updated_at))
        return entries

    def _require_snippet(self, snippet_id: str) -> Snippet:
        snippet = self._snippets.get(snippet_id)
        if snippet is None:
            raise InputValidationError(f"Snippet not found: {snippet_id}")
        return snippet

    # Documents

    def get_current(self, session_id: str) -> Optional[Document]:
        with self._lock:
            current = self._current_document(session_id)
            return current.model_copy(deep=True) if current else None

    def upsert_generated(
        self,
        session_id: str,
        content: str,
        bullets: List[str],
        as_of: Optional[datetime] = None
    ) -> Document:
        with self._lock:
            now = self.clock()
            current = self._current_document(session_id)
            if current is None:
                document = Document(
                    id=_new_id(),
                    session_id=session_id,
                    content=content,
                    bullets=list(bullets),
                    last_llm_update=as_of or now,
                    created_at=now,
                    updated_at=now
                )
            else:
                document = current.model_copy(update={
                    "content": content,
                    "bullets": list(bullets),
                    "last_llm_update": as_of or now,
                    "updated_at": now
                })
            return self._save_document(document)

    def record_human_edit(self, session_id: str, content: str) -> Document:
        with self._lock:
            now = self.clock()
            current = self._current_document(session_id)
            if current is None:
                document = Document(
                    id=_new_id(),
                    session_id=session_id,
                    content=content,
                    bullets=[],
                    last_human_edit=now,
                    created_at=now,
                    updated_at=now
                )
            else:
                document = current.model_copy(update={
                    "content": content,
                    "last_human_edit": now,
                    "updated_at": now
                })
            return self._save_document(document)

    def _current_document(self, session_id: str) -> Optional[Document]:
        documents = self._documents.get(session_id)
        if not documents:
            return None
        return max(documents, key=lambda d: d.updated_at)

    def _save_document(self, document: Document) -> Document:
        documents = self._documents.setdefault(document.session_id, [])
        for index, existing in enumerate(documents):
            if existing.id == document.id:
                documents[index] = document
                break
        else:
            documents.append(document)
        return document.model_copy(deep=True)

    # Reference library

    def add_reference_document(self, owner_id: str, title: str, content: str) -> ReferenceDocument:
        with self._lock:
            reference = ReferenceDocument(
                id=_new_id(),
                owner_id=owner_id,
                title=title,
                content=content,
                created_at=self.clock()
            )
            self._references[reference.id] = reference
            return reference.model_copy()

    def add_reference_chunks(self, document_id: str, chunks: List[str]) -> List[ReferenceChunk]:
        with self._lock:
            reference = self._references.get(document_id)
            if reference is None:
                raise InputValidationError(f"Reference document not found: {document_id}")
            created = []
            for index, content in enumerate(chunks):
                chunk = ReferenceChunk(
                    id=_new_id(),
                    document_id=document_id,
                    document_title=reference.title,
                    chunk_index=index,
                    content=content
                )
                self._chunks[chunk.id] = chunk
                created.append(chunk.model_copy())
            return created

    def set_chunk_embedding(self, chunk_id: str, embedding: List[float]) -> None:
        with self._lock:
            chunk = self._chunks.get(chunk_id)
            if chunk is None:
                raise InputValidationError(f"Reference chunk not found: {chunk_id}")
            self._chunks[chunk_id] = chunk.model_copy(update={"embedding": list(embedding)})

    def list_embedded_chunks(self, owner_id: Optional[str] = None) -> List[ReferenceChunk]:
        with self._lock:
            return [
                chunk.model_copy(deep=True)
                for chunk in self._chunks.values()
                if chunk.embedding is not None
                and (owner_id is None or self._references[chunk.document_id].owner_id == owner_id)
            ]
