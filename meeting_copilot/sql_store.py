"""SQLAlchemy implementation of the store protocols."""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from sqlalchemy import JSON, DateTime, Engine, Float, ForeignKey, Index, Integer, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session as DbSession, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .error_handling import InputValidationError, SessionNotFoundError, StorageError
from .models import (
    Document, ReferenceChunk, ReferenceDocument, Session, Snippet, TranscriptEntry
)
from .store import MonotonicClock

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class SessionRow(Base):
    __tablename__ = "meeting_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class SnippetRow(Base):
    __tablename__ = "meeting_snippets"
    __table_args__ = (
        Index("idx_snippet_session_timestamp", "session_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("meeting_sessions.id"), nullable=False
    )
    timestamp: Mapped[float] = mapped_column(Float, nullable=False)
    duration: Mapped[float] = mapped_column(Float, nullable=False)
    transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    embedding: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class DocumentRow(Base):
    """Insight document; several rows per session are tolerated, the newest wins."""

    __tablename__ = "insights"
    __table_args__ = (
        Index("idx_insight_session_updated", "session_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("meeting_sessions.id"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    bullets: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    last_llm_update: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_human_edit: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ReferenceDocumentRow(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ReferenceChunkRow(Base):
    __tablename__ = "document_chunks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("documents.id"), nullable=False, index=True
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True), nullable=True)


def create_store_engine(database_url: str) -> Engine:
    """Create SQLAlchemy engine for a database URL.

    An in-memory SQLite URL shares one connection so every session sees the
    same database.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True, echo=False)


def _to_session(row: SessionRow) -> Session:
    return Session(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        started_at=row.started_at,
        ended_at=row.ended_at,
        updated_at=row.updated_at,
    )


def _to_snippet(row: SnippetRow) -> Snippet:
    return Snippet(
        id=row.id,
        session_id=row.session_id,
        timestamp=row.timestamp,
        duration=row.duration,
        transcript=row.transcript,
        embedding=row.embedding,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_document(row: DocumentRow) -> Document:
    return Document(
        id=row.id,
        session_id=row.session_id,
        content=row.content or "",
        bullets=list(row.bullets or []),
        last_llm_update=row.last_llm_update,
        last_human_edit=row.last_human_edit,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlStore:
    """SQL implementation of every store protocol.

    Each operation runs in its own transaction: it either commits in full or
    rolls back and raises StorageError.
    """

    def __init__(
        self,
        engine: Engine,
        clock: Optional[Callable[[], datetime]] = None,
        create_tables: bool = True,
    ) -> None:
        self.engine = engine
        self.clock = clock or MonotonicClock()
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if create_tables:
            try:
                Base.metadata.create_all(engine)
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to create tables: {e}", original_exception=e)

    @classmethod
    def from_url(cls, database_url: str, clock: Optional[Callable[[], datetime]] = None) -> "SqlStore":
        return cls(create_store_engine(database_url), clock=clock)

    def now(self) -> datetime:
        return self.clock()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[DbSession]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Storage operation {operation} failed: {e}")
            raise StorageError(
                f"Storage operation {operation} failed: {e}",
                technical_details=f"{type(e).__name__}: {e}",
                original_exception=e
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Sessions

    def create_session(self, owner_id: str) -> Session:
        if not owner_id:
            raise InputValidationError("owner_id is required")
        with self._transaction("create_session") as db:
            now = self.clock()
            row = SessionRow(
                id=str(uuid.uuid4()), owner_id=owner_id, started_at=now, updated_at=now
            )
            db.add(row)
            db.flush()
            return _to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._transaction("get_session") as db:
            row = db.get(SessionRow, session_id)
            return _to_session(row) if row else None

    def list_sessions(self, owner_id: str) -> List[Session]:
        with self._transaction("list_sessions") as db:
            rows = db.scalars(
                select(SessionRow)
                .where(SessionRow.owner_id == owner_id)
                .order_by(SessionRow.started_at.desc())
            ).all()
            return [_to_session(row) for row in rows]

    def end_session(self, session_id: str) -> Session:
        with self._transaction("end_session") as db:
            row = self._require_session(db, session_id)
            now = self.clock()
            row.ended_at = now
            row.updated_at = now
            return _to_session(row)

    def resume_session(self, session_id: str) -> Session:
        with self._transaction("resume_session") as db:
            row = self._require_session(db, session_id)
            row.ended_at = None
            row.updated_at = self.clock()
            return _to_session(row)

    def set_session_name(self, session_id: str, name: str) -> Session:
        with self._transaction("set_session_name") as db:
            row = self._require_session(db, session_id)
            row.name = name
            row.updated_at = self.clock()
            return _to_session(row)

    def _require_session(self, db: DbSession, session_id: str) -> SessionRow:
        row = db.get(SessionRow, session_id)
        if row is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return row

    # Snippets

    def append_snippet(self, session_id: str, timestamp: float, duration: float) -> str:
        with self._transaction("append_snippet") as db:
            self._require_session(db, session_id)
            now = self.clock()
            row = SnippetRow(
                id=str(uuid.uuid4()),
                session_id=session_id,
                timestamp=timestamp,
                duration=duration,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            return row.id

    def get_snippet(self, snippet_id: str) -> Optional[Snippet]:
        with self._transaction("get_snippet") as db:
            row = db.get(SnippetRow, snippet_id)
            return _to_snippet(row) if row else None

    def set_transcript(self, snippet_id: str, text: str) -> None:
        with self._transaction("set_transcript") as db:
            row = self._require_snippet(db, snippet_id)
            row.transcript = text
            row.updated_at = self.clock()

    def set_snippet_embedding(self, snippet_id: str, embedding: List[float]) -> None:
        with self._transaction("set_snippet_embedding") as db:
            row = self._require_snippet(db, snippet_id)
            row.embedding = list(embedding)

    def list_transcribed_since(
        self, session_id: str, since: Optional[datetime] = None
    ) -> List[TranscriptEntry]:
        with self._transaction("list_transcribed_since") as db:
            query = select(SnippetRow).where(
                SnippetRow.session_id == session_id,
                SnippetRow.transcript.is_not(None),
            )
            if since is not None:
                query = query.where(SnippetRow.updated_at > since)
            rows = db.scalars(
                query.order_by(SnippetRow.timestamp.asc(), SnippetRow.updated_at.asc())
            ).all()
            return [
                TranscriptEntry(
                    snippet_id=row.id,
                    text=row.transcript,
                    timestamp=row.timestamp,
                    updated_at=row.updated_at,
                )
                for row in rows
            ]

    def _require_snippet(self, db: DbSession, snippet_id: str) -> SnippetRow:
        row = db.get(SnippetRow, snippet_id)
        if row is None:
            raise InputValidationError(f"Snippet not found: {snippet_id}")
        return row

    # Documents

    def get_current(self, session_id: str) -> Optional[Document]:
        with self._transaction("get_current") as db:
            row = self._current_row(db, session_id)
            return _to_document(row) if row else None

    def upsert_generated(
        self,
        session_id: str,
        content: str,
        bullets: List[str],
        as_of: Optional[datetime] = None
    ) -> Document:
        with self._transaction("upsert_generated") as db:
            now = self.clock()
            row = self._current_row(db, session_id)
            if row is None:
                row = DocumentRow(
                    id=str(uuid.uuid4()),
                    session_id=session_id,
                    created_at=now,
                )
                db.add(row)
            row.content = content
            row.bullets = list(bullets)
            row.last_llm_update = as_of or now
            row.updated_at = now
            db.flush()
            return _to_document(row)

    def record_human_edit(self, session_id: str, content: str) -> Document:
        with self._transaction("record_human_edit") as db:
            now = self.clock()
            row = self._current_row(db, session_id)
            if row is None:
                row = DocumentRow(
                    id=str(uuid.uuid4()),
                    session_id=session_id,
                    bullets=[],
                    created_at=now,
                )
                db.add(row)
            row.content = content
            row.last_human_edit = now
            row.updated_at = now
            db.flush()
            return _to_document(row)

    def _current_row(self, db: DbSession, session_id: str) -> Optional[DocumentRow]:
        return db.scalars(
            select(DocumentRow)
            .where(DocumentRow.session_id == session_id)
            .order_by(DocumentRow.updated_at.desc())
            .limit(1)
        ).first()

    # Reference library

    def add_reference_document(self, owner_id: str, title: str, content: str) -> ReferenceDocument:
        with self._transaction("add_reference_document") as db:
            row = ReferenceDocumentRow(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                title=title,
                content=content,
                created_at=self.clock(),
            )
            db.add(row)
            return ReferenceDocument(
                id=row.id,
                owner_id=row.owner_id,
                title=row.title,
                content=row.content,
                created_at=row.created_at,
            )

    def add_reference_chunks(self, document_id: str, chunks: List[str]) -> List[ReferenceChunk]:
        with self._transaction("add_reference_chunks") as db:
            reference = db.get(ReferenceDocumentRow, document_id)
            if reference is None:
                raise InputValidationError(f"Reference document not found: {document_id}")
            created = []
            for index, content in enumerate(chunks):
                row = ReferenceChunkRow(
                    id=str(uuid.uuid4()),
                    document_id=document_id,
                    chunk_index=index,
                    content=content,
                )
                db.add(row)
                created.append(ReferenceChunk(
                    id=row.id,
                    document_id=document_id,
                    document_title=reference.title,
                    chunk_index=index,
                    content=content,
                ))
            return created

    def set_chunk_embedding(self, chunk_id: str, embedding: List[float]) -> None:
        with self._transaction("set_chunk_embedding") as db:
            row = db.get(ReferenceChunkRow, chunk_id)
            if row is None:
                raise InputValidationError(f"Reference chunk not found: {chunk_id}")
            row.embedding = list(embedding)

    def list_embedded_chunks(self, owner_id: Optional[str] = None) -> List[ReferenceChunk]:
        with self._transaction("list_embedded_chunks") as db:
            query = (
                select(ReferenceChunkRow, ReferenceDocumentRow.title)
                .join(ReferenceDocumentRow, ReferenceChunkRow.document_id == ReferenceDocumentRow.id)
                .where(ReferenceChunkRow.embedding.is_not(None))
            )
            if owner_id is not None:
                query = query.where(ReferenceDocumentRow.owner_id == owner_id)
            return [
                ReferenceChunk(
                    id=row.id,
                    document_id=row.document_id,
                    document_title=title,
                    chunk_index=row.chunk_index,
                    content=row.content,
                    embedding=row.embedding,
                )
                for row, title in db.execute(query).all()
            ]
