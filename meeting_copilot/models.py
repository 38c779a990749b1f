from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class Session(BaseModel):
    """One continuous (possibly paused and resumed) listening period."""
    id: str
    owner_id: str
    name: Optional[str] = None  # assigned once, by the first generation
    started_at: datetime
    ended_at: Optional[datetime] = None
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


class SessionSummary(BaseModel):
    """Session listing entry with a short preview of its document."""
    id: str
    name: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    updated_at: datetime
    is_active: bool
    document_preview: Optional[str] = None


class Snippet(BaseModel):
    """One captured audio segment and its eventual transcript."""
    id: str
    session_id: str
    timestamp: float  # capture time reported by the client, in seconds
    duration: float
    transcript: Optional[str] = None  # None until transcription completes
    embedding: Optional[List[float]] = None
    created_at: datetime
    updated_at: datetime


class TranscriptEntry(BaseModel):
    """A transcribed snippet as seen by the orchestrator."""
    snippet_id: str
    text: str
    timestamp: float
    updated_at: datetime


class Document(BaseModel):
    """The single evolving insight document of a session."""
    id: str
    session_id: str
    content: str = ""
    bullets: List[str] = Field(default_factory=list)
    last_llm_update: Optional[datetime] = None
    last_human_edit: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def has_pending_human_edit(self) -> bool:
        """True while a human edit is newer than the last generated update."""
        if self.last_human_edit is None:
            return False
        if self.last_llm_update is None:
            return True
        return self.last_human_edit > self.last_llm_update


class ReferenceDocument(BaseModel):
    """A user supplied text document used as retrieval context."""
    id: str
    owner_id: str
    title: str
    content: str
    created_at: datetime


class ReferenceChunk(BaseModel):
    """An overlapping window of a reference document."""
    id: str
    document_id: str
    document_title: str = ""
    chunk_index: int
    content: str
    embedding: Optional[List[float]] = None


class Passage(BaseModel):
    """A retrieved reference passage with its similarity score."""
    chunk_id: str
    document_id: str
    document_title: str
    content: str
    similarity: float


class ChatMessage(BaseModel):
    """Role-tagged message sent to the generation service."""
    role: str  # "system", "user" or "assistant"
    content: str


class InsightStrategy(str, Enum):
    """Decision taken by one ensure_insight invocation."""
    NO_TRANSCRIPTS = "no_transcripts"
    NO_NEW_TRANSCRIPTS = "no_new_transcripts"
    FRESH_GENERATION = "fresh_generation"
    INCREMENTAL_UPDATE = "incremental_update"
    CONFLICT_MERGE = "conflict_merge"


class InsightStatus(str, Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    FAILED = "failed"


class InsightError(BaseModel):
    """Failure detail carried by a failed insight result."""
    category: str
    message: str
    user_message: Optional[str] = None


class InsightResult(BaseModel):
    """Outcome of an insight request: ready, not ready, or failed."""
    status: InsightStatus
    document: Optional[Document] = None
    strategy: Optional[InsightStrategy] = None
    error: Optional[InsightError] = None
    message: str = ""

    @classmethod
    def ready(cls, document: Document, strategy: Optional[InsightStrategy] = None) -> "InsightResult":
        return cls(status=InsightStatus.READY, document=document, strategy=strategy, message="Document ready")

    @classmethod
    def not_ready(cls, message: str = "Waiting for transcripts...") -> "InsightResult":
        return cls(status=InsightStatus.NOT_READY, strategy=InsightStrategy.NO_TRANSCRIPTS, message=message)

    @classmethod
    def failed(cls, category: str, message: str, user_message: Optional[str] = None) -> "InsightResult":
        return cls(
            status=InsightStatus.FAILED,
            error=InsightError(category=category, message=message, user_message=user_message),
            message=user_message or message
        )

    @property
    def is_ready(self) -> bool:
        return self.status == InsightStatus.READY

    @property
    def is_not_ready(self) -> bool:
        return self.status == InsightStatus.NOT_READY

    @property
    def is_failed(self) -> bool:
        return self.status == InsightStatus.FAILED


class IngestAck(BaseModel):
    """Acknowledgment returned as soon as an audio chunk is accepted."""
    snippet_id: str
    status: str = "received"


class TranscriptionResult(BaseModel):
    """Transcript text for one audio chunk."""
    text: str
    language: Optional[str] = None
    duration: float = 0.0
    processing_time: float = 0.0
    model_name: str = ""
