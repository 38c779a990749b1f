"""
Ingestion of audio chunks.

A chunk is acknowledged as soon as its snippet row exists; transcription and
embedding run afterwards, outside the request.
"""

import logging
from typing import Optional

from .config import IngestionConfig
from .error_handling import (
    ErrorRecoveryManager, InputValidationError, ProcessingError, RetrievalError,
    SessionNotFoundError, TranscriptionError, handle_processing_error
)
from .models import IngestAck
from .retrieval import Embedder
from .store import SessionStore, TranscriptStore
from .transcription import Transcriber

logger = logging.getLogger(__name__)


class IngestionService:
    """Accepts audio chunks and turns them into transcribed snippets."""

    def __init__(
        self,
        session_store: SessionStore,
        transcript_store: TranscriptStore,
        transcriber: Transcriber,
        embedder: Optional[Embedder] = None,
        config: Optional[IngestionConfig] = None,
        error_manager: Optional[ErrorRecoveryManager] = None
    ):
        self.session_store = session_store
        self.transcript_store = transcript_store
        self.transcriber = transcriber
        self.embedder = embedder
        self.config = config or IngestionConfig()
        self.error_manager = error_manager or ErrorRecoveryManager()

    def normalize_format(self, audio_format: Optional[str], content_type: Optional[str] = None) -> str:
        """
        Resolve the declared audio format.

        Falls back to the subtype of the upload content type ("audio/webm"
        gives "webm"), and to webm when neither is given.
        """
        value = (audio_format or "").strip().lower().lstrip(".")
        if not value and content_type:
            value = content_type.split(";")[0].split("/")[-1].strip().lower()
        return value or "webm"

    def accept_chunk(
        self,
        session_id: str,
        audio: bytes,
        timestamp: Optional[float],
        duration: Optional[float],
        audio_format: str = "webm"
    ) -> IngestAck:
        """
        Validate an audio chunk and record its snippet.

        Nothing is written unless every check passes.

        Args:
            session_id: Session the chunk belongs to
            audio: Raw audio bytes
            timestamp: Capture time reported by the client, in seconds
            duration: Chunk duration in seconds
            audio_format: Declared container format

        Returns:
            IngestAck with the new snippet id

        Raises:
            InputValidationError: If a field is missing or the chunk is rejected
            SessionNotFoundError: If the session does not exist
        """
        if not session_id:
            raise InputValidationError("Missing required field: sessionId")
        if timestamp is None:
            raise InputValidationError("Missing required field: timestamp")
        if duration is None:
            raise InputValidationError("Missing required field: duration")
        if duration < 0:
            raise InputValidationError(f"Invalid duration: {duration}")
        if not audio:
            raise InputValidationError("Missing required field: audio")

        audio_format = self.normalize_format(audio_format)
        if audio_format not in self.config.allowed_formats:
            raise InputValidationError(
                f"Unsupported audio format: {audio_format}",
                user_message=f"Unsupported audio format. Allowed: {', '.join(self.config.allowed_formats)}"
            )

        size_mb = len(audio) / (1024 * 1024)
        if size_mb > self.config.max_chunk_size_mb:
            raise InputValidationError(
                f"Audio chunk too large: {size_mb:.1f}MB (max {self.config.max_chunk_size_mb}MB)"
            )

        if self.session_store.get_session(session_id) is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")

        snippet_id = self.transcript_store.append_snippet(session_id, timestamp, duration)
        logger.info(f"Accepted {audio_format} chunk for session {session_id}: "
                    f"snippet {snippet_id}, {len(audio)} bytes at t={timestamp}")
        return IngestAck(snippet_id=snippet_id)

    def process_chunk(self, snippet_id: str, audio: bytes, audio_format: str = "webm") -> str:
        """
        Transcribe a snippet's audio and store the transcript.

        The transcript embedding is best-effort: failure is logged and the
        transcript is kept.

        Returns:
            The stored transcript text

        Raises:
            TranscriptionError: If transcription fails; the transcript stays null
        """
        result = self.transcriber.transcribe(audio, self.normalize_format(audio_format), snippet_id)
        self.transcript_store.set_transcript(snippet_id, result.text)
        logger.info(f"Stored transcript for snippet {snippet_id} ({len(result.text)} characters)")

        if self.embedder is not None and result.text.strip():
            try:
                self.transcript_store.set_snippet_embedding(snippet_id, self.embedder.embed(result.text))
            except RetrievalError as e:
                logger.warning(f"Failed to embed transcript of snippet {snippet_id}: {e}")

        return result.text

    def run_chunk(self, snippet_id: str, audio: bytes, audio_format: str = "webm") -> None:
        """
        Background entry point for process_chunk.

        Failures are recorded and logged but not raised: there is no caller
        left to receive them once the chunk has been acknowledged.
        """
        try:
            self.process_chunk(snippet_id, audio, audio_format)
        except TranscriptionError as e:
            handle_processing_error(
                e, "ingestion", "transcribe_chunk", snippet_id=snippet_id, manager=self.error_manager
            )
        except ProcessingError as e:
            handle_processing_error(
                e, "ingestion", "process_chunk", snippet_id=snippet_id, manager=self.error_manager
            )
