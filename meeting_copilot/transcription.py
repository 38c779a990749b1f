import time
import logging
from typing import Optional, Protocol

from faster_whisper import WhisperModel

from .error_handling import TranscriptionError
from .file_manager import FileManager
from .models import TranscriptionResult


logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    """Speech-to-text collaborator for a single audio chunk."""

    def transcribe(self, audio: bytes, audio_format: str, snippet_id: str = "") -> TranscriptionResult:
        ...


class ChunkTranscriber:
    """Chunk transcription service using faster-whisper."""

    def __init__(
        self,
        file_manager: FileManager,
        model_size: str = "base",
        device: str = "auto",
        language: str = "auto"
    ):
        """
        Initialize the ChunkTranscriber.

        Args:
            file_manager: Scratch file storage for the audio handed to the model
            model_size: Whisper model size ("tiny", "base", "small", "medium", "large")
            device: Device to use ("cpu", "cuda", "auto")
            language: Language code, or "auto" to detect per chunk
        """
        self.file_manager = file_manager
        self.model_size = model_size
        self.device = device
        self.language = language
        self.model: Optional[WhisperModel] = None

    def _load_model(self) -> WhisperModel:
        """Load the Whisper model on first use."""
        if self.model is None:
            logger.info(f"Loading Whisper model: {self.model_size}")
            self.model = WhisperModel(self.model_size, device=self.device)
            logger.info(f"Successfully loaded model: {self.model_size}")
        return self.model

    def check_model_availability(self) -> bool:
        """Check if the configured model can be loaded."""
        try:
            self._load_model()
            return True
        except Exception as e:
            logger.error(f"Model availability check failed: {e}")
            return False

    def transcribe(self, audio: bytes, audio_format: str, snippet_id: str = "") -> TranscriptionResult:
        """
        Transcribe one audio chunk.

        No retry is attempted; a failed chunk keeps a null transcript.

        Args:
            audio: Raw audio bytes
            audio_format: Declared container format (webm, wav, ...)
            snippet_id: Snippet the audio belongs to, used to name the scratch file

        Returns:
            TranscriptionResult with text and detected language

        Raises:
            TranscriptionError: If the audio is empty or the model fails
        """
        if not audio:
            raise TranscriptionError("Audio chunk is empty")

        path = self.file_manager.write_chunk(snippet_id or f"anon_{int(time.time() * 1000)}", audio, audio_format)
        start_time = time.time()

        try:
            model = self._load_model()
            segments, info = model.transcribe(
                str(path),
                beam_size=5,
                language=None if self.language == "auto" else self.language,
                condition_on_previous_text=False,
                vad_filter=True,  # Voice activity detection
                vad_parameters=dict(min_silence_duration_ms=500)
            )
            text = " ".join(segment.text.strip() for segment in segments).strip()
        except Exception as e:
            logger.error(f"Transcription failed for {path}: {e}")
            raise TranscriptionError(
                f"Failed to transcribe audio: {e}",
                technical_details=f"{type(e).__name__}: {e}",
                original_exception=e
            )
        finally:
            self.file_manager.discard(path)

        processing_time = time.time() - start_time
        language = getattr(info, "language", None)
        duration = getattr(info, "duration", 0.0) or 0.0

        logger.info(f"Transcription completed in {processing_time:.1f}s. "
                    f"Language: {language}, characters: {len(text)}")

        return TranscriptionResult(
            text=text,
            language=language,
            duration=duration,
            processing_time=processing_time,
            model_name=self.model_size
        )
