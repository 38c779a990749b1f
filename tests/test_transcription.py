import shutil
import tempfile
from types import SimpleNamespace

import pytest
from unittest.mock import Mock, patch

from meeting_copilot.error_handling import TranscriptionError
from meeting_copilot.file_manager import FileManager
from meeting_copilot.models import TranscriptionResult
from meeting_copilot.transcription import ChunkTranscriber


class TestChunkTranscriber:
    """Test suite for ChunkTranscriber class."""

    @pytest.fixture
    def file_manager(self):
        temp_dir = tempfile.mkdtemp()
        yield FileManager(base_dir=temp_dir, min_free_space_gb=0.0)
        shutil.rmtree(temp_dir)

    @pytest.fixture
    def transcriber(self, file_manager):
        """Create a ChunkTranscriber instance for testing."""
        return ChunkTranscriber(file_manager, model_size="tiny", device="cpu")

    @pytest.fixture
    def mock_whisper(self):
        """Patch WhisperModel with a model returning two segments."""
        with patch('meeting_copilot.transcription.WhisperModel') as mock_model_class:
            model = Mock()
            segments = [SimpleNamespace(text=" Hello everyone. "), SimpleNamespace(text="Let's start.")]
            model.transcribe.return_value = (iter(segments), SimpleNamespace(language="en", duration=4.5))
            mock_model_class.return_value = model
            yield mock_model_class

    def test_init(self, file_manager):
        """Test ChunkTranscriber initialization."""
        transcriber = ChunkTranscriber(file_manager, model_size="base", device="cpu")

        assert transcriber.model_size == "base"
        assert transcriber.device == "cpu"
        assert transcriber.language == "auto"
        assert transcriber.model is None

    def test_model_is_loaded_once(self, transcriber, mock_whisper):
        transcriber.transcribe(b"audio-1", "webm", "s1")
        transcriber.transcribe(b"audio-2", "webm", "s2")

        mock_whisper.assert_called_once_with("tiny", device="cpu")

    def test_transcribe_success(self, transcriber, mock_whisper, file_manager):
        result = transcriber.transcribe(b"webm-bytes", "webm", "snippet-1")

        assert isinstance(result, TranscriptionResult)
        assert result.text == "Hello everyone. Let's start."
        assert result.language == "en"
        assert result.duration == 4.5
        assert result.model_name == "tiny"
        assert list(file_manager.chunk_dir.iterdir()) == []

    def test_transcribe_passes_audio_file_and_language(self, file_manager, mock_whisper):
        transcriber = ChunkTranscriber(file_manager, model_size="tiny", device="cpu", language="de")

        transcriber.transcribe(b"wav-bytes", "wav", "snippet-1")

        model = mock_whisper.return_value
        args, kwargs = model.transcribe.call_args
        assert args[0].endswith("chunk_snippet-1.wav")
        assert kwargs["language"] == "de"
        assert kwargs["vad_filter"] is True

    def test_auto_language_is_detected(self, transcriber, mock_whisper):
        transcriber.transcribe(b"bytes", "webm", "snippet-1")

        assert mock_whisper.return_value.transcribe.call_args.kwargs["language"] is None

    def test_empty_audio(self, transcriber):
        with pytest.raises(TranscriptionError):
            transcriber.transcribe(b"", "webm", "snippet-1")

    def test_model_failure_is_transcription_error(self, transcriber, mock_whisper, file_manager):
        mock_whisper.return_value.transcribe.side_effect = RuntimeError("Invalid data found when processing input")

        with pytest.raises(TranscriptionError) as exc_info:
            transcriber.transcribe(b"corrupt", "webm", "snippet-1")

        assert isinstance(exc_info.value.original_exception, RuntimeError)
        assert list(file_manager.chunk_dir.iterdir()) == []

    def test_check_model_availability(self, transcriber, mock_whisper):
        assert transcriber.check_model_availability() is True

    def test_check_model_availability_failure(self, transcriber):
        with patch('meeting_copilot.transcription.WhisperModel', side_effect=RuntimeError("no model")):
            assert transcriber.check_model_availability() is False
