import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Tuple
import logging

from .error_handling import ProcessingError, ErrorCategory, ErrorSeverity

logger = logging.getLogger(__name__)


class FileManager:
    """Manages scratch files for audio chunks awaiting transcription."""

    def __init__(self, base_dir: str = "temp", retention_days: int = 1,
                 min_free_space_gb: float = 0.5):
        """
        Initialize FileManager with configuration.

        Args:
            base_dir: Base directory for scratch files
            retention_days: Days to keep orphaned chunk files before cleanup
            min_free_space_gb: Minimum free space required in GB
        """
        self.base_dir = Path(base_dir)
        self.retention_days = retention_days
        self.min_free_space_gb = min_free_space_gb

        self.chunk_dir = self.base_dir / "chunks"
        self.chunk_dir.mkdir(parents=True, exist_ok=True)

    def get_chunk_file_path(self, snippet_id: str, audio_format: str) -> Path:
        """Generate scratch file path for a snippet's audio."""
        extension = audio_format.lower().lstrip(".") or "webm"
        return self.chunk_dir / f"chunk_{snippet_id}.{extension}"

    def write_chunk(self, snippet_id: str, audio: bytes, audio_format: str) -> Path:
        """
        Write an audio chunk to a scratch file.

        Args:
            snippet_id: Snippet the audio belongs to
            audio: Raw audio bytes
            audio_format: Container format, used as file extension

        Returns:
            Path of the written file

        Raises:
            ProcessingError: If disk space is insufficient or the write fails
        """
        has_space, free_gb, warning = self.check_disk_space()
        if not has_space:
            raise ProcessingError(
                f"Insufficient disk space: {warning}",
                category=ErrorCategory.FILE_SYSTEM,
                severity=ErrorSeverity.HIGH,
                user_message=f"Insufficient disk space for audio processing. {warning}"
            )

        path = self.get_chunk_file_path(snippet_id, audio_format)
        try:
            path.write_bytes(audio)
        except OSError as e:
            raise ProcessingError(
                f"Failed to write audio chunk {path}: {e}",
                category=ErrorCategory.FILE_SYSTEM,
                original_exception=e
            )
        logger.debug(f"Wrote {len(audio)} bytes of audio to {path}")
        return path

    def discard(self, path: Path) -> bool:
        """Remove a scratch file; missing files are ignored."""
        try:
            Path(path).unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.warning(f"Could not remove scratch file {path}: {e}")
            return False

    def get_file_size_mb(self, filepath: str) -> float:
        """Get file size in MB."""
        try:
            if os.path.exists(filepath):
                size_bytes = os.path.getsize(filepath)
                return size_bytes / (1024 * 1024)
            return 0.0
        except OSError as e:
            logger.error(f"Error getting file size for {filepath}: {e}")
            return 0.0

    def check_disk_space(self) -> Tuple[bool, float, str]:
        """
        Check available disk space.

        Returns:
            Tuple of (has_enough_space, free_space_gb, warning_message)
        """
        try:
            total, used, free = shutil.disk_usage(self.base_dir)
            free_gb = free / (1024**3)

            if free_gb < self.min_free_space_gb:
                warning = (f"Low disk space: {free_gb:.1f}GB available. "
                           f"Minimum {self.min_free_space_gb}GB required.")
                return False, free_gb, warning

            return True, free_gb, ""
        except OSError as e:
            logger.error(f"Error checking disk space: {e}")
            return False, 0.0, f"Unable to check disk space: {e}"

    def cleanup_old_chunks(self) -> Dict[str, float]:
        """
        Remove chunk files older than retention_days.

        Chunks are normally discarded right after transcription; this catches
        files left behind by a crash.

        Returns:
            Dictionary with cleanup statistics
        """
        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        stats = {"chunk_files_removed": 0, "space_freed_mb": 0.0}

        for chunk_file in self.chunk_dir.glob("chunk_*"):
            if not chunk_file.is_file():
                continue
            file_time = datetime.fromtimestamp(chunk_file.stat().st_mtime)
            if file_time < cutoff_date:
                size_mb = self.get_file_size_mb(str(chunk_file))
                if self.discard(chunk_file):
                    stats["chunk_files_removed"] += 1
                    stats["space_freed_mb"] += size_mb

        if stats["chunk_files_removed"] > 0:
            logger.info(f"Chunk cleanup completed: {stats}")

        return stats

    def get_storage_info(self) -> Dict[str, object]:
        """Get scratch storage information."""
        has_space, free_gb, space_warning = self.check_disk_space()
        chunk_files = [f for f in self.chunk_dir.glob("chunk_*") if f.is_file()]

        return {
            "has_sufficient_space": has_space,
            "free_space_gb": free_gb,
            "space_warning": space_warning,
            "pending_chunk_files": len(chunk_files),
            "pending_chunk_size_mb": sum(self.get_file_size_mb(str(f)) for f in chunk_files),
            "retention_days": self.retention_days,
        }
