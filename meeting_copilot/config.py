"""Configuration management for Meeting Copilot."""

import os
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field


class TranscriptionConfig(BaseModel):
    """Transcription service configuration."""
    model_name: str = Field(default="base", description="Whisper model size (tiny, base, small, medium, large)")
    language: str = Field(default="auto", description="Language code or 'auto' for detection")
    device: str = Field(default="auto", description="Device for inference (auto, cpu, cuda)")


class LLMConfig(BaseModel):
    """Generation service configuration."""
    model_name: str = Field(default="llama3.1:8b", description="Ollama model name")
    temperature: float = Field(default=0.4, description="Temperature for document generation")
    max_tokens: int = Field(default=2000, description="Maximum tokens for a generated document")
    timeout_seconds: int = Field(default=120, description="Timeout for LLM requests")
    ollama_url: str = Field(default="http://localhost:11434", description="Ollama server URL")
    naming_max_tokens: int = Field(default=24, description="Maximum tokens for a session name")
    naming_temperature: float = Field(default=0.3, description="Temperature for session naming")
    naming_transcript_count: int = Field(default=3, description="Earliest transcripts used to name a session")


class RetrievalConfig(BaseModel):
    """Retrieval-augmented generation configuration."""
    enabled: bool = Field(default=True, description="Look up reference passages before generating")
    embedding_model: str = Field(default="nomic-embed-text", description="Ollama embedding model name")
    match_count: int = Field(default=3, description="Maximum number of passages per lookup")
    match_threshold: float = Field(default=0.7, description="Minimum cosine similarity for a passage")
    chunk_size: int = Field(default=1000, description="Reference document chunk size in characters")
    chunk_overlap: int = Field(default=200, description="Overlap between consecutive chunks in characters")
    max_query_chars: int = Field(default=8000, description="Query text is truncated to this many characters")


class StorageConfig(BaseModel):
    """Persistence configuration."""
    database_url: str = Field(default="memory", description="'memory' or a SQLAlchemy database URL")
    default_owner: str = Field(default="default-user", description="Owner used when a request names none")


class PollerConfig(BaseModel):
    """Client synchronization poller configuration."""
    chunk_duration_seconds: float = Field(default=60.0, description="Audio chunk duration in seconds")
    poll_interval_seconds: Optional[float] = Field(default=None, description="Poll interval (defaults to chunk duration)")
    backend_url: str = Field(default="http://localhost:8000", description="Server URL used by the HTTP client")
    request_timeout_seconds: float = Field(default=180.0, description="Timeout for insight requests")

    @property
    def interval(self) -> float:
        """Effective poll interval in seconds."""
        if self.poll_interval_seconds:
            return self.poll_interval_seconds
        return self.chunk_duration_seconds


class IngestionConfig(BaseModel):
    """Audio chunk ingestion configuration."""
    max_chunk_size_mb: float = Field(default=10.0, description="Maximum accepted audio chunk size in MB")
    allowed_formats: List[str] = Field(
        default=["webm", "mp3", "mpeg", "wav", "m4a", "ogg"],
        description="Accepted audio container formats"
    )


class ServerConfig(BaseModel):
    """FastAPI server configuration."""
    host: str = Field(default="127.0.0.1", description="Server host address")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")
    cors_origins: list[str] = Field(default=["*"], description="CORS allowed origins")


class FileConfig(BaseModel):
    """Scratch file configuration."""
    temp_dir: Path = Field(default=Path("temp"), description="Directory for audio chunks awaiting transcription")
    retention_days: int = Field(default=1, description="Days to retain orphaned scratch files")
    min_free_space_gb: float = Field(default=0.5, description="Minimum free disk space in GB")


class AppConfig(BaseModel):
    """Main application configuration."""
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    files: FileConfig = Field(default_factory=FileConfig)

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """Load configuration from environment variables."""
        config = cls()

        # Transcription settings
        if os.getenv("WHISPER_MODEL"):
            config.transcription.model_name = os.getenv("WHISPER_MODEL")
        if os.getenv("TRANSCRIPTION_LANGUAGE"):
            config.transcription.language = os.getenv("TRANSCRIPTION_LANGUAGE")

        # LLM settings
        if os.getenv("OLLAMA_URL"):
            config.llm.ollama_url = os.getenv("OLLAMA_URL")
        if os.getenv("OLLAMA_MODEL"):
            config.llm.model_name = os.getenv("OLLAMA_MODEL")
        if os.getenv("LLM_TEMPERATURE"):
            config.llm.temperature = float(os.getenv("LLM_TEMPERATURE"))
        if os.getenv("LLM_MAX_TOKENS"):
            config.llm.max_tokens = int(os.getenv("LLM_MAX_TOKENS"))

        # Retrieval settings
        if os.getenv("EMBEDDING_MODEL"):
            config.retrieval.embedding_model = os.getenv("EMBEDDING_MODEL")
        if os.getenv("RAG_MATCH_COUNT"):
            config.retrieval.match_count = int(os.getenv("RAG_MATCH_COUNT"))
        if os.getenv("RAG_MATCH_THRESHOLD"):
            config.retrieval.match_threshold = float(os.getenv("RAG_MATCH_THRESHOLD"))
        if os.getenv("RAG_ENABLED"):
            config.retrieval.enabled = os.getenv("RAG_ENABLED").lower() == "true"

        # Storage settings
        if os.getenv("DATABASE_URL"):
            config.storage.database_url = os.getenv("DATABASE_URL")

        # Poller settings
        if os.getenv("CHUNK_DURATION"):
            config.poller.chunk_duration_seconds = float(os.getenv("CHUNK_DURATION"))
        if os.getenv("POLL_INTERVAL"):
            config.poller.poll_interval_seconds = float(os.getenv("POLL_INTERVAL"))
        if os.getenv("BACKEND_URL"):
            config.poller.backend_url = os.getenv("BACKEND_URL")

        # Server settings
        if os.getenv("SERVER_HOST"):
            config.server.host = os.getenv("SERVER_HOST")
        if os.getenv("SERVER_PORT"):
            config.server.port = int(os.getenv("SERVER_PORT"))
        if os.getenv("DEBUG"):
            config.server.debug = os.getenv("DEBUG").lower() == "true"

        return config

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.files.temp_dir.mkdir(parents=True, exist_ok=True)
