"""
FastAPI server for Meeting Copilot.

Exposes session lifecycle, audio chunk ingestion, the insight document and the
reference library over REST.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import AppConfig
from .error_handling import (
    ErrorRecoveryManager, GenerationError, InputValidationError, ProcessingError,
    RetrievalError, SessionNotFoundError, StorageError, TranscriptionError,
    handle_processing_error
)
from .file_manager import FileManager
from .generation import OllamaGenerator
from .ingestion import IngestionService
from .insight import SessionInsightOrchestrator
from .models import SessionSummary
from .retrieval import OllamaEmbedder, ReferenceLibrary, ReferenceRetriever
from .sql_store import SqlStore
from .store import InMemoryStore
from .transcription import ChunkTranscriber

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100


@dataclass
class Services:
    """Everything the routes need, built once per application."""
    config: AppConfig
    store: Union[InMemoryStore, SqlStore]
    orchestrator: SessionInsightOrchestrator
    ingestion: IngestionService
    library: ReferenceLibrary
    retriever: ReferenceRetriever
    error_manager: ErrorRecoveryManager
    generator: Optional[OllamaGenerator] = None
    transcriber: Optional[ChunkTranscriber] = None
    file_manager: Optional[FileManager] = None


def build_services(config: AppConfig) -> Services:
    """Construct stores and collaborators from configuration."""
    config.ensure_directories()

    if config.storage.database_url == "memory":
        store = InMemoryStore()
    else:
        store = SqlStore.from_url(config.storage.database_url)

    error_manager = ErrorRecoveryManager()
    file_manager = FileManager(
        base_dir=str(config.files.temp_dir),
        retention_days=config.files.retention_days,
        min_free_space_gb=config.files.min_free_space_gb
    )
    transcriber = ChunkTranscriber(
        file_manager,
        model_size=config.transcription.model_name,
        device=config.transcription.device,
        language=config.transcription.language
    )
    generator = OllamaGenerator(config.llm)
    embedder = OllamaEmbedder(config.llm, model_name=config.retrieval.embedding_model)
    retriever = ReferenceRetriever(store, embedder, config.retrieval)

    return Services(
        config=config,
        store=store,
        orchestrator=SessionInsightOrchestrator(
            store, store, store, generator,
            retriever=retriever, config=config, error_manager=error_manager
        ),
        ingestion=IngestionService(
            store, store, transcriber,
            embedder=embedder, config=config.ingestion, error_manager=error_manager
        ),
        library=ReferenceLibrary(store, embedder, config.retrieval),
        retriever=retriever,
        error_manager=error_manager,
        generator=generator,
        transcriber=transcriber,
        file_manager=file_manager,
    )


# Request models

class CreateSessionRequest(BaseModel):
    userId: Optional[str] = None


class UpdateDocumentRequest(BaseModel):
    content: Optional[str] = None


class InsightRequest(BaseModel):
    sessionId: Optional[str] = None


class DocumentSearchRequest(BaseModel):
    query: Optional[str] = None
    limit: int = 5
    threshold: Optional[float] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    services: Dict[str, bool]
    message: str
    errors: Dict[str, Any]
    storage: Optional[Dict[str, Any]] = None


def error_status_code(error: ProcessingError) -> int:
    """HTTP status for a processing error."""
    if isinstance(error, SessionNotFoundError):
        return 404
    if isinstance(error, InputValidationError):
        return 400
    if isinstance(error, (GenerationError, RetrievalError, TranscriptionError)):
        return 502
    if isinstance(error, StorageError):
        return 503
    return 500


def get_services(request: Request) -> Services:
    return request.app.state.services


def _owner(services: Services, user_id: Optional[str]) -> str:
    return user_id or services.config.storage.default_owner


def _parse_float(value: Optional[str], field: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        raise InputValidationError(f"Invalid {field}: {value}")


def create_app(config: Optional[AppConfig] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: Application configuration (loaded from the environment if None)
        services: Prebuilt services; built at startup if None

    Returns:
        Configured FastAPI app
    """
    if config is None:
        config = services.config if services is not None else AppConfig.load_from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup and shutdown."""
        logger.info("Starting Meeting Copilot server...")
        if app.state.services is None:
            try:
                app.state.services = build_services(config)
                logger.info("All services initialized successfully")
            except Exception as e:
                logger.error(f"Failed to initialize services: {e}")
                raise

        file_manager = app.state.services.file_manager
        if file_manager is not None:
            file_manager.cleanup_old_chunks()

        yield

        logger.info("Shutting down Meeting Copilot server...")

    app = FastAPI(
        title="Meeting Copilot API",
        description="REST API for live meeting transcription and a continuously updated insight document",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProcessingError)
    async def processing_error_handler(request: Request, error: ProcessingError):
        manager = request.app.state.services.error_manager if request.app.state.services else None
        handled = handle_processing_error(
            error, "api", f"{request.method} {request.url.path}", manager=manager
        )
        return JSONResponse(
            status_code=error_status_code(handled),
            content={"status": "error", "message": handled.user_message, "error": handled.to_dict()}
        )

    # Sessions

    @app.post("/sessions/create")
    def create_session(body: Optional[CreateSessionRequest] = None,
                       services: Services = Depends(get_services)):
        """Start a new session."""
        session = services.store.create_session(_owner(services, body.userId if body else None))
        logger.info(f"Created new meeting session: {session.id}")
        return {"sessionId": session.id}

    @app.get("/sessions")
    def list_sessions(userId: Optional[str] = None, services: Services = Depends(get_services)):
        """List sessions, newest first, with a preview of each document."""
        summaries: List[Dict[str, Any]] = []
        for session in services.store.list_sessions(_owner(services, userId)):
            document = services.store.get_current(session.id)
            preview = None
            if document is not None and document.content:
                preview = document.content.split("\n")[0][:PREVIEW_LENGTH]
            summaries.append(SessionSummary(
                id=session.id,
                name=session.name,
                started_at=session.started_at,
                ended_at=session.ended_at,
                updated_at=session.updated_at,
                is_active=session.is_active,
                document_preview=preview
            ).model_dump(mode="json"))
        return {"sessions": summaries}

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str, services: Services = Depends(get_services)):
        """Session with its current document."""
        session = services.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        document = services.store.get_current(session_id)
        return {
            "session": {**session.model_dump(mode="json"), "is_active": session.is_active},
            "document": document.model_dump(mode="json") if document else None,
        }

    @app.post("/sessions/{session_id}/end")
    def end_session(session_id: str, services: Services = Depends(get_services)):
        session = services.store.end_session(session_id)
        logger.info(f"Ended meeting session: {session_id}")
        return {"success": True, "session": session.model_dump(mode="json")}

    @app.post("/sessions/{session_id}/resume")
    def resume_session(session_id: str, services: Services = Depends(get_services)):
        session = services.store.resume_session(session_id)
        logger.info(f"Resumed meeting session: {session_id}")
        return {"success": True, "session": session.model_dump(mode="json")}

    @app.put("/sessions/{session_id}/document")
    def update_document(session_id: str, body: UpdateDocumentRequest,
                        services: Services = Depends(get_services)):
        """Save a human edit of the document."""
        document = services.orchestrator.save_human_edit(session_id, body.content)
        return {"success": True, "document": document.model_dump(mode="json")}

    # Ingestion

    @app.post("/ingest/audio-chunk")
    def ingest_audio_chunk(
        background_tasks: BackgroundTasks,
        audio: Optional[UploadFile] = File(None),
        sessionId: Optional[str] = Form(None),
        timestamp: Optional[str] = Form(None),
        duration: Optional[str] = Form(None),
        format: Optional[str] = Form(None),
        services: Services = Depends(get_services)
    ):
        """Accept an audio chunk; transcription runs after the response is sent."""
        if audio is None:
            raise InputValidationError("Missing required field: audio")

        data = audio.file.read()
        audio_format = services.ingestion.normalize_format(format, audio.content_type)
        ack = services.ingestion.accept_chunk(
            sessionId,
            data,
            _parse_float(timestamp, "timestamp"),
            _parse_float(duration, "duration"),
            audio_format
        )
        background_tasks.add_task(services.ingestion.run_chunk, ack.snippet_id, data, audio_format)
        return {"snippetId": ack.snippet_id, "status": ack.status}

    # Insight

    @app.post("/insight/for-session")
    def insight_for_session(body: InsightRequest, services: Services = Depends(get_services)):
        """Bring the session document up to date and return it."""
        result = services.orchestrator.ensure_insight(body.sessionId)
        if result.is_not_ready:
            return JSONResponse(status_code=202, content={"status": "waiting", "message": result.message})
        return {
            "status": "ready",
            "strategy": result.strategy.value if result.strategy else None,
            "document": result.document.model_dump(mode="json"),
        }

    # Reference library

    @app.post("/documents/ingest")
    def ingest_document(
        document: Optional[UploadFile] = File(None),
        title: Optional[str] = Form(None),
        userId: Optional[str] = Form(None),
        services: Services = Depends(get_services)
    ):
        """Add a text document to the reference library."""
        if document is None:
            raise InputValidationError("Missing required field: document")
        try:
            content = document.file.read().decode("utf-8")
        except UnicodeDecodeError:
            raise InputValidationError("Reference documents must be UTF-8 text")

        stored, chunk_count = services.library.ingest(
            title or document.filename or "", content, _owner(services, userId)
        )
        return {"documentId": stored.id, "title": stored.title, "chunks": chunk_count}

    @app.post("/documents/search")
    def search_documents(body: DocumentSearchRequest, services: Services = Depends(get_services)):
        """Find reference passages similar to a query."""
        if not body.query or not body.query.strip():
            raise InputValidationError("Missing required field: query")
        passages = services.retriever.search(body.query, body.limit, body.threshold)
        return {"chunks": [p.model_dump(mode="json") for p in passages]}

    # Health

    @app.get("/api/health", response_model=HealthResponse)
    def health_check(services: Services = Depends(get_services)):
        """Health check endpoint to verify all services are available."""
        checks = {"store": services.store is not None}

        if services.generator is not None:
            checks["ollama_available"] = services.generator.check_ollama_available()

        if services.transcriber is not None:
            checks["whisper_available"] = services.transcriber.check_model_availability()

        storage = None
        if services.file_manager is not None:
            storage = services.file_manager.get_storage_info()
            checks["disk_space_ok"] = storage["has_sufficient_space"]

        all_healthy = all(checks.values())

        return HealthResponse(
            status="healthy" if all_healthy else "degraded",
            services=checks,
            message="All services operational" if all_healthy else "Some services unavailable",
            errors=services.error_manager.get_error_summary(),
            storage=storage
        )

    return app


def run() -> None:
    """Run the server with configuration from the environment."""
    import uvicorn

    app_config = AppConfig.load_from_env()
    uvicorn.run(
        create_app(app_config),
        host=app_config.server.host,
        port=app_config.server.port,
        log_level="debug" if app_config.server.debug else "info"
    )


if __name__ == "__main__":
    run()
