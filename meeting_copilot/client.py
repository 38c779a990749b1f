"""
HTTP client for the Meeting Copilot server.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .config import PollerConfig
from .error_handling import ErrorCategory, ProcessingError
from .models import Document, InsightResult, InsightStrategy, Passage, SessionSummary

logger = logging.getLogger(__name__)


class CopilotClientError(ProcessingError):
    """A request to the server failed or returned an error status."""
    default_category = ErrorCategory.NETWORK

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class CopilotClient:
    """Thin wrapper over the server's session, ingestion and insight routes."""

    def __init__(self, config: Optional[PollerConfig] = None, backend_url: Optional[str] = None):
        config = config or PollerConfig()
        self.backend_url = (backend_url or config.backend_url).rstrip("/")
        self.timeout_seconds = config.request_timeout_seconds
        self.http = requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.backend_url}{path}"

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        kwargs.setdefault("timeout", self.timeout_seconds)
        try:
            response = self.http.request(method, self._url(path), **kwargs)
        except requests.exceptions.RequestException as e:
            raise CopilotClientError(f"Request to {path} failed: {e}", original_exception=e)

        if not response.ok:
            raise CopilotClientError(
                f"{method} {path} failed: {_error_message(response)}",
                status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError as e:
            raise CopilotClientError(f"Invalid JSON from {path}: {e}", original_exception=e)

    def create_session(self, user_id: Optional[str] = None) -> str:
        """Create a session and return its id."""
        body = {"userId": user_id} if user_id else {}
        return self._request("POST", "/sessions/create", json=body)["sessionId"]

    def end_session(self, session_id: str) -> None:
        self._request("POST", f"/sessions/{session_id}/end")

    def resume_session(self, session_id: str) -> None:
        self._request("POST", f"/sessions/{session_id}/resume")

    def list_sessions(self, user_id: Optional[str] = None) -> List[SessionSummary]:
        params = {"userId": user_id} if user_id else None
        data = self._request("GET", "/sessions", params=params)
        return [SessionSummary.model_validate(item) for item in data.get("sessions", [])]

    def get_session(self, session_id: str) -> Dict[str, Any]:
        """Session record and its current document (None if not created yet)."""
        return self._request("GET", f"/sessions/{session_id}")

    def update_document(self, session_id: str, content: str) -> Document:
        """Save a human edit of the session document."""
        data = self._request("PUT", f"/sessions/{session_id}/document", json={"content": content})
        return Document.model_validate(data["document"])

    def upload_audio_chunk(
        self,
        session_id: str,
        audio: bytes,
        timestamp: float,
        duration: float,
        audio_format: str = "webm"
    ) -> str:
        """Upload one audio chunk and return the snippet id."""
        data = self._request(
            "POST",
            "/ingest/audio-chunk",
            files={"audio": (f"audio.{audio_format}", audio, f"audio/{audio_format}")},
            data={
                "sessionId": session_id,
                "timestamp": str(timestamp),
                "duration": str(duration),
                "format": audio_format,
            }
        )
        return data["snippetId"]

    def search_documents(self, query: str, limit: int = 5) -> List[Passage]:
        data = self._request("POST", "/documents/search", json={"query": query, "limit": limit})
        return [Passage.model_validate(item) for item in data.get("chunks", [])]

    def get_session_insight(self, session_id: str) -> InsightResult:
        """
        Request the up-to-date insight document of a session.

        Never raises: 202 becomes a not-ready result and every other failure
        becomes a failed result.
        """
        try:
            response = self.http.post(
                self._url("/insight/for-session"),
                json={"sessionId": session_id},
                timeout=self.timeout_seconds
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Insight request for session {session_id} failed: {e}")
            return InsightResult.failed(ErrorCategory.NETWORK.value, str(e))

        if response.status_code == 202:
            message = _json_or_empty(response).get("message") or "Waiting for transcripts..."
            return InsightResult.not_ready(message)

        if not response.ok:
            body = _json_or_empty(response)
            error = body.get("error") or {}
            return InsightResult.failed(
                error.get("category", ErrorCategory.UNKNOWN.value),
                body.get("message") or f"HTTP {response.status_code}",
                error.get("user_message")
            )

        body = _json_or_empty(response)
        if "document" not in body:
            return InsightResult.failed(ErrorCategory.UNKNOWN.value, "Insight response without document")

        strategy = body.get("strategy")
        try:
            document = Document.model_validate(body["document"])
            strategy = InsightStrategy(strategy) if strategy else None
        except ValueError as e:
            logger.warning(f"Malformed insight response for session {session_id}: {e}")
            return InsightResult.failed(ErrorCategory.UNKNOWN.value, f"Malformed insight response: {e}")

        return InsightResult.ready(document, strategy)


def _json_or_empty(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(response: requests.Response) -> str:
    return _json_or_empty(response).get("message") or f"HTTP {response.status_code}"
