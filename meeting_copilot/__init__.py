"""Meeting Copilot - Live meeting transcription with a continuously updated insight document."""

__version__ = "0.1.0"

from .config import AppConfig
from .insight import SessionInsightOrchestrator, parse_insight_response
from .models import (
    Session,
    Snippet,
    Document,
    InsightResult,
    InsightStatus,
    InsightStrategy
)
from .store import InMemoryStore

__all__ = [
    "AppConfig",
    "SessionInsightOrchestrator",
    "parse_insight_response",
    "Session",
    "Snippet",
    "Document",
    "InsightResult",
    "InsightStatus",
    "InsightStrategy",
    "InMemoryStore"
]
