"""
Reference library and retrieval of relevant passages.

Reference documents are split into overlapping chunks, each chunk is embedded
through Ollama, and lookups rank the embedded chunks by cosine similarity
against the embedded query text.
"""

import logging
from typing import List, Optional, Protocol, Tuple

import numpy as np
import requests

from .config import LLMConfig, RetrievalConfig
from .error_handling import InputValidationError, RetrievalError
from .models import Passage, ReferenceDocument
from .store import ReferenceStore

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    def embed(self, text: str) -> List[float]:
        ...


class Retriever(Protocol):
    """Retrieval collaborator: text in, ordered relevant passages out."""

    def search(self, text: str, limit: int, threshold: Optional[float] = None) -> List[Passage]:
        ...


class OllamaEmbedder:
    """Computes text embeddings with Ollama's embed endpoint."""

    def __init__(self, llm_config: Optional[LLMConfig] = None, model_name: str = "nomic-embed-text"):
        llm_config = llm_config or LLMConfig()
        self.ollama_url = llm_config.ollama_url.rstrip("/")
        self.timeout_seconds = llm_config.timeout_seconds
        self.model_name = model_name

    def embed(self, text: str) -> List[float]:
        """
        Embed a text blob.

        Raises:
            RetrievalError: If the request fails or returns no vector
        """
        try:
            response = requests.post(
                f"{self.ollama_url}/api/embed",
                json={"model": self.model_name, "input": text},
                timeout=self.timeout_seconds
            )
            if response.status_code != 200:
                raise RetrievalError(
                    f"Ollama embed error: {response.status_code} - {response.text}"
                )
            embeddings = response.json().get("embeddings") or []
        except requests.exceptions.RequestException as e:
            raise RetrievalError(f"Failed to generate embedding: {e}", original_exception=e)
        except ValueError as e:
            raise RetrievalError(f"Invalid JSON response from Ollama embed: {e}", original_exception=e)

        if not embeddings or not embeddings[0]:
            raise RetrievalError("Ollama returned no embedding")
        return [float(value) for value in embeddings[0]]


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> List[str]:
    """
    Split text into overlapping windows.

    Args:
        text: Text to split
        chunk_size: Window length in characters
        overlap: Characters shared by consecutive windows

    Returns:
        List of chunks covering the whole text
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be non-negative and smaller than chunk_size")

    chunks = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        chunks.append(text[start:end])
        if end == len(text):
            break
        start = end - overlap
    return chunks


def cosine_similarities(query: List[float], vectors: List[List[float]]) -> np.ndarray:
    """Cosine similarity of one query vector against each row vector."""
    if not vectors:
        return np.zeros(0)
    matrix = np.asarray(vectors, dtype=float)
    q = np.asarray(query, dtype=float)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    norms[norms == 0] = np.inf
    return (matrix @ q) / norms


class ReferenceLibrary:
    """Ingests user reference documents for later retrieval."""

    def __init__(self, store: ReferenceStore, embedder: Embedder, config: Optional[RetrievalConfig] = None):
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    def ingest(self, title: str, content: str, owner_id: str) -> Tuple[ReferenceDocument, int]:
        """
        Store a reference document, chunk it and embed every chunk.

        A chunk whose embedding fails stays stored but is not searchable.

        Returns:
            Tuple of (stored document, number of chunks created)
        """
        if not title or not title.strip():
            raise InputValidationError("Missing required field: title")
        if not content or not content.strip():
            raise InputValidationError("Reference document is empty")

        document = self.store.add_reference_document(owner_id, title.strip(), content)
        chunks = self.store.add_reference_chunks(
            document.id,
            chunk_text(content, self.config.chunk_size, self.config.chunk_overlap)
        )

        embedded = 0
        for chunk in chunks:
            try:
                self.store.set_chunk_embedding(chunk.id, self.embedder.embed(chunk.content))
                embedded += 1
            except RetrievalError as e:
                logger.error(f"Failed to generate embedding for chunk {chunk.id}: {e}")

        logger.info(f"Ingested reference document '{document.title}': "
                    f"{len(chunks)} chunks, {embedded} embedded")
        return document, len(chunks)


class ReferenceRetriever:
    """Ranks embedded reference chunks against a query text."""

    def __init__(
        self,
        store: ReferenceStore,
        embedder: Embedder,
        config: Optional[RetrievalConfig] = None,
        owner_id: Optional[str] = None
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.owner_id = owner_id

    def search(self, text: str, limit: int, threshold: Optional[float] = None) -> List[Passage]:
        """
        Find passages similar to a text blob.

        Args:
            text: Query text, truncated to the configured maximum length
            limit: Maximum number of passages
            threshold: Minimum similarity (configured default if None)

        Returns:
            Passages ordered by descending similarity

        Raises:
            RetrievalError: If embedding or the chunk lookup fails
        """
        if not text or not text.strip() or limit <= 0:
            return []
        if threshold is None:
            threshold = self.config.match_threshold

        chunks = self.store.list_embedded_chunks(self.owner_id)
        if not chunks:
            return []

        query_vector = self.embedder.embed(text[:self.config.max_query_chars])

        try:
            scores = cosine_similarities(query_vector, [chunk.embedding for chunk in chunks])
        except ValueError as e:
            # Embedding dimension mismatch, e.g. after switching embedding model
            raise RetrievalError(f"Cannot compare embeddings: {e}", original_exception=e)

        ranked = sorted(
            (
                (float(score), chunk)
                for score, chunk in zip(scores, chunks)
                if score >= threshold
            ),
            key=lambda pair: pair[0],
            reverse=True
        )

        return [
            Passage(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                document_title=chunk.document_title,
                content=chunk.content,
                similarity=score
            )
            for score, chunk in ranked[:limit]
        ]
