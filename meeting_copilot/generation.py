"""
Generation service using Ollama's chat endpoint.
"""

import logging
from typing import List, Optional, Protocol, Sequence

import requests

from .config import LLMConfig
from .error_handling import GenerationError
from .models import ChatMessage

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    """Generation collaborator: role-tagged messages in, plain text out."""

    def generate(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float
    ) -> str:
        ...


class OllamaGenerator:
    """
    Generates text through a local Ollama server.

    One blocking request per call, no streaming and no automatic retry:
    failures are raised as GenerationError for the caller to surface.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        config = config or LLMConfig()
        self.model_name = config.model_name
        self.ollama_url = config.ollama_url.rstrip("/")
        self.timeout_seconds = config.timeout_seconds

    def check_ollama_available(self) -> bool:
        """
        Check that Ollama is reachable and the configured model is installed.

        Returns:
            True if the model can be used, False otherwise
        """
        try:
            response = requests.get(f"{self.ollama_url}/api/tags", timeout=5)
            if response.status_code != 200:
                return False

            models = response.json().get("models", [])
            model_names = [m.get("name", "") for m in models]
            available = any(
                name == self.model_name or name.split(":")[0] == self.model_name
                for name in model_names
            )
            if not available:
                logger.warning(f"Model '{self.model_name}' not found in Ollama. Available: {model_names}")
            return available

        except requests.exceptions.RequestException as e:
            logger.warning(f"Ollama not reachable at {self.ollama_url}: {e}")
            return False

    def generate(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float
    ) -> str:
        """
        Generate a response for a role-tagged message sequence.

        Args:
            messages: Conversation sent to the model
            max_tokens: Maximum number of tokens to generate
            temperature: Sampling temperature

        Returns:
            str: Generated text

        Raises:
            GenerationError: On network failure, HTTP error or empty response
        """
        if not messages:
            raise ValueError("At least one message is required")

        payload = {
            "model": self.model_name,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            }
        }

        try:
            logger.debug(f"Calling Ollama chat API with model {self.model_name}")
            response = requests.post(
                f"{self.ollama_url}/api/chat",
                json=payload,
                timeout=self.timeout_seconds
            )

            if response.status_code == 404:
                raise GenerationError(
                    f"Model '{self.model_name}' not found. Please ensure the model is installed with: "
                    f"ollama pull {self.model_name}"
                )
            elif response.status_code == 503:
                raise GenerationError(
                    "Ollama service unavailable. Please check that Ollama is running."
                )
            elif response.status_code != 200:
                try:
                    error_detail = response.json().get("error", response.text)
                except ValueError:
                    error_detail = response.text

                raise GenerationError(f"Ollama API error: {response.status_code} - {error_detail}")

            result = response.json()

            message = result.get("message") if isinstance(result, dict) else None
            if not isinstance(message, dict) or "content" not in message:
                raise GenerationError(f"Invalid Ollama response format: {result}")

            response_text = message["content"]

            if not response_text or not response_text.strip():
                raise GenerationError("Ollama returned empty response")

            return response_text

        except requests.exceptions.Timeout as e:
            raise GenerationError(
                "Ollama API request timed out. The transcript may be too long or the model is overloaded.",
                original_exception=e
            )
        except requests.exceptions.ConnectionError as e:
            raise GenerationError(
                f"Cannot connect to Ollama service at {self.ollama_url}. "
                f"Please ensure Ollama is running and accessible. Error: {e}",
                original_exception=e
            )
        except requests.exceptions.RequestException as e:
            raise GenerationError(f"Network error connecting to Ollama: {e}", original_exception=e)
        except ValueError as e:
            # response.json() on a malformed body
            raise GenerationError(f"Invalid JSON response from Ollama: {e}", original_exception=e)


def format_messages_for_log(messages: List[ChatMessage], limit: int = 200) -> str:
    """Short single-line rendering of a message list for debug logs."""
    parts = []
    for message in messages:
        content = message.content.replace("\n", " ")
        if len(content) > limit:
            content = content[:limit] + "..."
        parts.append(f"{message.role}: {content}")
    return " | ".join(parts)
