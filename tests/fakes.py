"""
Test doubles for the generation collaborator and helpers for seeding stores.
"""

import re
import threading
import time
from typing import Callable, List, Optional, Sequence

from meeting_copilot.error_handling import GenerationError
from meeting_copilot.models import ChatMessage
from meeting_copilot.prompts import NAMING_SYSTEM_PROMPT, TRANSCRIPT_HISTORY

_NUMBERED = re.compile(r"^\[\d+\]\s?")


def section_lines(messages: Sequence[ChatMessage], title: str) -> Optional[List[str]]:
    """Lines of a titled prompt section, transcript numbering removed; None if absent."""
    for block in messages[-1].content.split("\n\n"):
        if block.startswith(f"{title}:\n"):
            body = block.split("\n")[1:]
            return [_NUMBERED.sub("", line) for line in body if line != "(empty)"]
    return None


class ScriptedGenerator:
    """
    Generator double recording every call.

    Document calls answer with one bullet per transcript of the full history
    section unless responses are queued; naming calls answer with ``name``.
    """

    def __init__(self, name: str = "Weekly Sync", responses: Optional[List[str]] = None):
        self.name = name
        self.responses = list(responses or [])
        self.calls: List[List[ChatMessage]] = []
        self.fail_documents = False
        self.fail_naming = False
        self.before_document: Optional[Callable[[], None]] = None
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @property
    def document_calls(self) -> List[List[ChatMessage]]:
        return [c for c in self.calls if c[0].content != NAMING_SYSTEM_PROMPT]

    @property
    def naming_calls(self) -> List[List[ChatMessage]]:
        return [c for c in self.calls if c[0].content == NAMING_SYSTEM_PROMPT]

    def generate(self, messages, max_tokens, temperature):
        messages = list(messages)
        with self._lock:
            self.calls.append(messages)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if messages[0].content == NAMING_SYSTEM_PROMPT:
                if self.fail_naming:
                    raise GenerationError("naming failed")
                return self.name

            if self.delay:
                time.sleep(self.delay)
            if self.before_document is not None:
                self.before_document()
            if self.fail_documents:
                raise GenerationError("Ollama API error: 500 - boom")
            if self.responses:
                return self.responses.pop(0)
            history = section_lines(messages, TRANSCRIPT_HISTORY) or []
            return "\n".join(f"- {line}" for line in history)
        finally:
            with self._lock:
                self.active -= 1


def add_transcript(store, session_id: str, timestamp: float, text: str, duration: float = 60.0) -> str:
    snippet_id = store.append_snippet(session_id, timestamp, duration)
    store.set_transcript(snippet_id, text)
    return snippet_id
