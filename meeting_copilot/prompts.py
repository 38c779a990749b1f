"""
Prompt construction for the insight document.

Each strategy of the orchestrator has its own builder. All builders lay the
user message out in titled sections so that the generator always sees which
text is the current document, which transcripts are new and which are the
full history.
"""

import re
from typing import List, Optional, Sequence

from .models import ChatMessage, Passage, TranscriptEntry

SYSTEM_PROMPT = (
    "You are a real-time meeting copilot. You maintain one living document that "
    "helps the listener during the conversation: key points, open questions, "
    "decisions and follow-ups. Write concise markdown. Start the document with "
    "up to three bullet points ('- ') holding the most useful insights right now. "
    "Do not invent facts that are not supported by the transcript or the reference context."
)

NAMING_SYSTEM_PROMPT = "You name meeting sessions. Reply with the name only."

CURRENT_DOCUMENT = "CURRENT DOCUMENT"
EDITED_DOCUMENT = "USER-EDITED DOCUMENT"
NEW_TRANSCRIPTS = "NEW TRANSCRIPTS"
TRANSCRIPT_HISTORY = "FULL TRANSCRIPT HISTORY"
REFERENCE_CONTEXT = "RELEVANT CONTEXT FROM YOUR DOCUMENTS"

_QUOTES = "\"'`“”‘’"


def format_transcripts(entries: Sequence[TranscriptEntry]) -> str:
    """Numbered transcript lines in capture order."""
    return "\n".join(f"[{index}] {entry.text.strip()}" for index, entry in enumerate(entries, 1))


def format_passages(passages: Sequence[Passage]) -> str:
    return "\n".join(f"- ({p.document_title}) {p.content.strip()}" for p in passages)


def _section(title: str, body: str) -> str:
    return f"{title}:\n{body.strip() or '(empty)'}"


def _context_section(passages: Sequence[Passage]) -> List[str]:
    if not passages:
        return []
    return [_section(REFERENCE_CONTEXT, format_passages(passages))]


def _messages(sections: List[str], instructions: str) -> List[ChatMessage]:
    return [
        ChatMessage(role="system", content=SYSTEM_PROMPT),
        ChatMessage(role="user", content="\n\n".join(sections + [instructions])),
    ]


def build_fresh_prompt(
    history: Sequence[TranscriptEntry],
    passages: Sequence[Passage] = ()
) -> List[ChatMessage]:
    """Prompt for the first document of a session, from the full transcript."""
    sections = [_section(TRANSCRIPT_HISTORY, format_transcripts(history))]
    sections += _context_section(passages)
    return _messages(
        sections,
        "Create the meeting document from the transcript above. "
        "Return the complete document text only."
    )


def build_incremental_prompt(
    previous_content: str,
    new_transcripts: Sequence[TranscriptEntry],
    history: Sequence[TranscriptEntry],
    passages: Sequence[Passage] = ()
) -> List[ChatMessage]:
    """Prompt revising the last generated document with newly arrived transcripts."""
    sections = [
        _section(CURRENT_DOCUMENT, previous_content),
        _section(NEW_TRANSCRIPTS, format_transcripts(new_transcripts)),
        _section(TRANSCRIPT_HISTORY, format_transcripts(history)),
    ]
    sections += _context_section(passages)
    return _messages(
        sections,
        "Update the current document with the new transcripts. Re-read the full "
        "transcript history: if it contradicts earlier assumptions in the document, "
        "revise them instead of only appending. Keep what is still correct. "
        "Return the complete updated document text only."
    )


def build_conflict_prompt(
    edited_content: str,
    new_transcripts: Sequence[TranscriptEntry],
    history: Sequence[TranscriptEntry],
    passages: Sequence[Passage] = ()
) -> List[ChatMessage]:
    """Prompt merging new transcripts into a document the user edited by hand."""
    sections = [
        _section(EDITED_DOCUMENT, edited_content),
        _section(NEW_TRANSCRIPTS, format_transcripts(new_transcripts)),
        _section(TRANSCRIPT_HISTORY, format_transcripts(history)),
    ]
    sections += _context_section(passages)
    return _messages(
        sections,
        "The user edited the document by hand since your last update. Use the "
        "user-edited document as the base: preserve its structure, wording and "
        "edits. Add material from the new transcripts only where it is consistent "
        "with the full transcript history, and re-evaluate statements the user "
        "may have written from stale assumptions. "
        "Return the complete merged document text only."
    )


def build_naming_prompt(earliest: Sequence[TranscriptEntry]) -> List[ChatMessage]:
    """Prompt asking for a short session name from the first transcripts."""
    return [
        ChatMessage(role="system", content=NAMING_SYSTEM_PROMPT),
        ChatMessage(
            role="user",
            content=(
                "Give this meeting a short name of 2 to 6 words based on how it started. "
                "No quotes, no punctuation at the end.\n\n"
                + _section("TRANSCRIPT", format_transcripts(earliest))
            ),
        ),
    ]


def clean_session_name(raw: str, max_words: int = 6) -> Optional[str]:
    """
    Normalize a generated session name.

    Takes the first non-empty line, strips surrounding quotes and trailing
    punctuation, and caps the word count.

    Returns:
        The cleaned name, or None if nothing usable remains
    """
    lines = [line.strip() for line in raw.splitlines() if line.strip()]
    if not lines:
        return None
    name = re.sub(r"^(session\s+)?name\s*:\s*", "", lines[0], flags=re.IGNORECASE)
    name = name.strip().strip(_QUOTES).strip().rstrip(".!").strip().strip(_QUOTES).strip()
    words = name.split()
    if not words:
        return None
    return " ".join(words[:max_words])
