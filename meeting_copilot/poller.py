"""
Client-side synchronization loop for a session's insight document.

The poller asks for the insight on a fixed interval, reports a document only
when it changed, stays silent while transcripts are not ready, and pauses
while the user edits the document locally.
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .error_handling import ProcessingError
from .models import Document, InsightResult

logger = logging.getLogger(__name__)


class PollOutcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    NOT_READY = "not_ready"
    FAILED = "failed"
    PAUSED = "paused"


class InsightPoller:
    """
    Polls an insight source for one session.

    Args:
        session_id: Session to follow
        insight_source: Callable returning an InsightResult for a session id,
            e.g. SessionInsightOrchestrator.request_insight or
            CopilotClient.get_session_insight
        save_document: Callable persisting a human edit (session id, content)
        interval_seconds: Delay between polls
        on_update: Called with the document whenever it changed
    """

    def __init__(
        self,
        session_id: str,
        insight_source: Callable[[str], InsightResult],
        save_document: Callable[[str, str], object],
        interval_seconds: float = 60.0,
        on_update: Optional[Callable[[Document], None]] = None
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.session_id = session_id
        self.insight_source = insight_source
        self.save_document = save_document
        self.interval_seconds = interval_seconds
        self.on_update = on_update

        self.last_content: Optional[str] = None
        self.last_updated_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._editing = False
        self._edit_content: Optional[str] = None
        self._state_lock = threading.Lock()
        self._poll_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_editing(self) -> bool:
        return self._editing

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> PollOutcome:
        """Run one poll and report what happened."""
        if self._editing:
            return PollOutcome.PAUSED

        with self._poll_lock:
            try:
                result = self.insight_source(self.session_id)
            except ProcessingError as e:
                result = InsightResult.failed(e.category.value, e.message, e.user_message)

            if result.is_not_ready:
                logger.debug(f"Session {self.session_id}: {result.message}")
                return PollOutcome.NOT_READY

            if result.is_failed:
                self.last_error = result.message
                logger.warning(f"Insight update failed for session {self.session_id}: {result.message}")
                return PollOutcome.FAILED

            return self._apply(result.document)

    def _apply(self, document: Document) -> PollOutcome:
        with self._state_lock:
            # An edit that started while the request was in flight wins
            if self._editing:
                return PollOutcome.PAUSED
            self.last_error = None
            if document.content == self.last_content and document.updated_at == self.last_updated_at:
                return PollOutcome.UNCHANGED
            self.last_content = document.content
            self.last_updated_at = document.updated_at

        logger.info(f"Session {self.session_id}: document updated ({len(document.bullets)} bullets)")
        if self.on_update is not None:
            self.on_update(document)
        return PollOutcome.UPDATED

    def begin_edit(self, content: Optional[str] = None) -> None:
        """Enter edit mode; polling pauses until finish_edit."""
        with self._state_lock:
            self._editing = True
            self._edit_content = content if content is not None else (self.last_content or "")
        logger.debug(f"Session {self.session_id}: edit mode on")

    def update_edit(self, content: str) -> None:
        with self._state_lock:
            if not self._editing:
                raise RuntimeError("Not in edit mode")
            self._edit_content = content

    def finish_edit(self) -> PollOutcome:
        """
        Save the edited content and poll right away.

        The edit is saved before the next insight request, so that request
        merges it. If saving fails, edit mode stays on and the edit is kept.
        """
        with self._state_lock:
            if not self._editing:
                raise RuntimeError("Not in edit mode")
            content = self._edit_content or ""

        try:
            self.save_document(self.session_id, content)
        except ProcessingError as e:
            self.last_error = e.user_message
            logger.error(f"Failed to save edited document for session {self.session_id}: {e}")
            return PollOutcome.FAILED

        with self._state_lock:
            self._editing = False
            self._edit_content = None
            self.last_content = content
        logger.info(f"Session {self.session_id}: edit saved, requesting merge")
        return self.poll_once()

    def start(self) -> None:
        """Poll on a background thread, starting immediately."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"insight-poller-{self.session_id}", daemon=True
        )
        self._thread.start()
        logger.info(f"Started insight polling for session {self.session_id} "
                    f"every {self.interval_seconds}s")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"Stopped insight polling for session {self.session_id}")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                # The loop outlives any single failed poll
                logger.error(f"Unexpected error while polling session {self.session_id}: {e}")
            self._stop_event.wait(self.interval_seconds)
