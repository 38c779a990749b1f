"""
Error taxonomy and error bookkeeping for Meeting Copilot.

This module provides the categorized exception hierarchy shared by the stores,
the external collaborators and the insight orchestrator, together with
user-friendly messages and a bounded error history for monitoring.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Union
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for categorizing failures."""
    LOW = "low"           # Caller error or absorbed failure
    MEDIUM = "medium"     # Current operation failed, retry on next request
    HIGH = "high"         # Core functionality affected
    CRITICAL = "critical" # System cannot function


class ErrorCategory(Enum):
    """Categories of errors for better handling and user guidance."""
    VALIDATION = "validation"
    STORAGE = "storage"
    GENERATION = "generation"
    RETRIEVAL = "retrieval"
    TRANSCRIPTION = "transcription"
    FILE_SYSTEM = "file_system"
    NETWORK = "network"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error occurrence."""
    timestamp: datetime
    component: str
    operation: str
    session_id: Optional[str] = None
    snippet_id: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None


class ProcessingError(Exception):
    """
    Processing error with categorization and a user-facing message.
    """

    default_category = ErrorCategory.UNKNOWN
    default_severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[ErrorContext] = None,
        user_message: Optional[str] = None,
        technical_details: Optional[str] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.context = context or ErrorContext(
            timestamp=datetime.now(),
            component="unknown",
            operation="unknown"
        )
        self.user_message = user_message or message
        self.has_user_message = user_message is not None
        self.technical_details = technical_details
        self.original_exception = original_exception

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "severity": self.severity.value,
            "timestamp": self.context.timestamp.isoformat(),
            "component": self.context.component,
            "operation": self.context.operation,
            "session_id": self.context.session_id,
            "technical_details": self.technical_details
        }


class StorageError(ProcessingError):
    """The underlying store is unreachable or rejected a write."""
    default_category = ErrorCategory.STORAGE
    default_severity = ErrorSeverity.HIGH


class InputValidationError(ProcessingError):
    """A required identifier or field is missing or malformed."""
    default_category = ErrorCategory.VALIDATION
    default_severity = ErrorSeverity.LOW


class SessionNotFoundError(InputValidationError):
    """The referenced session does not exist."""


class GenerationError(ProcessingError):
    """The generation service failed or returned an unusable response."""
    default_category = ErrorCategory.GENERATION


class RetrievalError(ProcessingError):
    """Embedding or passage lookup failed."""
    default_category = ErrorCategory.RETRIEVAL
    default_severity = ErrorSeverity.LOW


class TranscriptionError(ProcessingError):
    """Speech-to-text conversion of an audio chunk failed."""
    default_category = ErrorCategory.TRANSCRIPTION


USER_MESSAGES = {
    ErrorCategory.VALIDATION: "The request is missing required information.",
    ErrorCategory.STORAGE: (
        "The document store is unavailable. No changes were saved; please try again."
    ),
    ErrorCategory.GENERATION: (
        "Could not update the document. Please check that Ollama is running; "
        "the update will be attempted again on the next poll."
    ),
    ErrorCategory.RETRIEVAL: "Reference documents could not be searched.",
    ErrorCategory.TRANSCRIPTION: (
        "Speech-to-text conversion failed for an audio chunk. It will be skipped."
    ),
    ErrorCategory.FILE_SYSTEM: (
        "File operation failed. Please check disk space and file permissions."
    ),
    ErrorCategory.NETWORK: (
        "Network connection failed. Please check your connection and try again."
    ),
}


class ErrorRecoveryManager:
    """
    Converts, records and logs errors raised while serving sessions.
    """

    def __init__(self, max_history: int = 100):
        self.max_history = max_history
        self.error_history: List[ProcessingError] = []

    def handle_error(
        self,
        error: Union[Exception, ProcessingError],
        context: Optional[ErrorContext] = None
    ) -> ProcessingError:
        """
        Handle an error: convert it, record it and log it.

        Args:
            error: The error that occurred
            context: Additional context about the error

        Returns:
            ProcessingError carrying category and user message
        """
        if isinstance(error, ProcessingError):
            processing_error = error
            if context is not None and processing_error.context.component == "unknown":
                processing_error.context = context
            # Validation messages already address the user
            if (not processing_error.has_user_message
                    and processing_error.category != ErrorCategory.VALIDATION
                    and processing_error.category in USER_MESSAGES):
                processing_error.user_message = USER_MESSAGES[processing_error.category]
                processing_error.has_user_message = True
        else:
            processing_error = self._convert_to_processing_error(error, context)

        self.error_history.append(processing_error)
        if len(self.error_history) > self.max_history:
            del self.error_history[:-self.max_history]

        self._log_error(processing_error)

        return processing_error

    def _convert_to_processing_error(
        self,
        error: Exception,
        context: Optional[ErrorContext]
    ) -> ProcessingError:
        """Convert a generic exception to a ProcessingError."""
        category, severity = self._categorize_error(error)

        return ProcessingError(
            message=str(error),
            category=category,
            severity=severity,
            context=context,
            user_message=USER_MESSAGES.get(category, f"An error occurred: {error}"),
            technical_details=f"{type(error).__name__}: {str(error)}",
            original_exception=error
        )

    def _categorize_error(self, error: Exception) -> tuple[ErrorCategory, ErrorSeverity]:
        """Categorize an error based on its type."""
        if isinstance(error, (ValueError, KeyError, TypeError)):
            return ErrorCategory.VALIDATION, ErrorSeverity.LOW

        if isinstance(error, (FileNotFoundError, PermissionError, IsADirectoryError)):
            return ErrorCategory.FILE_SYSTEM, ErrorSeverity.MEDIUM

        if isinstance(error, (ConnectionError, TimeoutError)):
            return ErrorCategory.NETWORK, ErrorSeverity.MEDIUM

        if isinstance(error, OSError):
            return ErrorCategory.FILE_SYSTEM, ErrorSeverity.MEDIUM

        if isinstance(error, MemoryError):
            return ErrorCategory.UNKNOWN, ErrorSeverity.CRITICAL

        return ErrorCategory.UNKNOWN, ErrorSeverity.MEDIUM

    def _log_error(self, error: ProcessingError) -> None:
        """Log error with appropriate level based on severity."""
        log_message = (
            f"[{error.category.value.upper()}] {error.message} "
            f"(Component: {error.context.component}, Operation: {error.context.operation})"
        )

        if error.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)
        elif error.severity == ErrorSeverity.HIGH:
            logger.error(log_message)
        elif error.severity == ErrorSeverity.MEDIUM:
            logger.warning(log_message)
        else:
            logger.info(log_message)

        if error.technical_details:
            logger.debug(f"Technical details: {error.technical_details}")

    def get_error_summary(self) -> Dict[str, Any]:
        """Get a summary of recent errors for monitoring."""
        if not self.error_history:
            return {"total_errors": 0, "recent_errors": 0}

        recent_errors = self.error_history[-10:]  # Last 10 errors

        category_counts = {}
        severity_counts = {}

        for error in recent_errors:
            category_counts[error.category.value] = category_counts.get(error.category.value, 0) + 1
            severity_counts[error.severity.value] = severity_counts.get(error.severity.value, 0) + 1

        return {
            "total_errors": len(self.error_history),
            "recent_errors": len(recent_errors),
            "category_breakdown": category_counts,
            "severity_breakdown": severity_counts,
            "last_error": recent_errors[-1].to_dict()
        }


def handle_processing_error(
    error: Union[Exception, ProcessingError],
    component: str,
    operation: str,
    session_id: Optional[str] = None,
    snippet_id: Optional[str] = None,
    additional_data: Optional[Dict[str, Any]] = None,
    manager: Optional[ErrorRecoveryManager] = None
) -> ProcessingError:
    """
    Convenience function to handle processing errors with context.

    Args:
        error: The error that occurred
        component: Component where error occurred
        operation: Operation that failed
        session_id: Session ID if applicable
        snippet_id: Snippet ID if applicable
        additional_data: Additional context data
        manager: Error manager recording the error (a fresh one if None)

    Returns:
        ProcessingError with category and user message
    """
    context = ErrorContext(
        timestamp=datetime.now(),
        component=component,
        operation=operation,
        session_id=session_id,
        snippet_id=snippet_id,
        additional_data=additional_data
    )

    return (manager or ErrorRecoveryManager()).handle_error(error, context)
