"""
Error taxonomy and recovery helpers for AI Meeting Minutes.

Only session-ending errors cross into the lifecycle controller. Per-batch
transcription failures are absorbed by the transcription session and merely
recorded here, so capture is never interrupted by them.
"""

import asyncio
import logging
import random
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Callable, Any, Union
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for categorizing failures."""
    LOW = "low"           # Minor issues, system can continue
    MEDIUM = "medium"     # Significant issues, some functionality affected
    HIGH = "high"         # Major issues, core functionality affected
    CRITICAL = "critical" # System cannot function


class ErrorCategory(Enum):
    """Categories of errors for better handling and user guidance."""
    AUDIO_SOURCE = "audio_source"
    AUDIO_PROCESSING = "audio_processing"
    TRANSCRIPTION = "transcription"
    SUMMARIZATION = "summarization"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    USER_INPUT = "user_input"
    UNKNOWN = "unknown"


class AcquisitionFailure(Enum):
    """Why a media stream could not be used for recording."""
    PERMISSION_DENIED = "permission_denied"
    NO_AUDIO_TRACK = "no_audio_track"


@dataclass
class ErrorContext:
    """Context information for an error occurrence."""
    timestamp: datetime
    component: str
    operation: str
    session_id: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None


@dataclass
class RecoveryAction:
    """Represents a recovery action that can be taken for an error."""
    action_type: str  # "retry", "manual", "restart"
    description: str
    automated: bool
    parameters: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.action_type,
            "description": self.description,
            "automated": self.automated
        }


class ProcessingError(Exception):
    """
    Processing error with categorization and recovery information.
    """

    default_category = ErrorCategory.UNKNOWN
    default_severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[ErrorContext] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
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
        self.recovery_actions = recovery_actions or []
        self.user_message = user_message or message
        self.technical_details = technical_details
        self.original_exception = original_exception

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "severity": self.severity.value,
            "timestamp": self.context.timestamp.isoformat(),
            "component": self.context.component,
            "operation": self.context.operation,
            "recovery_actions": [action.to_dict() for action in self.recovery_actions],
            "technical_details": self.technical_details
        }


NO_AUDIO_TRACK_HINT = (
    "No audio was captured from the shared source. You most likely shared a single "
    "window, which never carries audio. Share an entire screen or a browser tab with "
    "'Share system audio' enabled, or configure a loopback input device "
    "(for example BlackHole) for system audio capture."
)


class AcquisitionError(ProcessingError):
    """The audio source could not be acquired; the session never starts."""

    default_category = ErrorCategory.AUDIO_SOURCE
    default_severity = ErrorSeverity.HIGH

    def __init__(self, message: str, reason: AcquisitionFailure, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason

    @classmethod
    def permission_denied(
        cls,
        source_type: str,
        original_exception: Optional[Exception] = None,
        context: Optional[ErrorContext] = None
    ) -> "AcquisitionError":
        if source_type == "SYSTEM_AUDIO":
            user_message = (
                "Permission denied or sharing cancelled. Please share a screen or tab "
                "with audio enabled."
            )
        else:
            user_message = (
                "Microphone access was denied. Allow microphone access for this "
                "application in your system settings and try again."
            )
        return cls(
            f"Permission denied acquiring {source_type} audio",
            reason=AcquisitionFailure.PERMISSION_DENIED,
            context=context,
            user_message=user_message,
            technical_details=repr(original_exception) if original_exception else None,
            original_exception=original_exception,
            recovery_actions=[
                RecoveryAction("manual", "Grant capture permission", False),
                RecoveryAction("retry", "Start the meeting again", False)
            ]
        )

    @classmethod
    def no_audio_track(cls, context: Optional[ErrorContext] = None) -> "AcquisitionError":
        return cls(
            "Captured stream has no audio track",
            reason=AcquisitionFailure.NO_AUDIO_TRACK,
            context=context,
            user_message=NO_AUDIO_TRACK_HINT,
            recovery_actions=[
                RecoveryAction("manual", "Share an entire screen or tab with system audio", False),
                RecoveryAction("retry", "Start the meeting again", False)
            ]
        )


class TranscriptionConnectionError(ProcessingError):
    """The streaming transcription service is unreachable; fatal to the session."""

    default_category = ErrorCategory.NETWORK
    default_severity = ErrorSeverity.HIGH


class BatchTranscriptionError(ProcessingError):
    """One batch window failed to transcribe; recording continues."""

    default_category = ErrorCategory.TRANSCRIPTION
    default_severity = ErrorSeverity.LOW


class TranscriptValidationError(ProcessingError):
    """The transcript is too short to summarize."""

    default_category = ErrorCategory.USER_INPUT
    default_severity = ErrorSeverity.LOW


class GenerationError(ProcessingError):
    """The summarization service failed to produce minutes."""

    default_category = ErrorCategory.SUMMARIZATION
    default_severity = ErrorSeverity.MEDIUM


class InvalidStateError(ProcessingError):
    """An operation was requested in a lifecycle state that does not allow it."""

    default_category = ErrorCategory.USER_INPUT
    default_severity = ErrorSeverity.LOW


class RetryConfig:
    """Configuration for retry mechanisms."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_backoff: bool = True,
        jitter: bool = True
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_backoff = exponential_backoff
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt number."""
        if self.exponential_backoff:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)  # Add 0-50% jitter

        return delay


class ErrorRecoveryManager:
    """
    Records errors, logs them by severity and runs retry loops.
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
        Record and log an error.

        Args:
            error: The error that occurred
            context: Additional context about the error

        Returns:
            ProcessingError with recovery information
        """
        if isinstance(error, ProcessingError):
            processing_error = error
            if context is not None and processing_error.context.component == "unknown":
                processing_error.context = context
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
            message=str(error) or type(error).__name__,
            category=category,
            severity=severity,
            context=context,
            recovery_actions=[RecoveryAction("retry", "Retry the operation", False)],
            user_message=self._generate_user_message(error, category),
            technical_details=f"{type(error).__name__}: {str(error)}",
            original_exception=error
        )

    def _categorize_error(self, error: Exception) -> tuple[ErrorCategory, ErrorSeverity]:
        """Categorize an error based on its type."""
        if isinstance(error, PermissionError):
            return ErrorCategory.AUDIO_SOURCE, ErrorSeverity.HIGH

        if isinstance(error, (requests.exceptions.RequestException, ConnectionError, asyncio.TimeoutError)):
            return ErrorCategory.NETWORK, ErrorSeverity.MEDIUM

        if isinstance(error, (ValueError, TypeError)):
            return ErrorCategory.CONFIGURATION, ErrorSeverity.MEDIUM

        return ErrorCategory.UNKNOWN, ErrorSeverity.MEDIUM

    def _generate_user_message(self, error: Exception, category: ErrorCategory) -> str:
        """Generate a user-friendly error message."""
        messages = {
            ErrorCategory.AUDIO_SOURCE: (
                "Audio capture is not available. Check capture permissions and your "
                "audio device setup."
            ),
            ErrorCategory.NETWORK: (
                "Network connection failed. Please check that the transcription and "
                "summarization services are reachable and try again."
            ),
            ErrorCategory.CONFIGURATION: (
                "Invalid configuration or input. Please check your settings."
            )
        }

        return messages.get(category, f"An error occurred: {str(error)}")

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

    async def retry_with_backoff(
        self,
        operation: Callable,
        operation_name: str,
        retry_config: Optional[RetryConfig] = None,
        context: Optional[ErrorContext] = None
    ) -> Any:
        """
        Execute an async operation with retry logic and exponential backoff.

        Args:
            operation: Coroutine function to call on each attempt
            operation_name: Name of the operation for logging
            retry_config: Retry configuration (uses default if None)
            context: Error context for logging

        Returns:
            Result of the successful operation

        Raises:
            ProcessingError: If all retry attempts fail
        """
        config = retry_config or RetryConfig()
        last_error = None

        for attempt in range(1, config.max_attempts + 1):
            try:
                logger.info(f"Attempting {operation_name} (attempt {attempt}/{config.max_attempts})")
                result = await operation()

                if attempt > 1:
                    logger.info(f"{operation_name} succeeded on attempt {attempt}")

                return result

            except Exception as e:
                last_error = e

                if attempt < config.max_attempts:
                    delay = config.get_delay(attempt)
                    logger.warning(
                        f"{operation_name} failed on attempt {attempt}: {e}. "
                        f"Retrying in {delay:.1f} seconds..."
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"{operation_name} failed after {config.max_attempts} attempts: {e}")

        error_context = context or ErrorContext(
            timestamp=datetime.now(),
            component=operation_name,
            operation="retry_operation"
        )

        raise self.handle_error(last_error, error_context)

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

    def clear_error_history(self) -> None:
        """Clear the error history (useful for testing or maintenance)."""
        self.error_history.clear()
        logger.info("Error history cleared")


# Global error recovery manager instance
error_recovery_manager = ErrorRecoveryManager()


def handle_processing_error(
    error: Union[Exception, ProcessingError],
    component: str,
    operation: str,
    session_id: Optional[str] = None,
    additional_data: Optional[Dict[str, Any]] = None
) -> ProcessingError:
    """
    Convenience function to handle processing errors with context.

    Args:
        error: The error that occurred
        component: Component where error occurred
        operation: Operation that failed
        session_id: Session ID if applicable
        additional_data: Additional context data

    Returns:
        ProcessingError with recovery information
    """
    context = ErrorContext(
        timestamp=datetime.now(),
        component=component,
        operation=operation,
        session_id=session_id,
        additional_data=additional_data
    )

    return error_recovery_manager.handle_error(error, context)
