"""
Exception hierarchy for the tag client.

Connection and transport failures are normally recovered inside the
connection manager's backoff loop and surface only as state change events;
these types exist so the failure paths inside the core can be told apart.
Anti-cheat violations are data, not exceptions.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ErrorContext:
    """Contextual information attached to client errors."""

    session_id: str | None = None
    event: str | None = None
    action_id: str | None = None
    connection_state: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert context to dictionary for logging."""
        return {
            "session_id": self.session_id,
            "event": self.event,
            "action_id": self.action_id,
            "connection_state": self.connection_state,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


class TagClientError(Exception):
    """
    Base exception for all tag client errors.

    Carries structured context and a user-facing message, and logs itself
    when raised.
    """

    log_level = "error"

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        details: dict[str, Any] | None = None,
        user_friendly: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.details = details or {}
        self.user_friendly = user_friendly or message
        self.timestamp = datetime.now(UTC)

        self._log_error()

    def _log_error(self) -> None:
        """Log the error with structured context."""
        log_method = getattr(logger, self.log_level, logger.error)
        log_method(
            "Tag client error occurred",
            error_type=self.__class__.__name__,
            message=self.message,
            context=self.context.to_dict(),
            details=self.details,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "user_friendly": self.user_friendly,
            "context": self.context.to_dict(),
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class RealtimeConnectionError(TagClientError):
    """Connection level failures (missing credential, attempts exhausted)."""

    log_level = "warning"

    def __init__(self, message: str, context: ErrorContext | None = None, attempts: int | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.attempts = attempts
        if attempts is not None:
            self.details["attempts"] = attempts


class AuthenticationRejectedError(RealtimeConnectionError):
    """The handshake rejected the supplied credential."""

    log_level = "error"

    def __init__(self, message: str, context: ErrorContext | None = None, status_code: int | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.details["status_code"] = status_code


class TransportError(RealtimeConnectionError):
    """The underlying transport failed or the channel is closed."""

    def __init__(self, message: str, context: ErrorContext | None = None, event: str | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.event = event
        if event:
            self.details["event"] = event


class AckTimeoutError(TransportError):
    """No acknowledgment arrived within the timeout."""

    def __init__(
        self, message: str, context: ErrorContext | None = None, timeout: float | None = None, **kwargs
    ):
        super().__init__(message, context, **kwargs)
        self.timeout = timeout
        if timeout is not None:
            self.details["timeout"] = timeout


class QueueStorageError(TagClientError):
    """Durable store read or write failed. Never fatal to the queue."""

    log_level = "warning"

    def __init__(self, message: str, context: ErrorContext | None = None, operation: str = "unknown", **kwargs):
        super().__init__(message, context, **kwargs)
        self.operation = operation
        self.details["operation"] = operation
