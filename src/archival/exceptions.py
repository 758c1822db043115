"""Custom exception hierarchy for the archival engine."""

from typing import Any, Optional


class ArchivalError(Exception):
    """Base exception for all archival engine errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize archival error.

        Args:
            message: Error message
            correlation_id: Optional correlation ID for tracing
            context: Optional context dictionary with additional details
        """
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message."""
        parts = [self.message]
        if self.correlation_id:
            parts.append(f"[correlation_id={self.correlation_id}]")
        if self.context:
            parts.append(f"[context={self.context}]")
        return " ".join(parts)


class ConfigurationError(ArchivalError):
    """Invalid engine configuration or job definition."""

    pass


class DatabaseError(ArchivalError):
    """Database-related errors."""

    pass


class SafetyViolationError(ArchivalError):
    """A pre-flight check produced blocking issues."""

    def __init__(
        self,
        message: str,
        *,
        codes: Optional[list[str]] = None,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, correlation_id=correlation_id, context=context)
        self.codes = codes or []


class ExecutionError(ArchivalError):
    """A move strategy failed while running a batch."""

    pass


class BulkLoadError(ExecutionError):
    """The external psql bulk-copy process failed."""

    pass


class LockError(ArchivalError):
    """Advisory locking errors."""

    pass


class StateTransitionError(ArchivalError):
    """A job status change is not allowed by the transition table."""

    pass
