"""Custom exception hierarchy for porter."""

from typing import Any, Optional


class PorterError(Exception):
    """Base exception for all porter errors."""

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize porter error.

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


class ConfigurationError(PorterError):
    """Configuration-related errors."""

    pass


class DatabaseError(PorterError):
    """Database-related errors."""

    pass


class StorageError(PorterError):
    """Object storage errors."""

    pass


class UploadError(StorageError):
    """Chunked upload session errors. The session is aborted before this is raised."""

    pass


class ExportError(PorterError):
    """Fatal export errors."""

    pass


class ExportCancelledError(ExportError):
    """Export stopped by a cancellation token."""

    pass


class SQLImportError(PorterError):
    """A statement failed while importing a dump."""

    pass


class ReplicationError(PorterError):
    """Fatal bucket replication errors (listing or connectivity, never a single object)."""

    pass
