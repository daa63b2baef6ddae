"""Unit tests for exception classes."""

from porter.exceptions import (
    ConfigurationError,
    DatabaseError,
    ExportCancelledError,
    ExportError,
    PorterError,
    ReplicationError,
    SQLImportError,
    StorageError,
    UploadError,
)


def test_porter_error_basic() -> None:
    """Test basic PorterError."""
    error = PorterError("Test error")
    assert str(error) == "Test error"
    assert error.message == "Test error"
    assert error.correlation_id is None
    assert error.context == {}


def test_porter_error_with_correlation_id() -> None:
    """Test PorterError with correlation ID."""
    error = PorterError("Test error", correlation_id="abc123")
    assert str(error) == "Test error [correlation_id=abc123]"


def test_porter_error_with_context() -> None:
    """Test PorterError with context."""
    error = PorterError("Test error", context={"table": "users"})
    assert error.context == {"table": "users"}
    assert "[context={'table': 'users'}]" in str(error)


def test_error_hierarchy() -> None:
    """Test exception hierarchy."""
    for cls in (ConfigurationError, DatabaseError, StorageError, ExportError, SQLImportError, ReplicationError):
        assert issubclass(cls, PorterError)
    assert issubclass(UploadError, StorageError)
    assert issubclass(ExportCancelledError, ExportError)
