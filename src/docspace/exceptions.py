"""Custom exceptions for the Docspace workspace core.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Document errors (1xxx)
    DOCUMENT_NOT_FOUND = 1001
    DOCUMENT_VALIDATION_FAILED = 1002

    # Workspace errors (2xxx)
    WORKSPACE_CLOSED = 2001
    WORKSPACE_OPEN_FAILED = 2002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    METADATA_MISSING = 4004
    METADATA_CORRUPTED = 4005
    INDEX_WRITE_FAILED = 4006

    # Search errors (5xxx)
    SEARCH_FAILED = 5001

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_MODE = 7002
    PATH_TRAVERSAL_DETECTED = 7005


class DocspaceError(Exception):
    """Base exception for all Docspace errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class DocumentNotFoundError(DocspaceError):
    """Raised when a document path is not known to the metadata store."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(
            message or f"Document not found: {path}",
            code=ErrorCode.DOCUMENT_NOT_FOUND,
            details={"path": path}
        )
        self.path = path


class StorageError(DocspaceError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class MetadataCorruptedError(StorageError):
    """Raised when the metadata sidecar exists but cannot be read back.

    A workspace in this state must not be opened: silently starting from
    an empty metadata file would hide data loss.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="load_metadata",
            path=path,
            code=ErrorCode.METADATA_CORRUPTED,
            original_error=original_error
        )


class SearchError(DocspaceError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        details = {}
        if query:
            details["query"] = query[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.query = query


class ValidationError(DocspaceError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class WorkspaceClosedError(DocspaceError):
    """Raised when a closed workspace handle is used."""

    def __init__(self, workspace: str):
        super().__init__(
            f"Workspace is not open: {workspace}",
            code=ErrorCode.WORKSPACE_CLOSED,
            details={"workspace": workspace}
        )
        self.workspace = workspace
