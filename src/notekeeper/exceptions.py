"""Custom exceptions for Notekeeper.

Provides a structured exception hierarchy with error codes and
machine-readable error information. No error raised here is fatal to the
process: the worst outcome of any failure is falling back to local-only
storage with local data intact.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Lookup errors (1xxx)
    ENTITY_NOT_FOUND = 1001
    LINK_NOT_FOUND = 1002

    # Link errors (2xxx)
    LINK_ALREADY_EXISTS = 2001

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    REMOTE_UNREACHABLE = 4101
    REMOTE_TIMEOUT = 4102
    REMOTE_REJECTED = 4103
    REMOTE_PAYLOAD_INVALID = 4104

    # Sync errors (5xxx)
    SYNC_IN_PROGRESS = 5001

    # Mode preconditions (6xxx)
    AUTHENTICATION_REQUIRED = 6001
    REMOTE_NOT_CONFIGURED = 6002
    CONFIG_INVALID = 6003

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    FIELD_REQUIRED = 7002
    INVALID_ENTITY_KIND = 7003
    INVALID_INDEX = 7004
    INVALID_STORAGE_MODE = 7005


class NotekeeperError(Exception):
    """Base exception for all Notekeeper errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
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
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class ValidationError(NotekeeperError):
    """Raised when input to a CRUD call is malformed."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class NotFoundError(NotekeeperError):
    """Raised when an operation targets an identifier that does not exist."""

    def __init__(
        self,
        kind: str,
        entity_id: Any,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.ENTITY_NOT_FOUND,
    ):
        super().__init__(
            message or f"{kind} with ID '{entity_id}' not found",
            code=code,
            details={"kind": kind, "id": entity_id},
        )
        self.kind = kind
        self.entity_id = entity_id


class StorageError(NotekeeperError):
    """Raised when the local entity store cannot read or write."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class ConnectivityError(NotekeeperError):
    """Raised when a backend adapter cannot reach or use its medium."""

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.REMOTE_UNREACHABLE,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if backend:
            details["backend"] = backend
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.backend = backend
        self.operation = operation
        self.original_error = original_error


class AuthenticationRequiredError(NotekeeperError):
    """Raised when the remote API is requested without an authenticated session."""

    def __init__(
        self,
        message: str = "You must be logged in to use remote API storage",
        backend: Optional[str] = None,
    ):
        details = {"backend": backend} if backend else {}
        super().__init__(
            message, code=ErrorCode.AUTHENTICATION_REQUIRED, details=details
        )
        self.backend = backend


class RemoteNotConfiguredError(NotekeeperError):
    """Raised when a remote mode is requested before its settings exist."""

    def __init__(
        self,
        message: str = "WebDAV must be configured first",
        config_key: Optional[str] = None,
    ):
        details = {"config_key": config_key} if config_key else {}
        super().__init__(message, code=ErrorCode.REMOTE_NOT_CONFIGURED, details=details)
        self.config_key = config_key


class SyncInProgressError(NotekeeperError):
    """Raised when a sync pass is requested while another one is running."""

    def __init__(self, mode: Optional[str] = None):
        details = {"mode": mode} if mode else {}
        super().__init__(
            "A sync pass is already in progress",
            code=ErrorCode.SYNC_IN_PROGRESS,
            details=details,
        )
        self.mode = mode
