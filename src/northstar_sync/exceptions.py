"""Custom exceptions for the Northstar sync engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Entity errors (1xxx)
    ENTITY_NOT_FOUND = 1001
    ENTITY_VALIDATION_FAILED = 1002
    ENTITY_DELETED = 1003
    GROUP_NOT_FOUND = 1004
    HISTORY_ENTRY_NOT_FOUND = 1005

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_TRANSACTION_FAILED = 4003

    # Sync errors (5xxx)
    SYNC_NOT_CONFIGURED = 5001
    SYNC_NETWORK_FAILED = 5002
    SYNC_REJECTED = 5003
    SYNC_CONFLICT_APPLY_FAILED = 5004
    SYNC_ALREADY_RUNNING = 5005
    SYNC_REFERENCE_NOT_SYNCED = 5006

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_ENTITY_TABLE = 7002
    INVALID_FIELD = 7003


class NorthstarError(Exception):
    """Base exception for all Northstar errors.

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


class EntityNotFoundError(NorthstarError):
    """Raised when an entity cannot be found by its local id."""

    def __init__(
        self,
        local_id: int,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.ENTITY_NOT_FOUND
    ):
        super().__init__(
            message or f"Entity with local id {local_id} not found",
            code=code,
            details={"local_id": local_id}
        )
        self.local_id = local_id


class EntityValidationError(NorthstarError):
    """Raised when entity data fails validation."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.ENTITY_VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class LocalStorageError(NorthstarError):
    """Raised when a local store read or transaction fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_TRANSACTION_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class ConfigurationError(NorthstarError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(NorthstarError):
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


class SyncError(NorthstarError):
    """Base class for errors raised while talking to the remote backend."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        code: ErrorCode = ErrorCode.SYNC_NETWORK_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.table = table
        self.original_error = original_error


class TransientNetworkError(SyncError):
    """No connectivity, timeout or a 5xx answer. Retried with backoff."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation=operation,
            table=table,
            code=ErrorCode.SYNC_NETWORK_FAILED,
            original_error=original_error
        )
        self.status_code = status_code
        if status_code is not None:
            self.details["status_code"] = status_code


class RejectedError(SyncError):
    """The remote refused the write (4xx, validation). Never retried."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation=operation,
            table=table,
            code=ErrorCode.SYNC_REJECTED,
            original_error=original_error
        )
        self.status_code = status_code
        if status_code is not None:
            self.details["status_code"] = status_code


class ConflictApplyError(SyncError):
    """A pulled record cannot be applied locally (malformed, dangling reference)."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        remote_id: Optional[str] = None
    ):
        super().__init__(
            message,
            operation="apply",
            table=table,
            code=ErrorCode.SYNC_CONFLICT_APPLY_FAILED
        )
        self.remote_id = remote_id
        if remote_id:
            self.details["remote_id"] = remote_id


class UnsyncedReferenceError(SyncError):
    """A queued change points at an entity the remote does not know yet.

    Nothing was sent; the entry stays queued and is tried again next cycle.
    """

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        local_id: Optional[int] = None,
        reference_id: Optional[int] = None
    ):
        super().__init__(
            message,
            operation="to_wire",
            table=table,
            code=ErrorCode.SYNC_REFERENCE_NOT_SYNCED
        )
        self.local_id = local_id
        self.reference_id = reference_id
        if reference_id is not None:
            self.details["reference_id"] = reference_id
