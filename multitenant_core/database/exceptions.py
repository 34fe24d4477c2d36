"""
Error taxonomy for the tenant-isolated data access layer.
"""

from typing import Any, Dict, List, Optional


class TenantDataError(Exception):
    """Base exception for all data access errors."""

    code = "SDK_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class ConfigurationError(TenantDataError):
    """Raised when setup is missing or invalid. Never retried."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.field = field


class ValidationError(TenantDataError):
    """Raised when input is malformed before it reaches a backend."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.errors = errors or [message]


class NotFoundError(TenantDataError):
    """
    Raised when no record matches inside the caller's tenant.

    A missing record and a record owned by another tenant produce the same
    message and details.
    """

    code = "RESOURCE_NOT_FOUND"
    MESSAGE = "Record not found"

    def __init__(self, collection: Optional[str] = None, record_id: Optional[str] = None):
        details = {}
        if collection is not None:
            details["collection"] = collection
        if record_id is not None:
            details["id"] = record_id
        super().__init__(self.MESSAGE, details)
        self.collection = collection
        self.record_id = record_id


class ConflictError(TenantDataError):
    """Raised on duplicate unique keys."""

    code = "DUPLICATE_RESOURCE"


class StorageError(TenantDataError):
    """Raised when a backend rejects an operation (connectivity, constraint, timeout)."""

    code = "DATABASE_ERROR"

    def __init__(self,
                 message: str,
                 backend: Optional[str] = None,
                 retryable: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.backend = backend
        self.retryable = retryable


class TransactionError(StorageError):
    """Raised when a transaction handle is misused or unsupported."""

    def __init__(self, message: str, backend: Optional[str] = None, rollback_successful: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, backend=backend, retryable=False, details=details)
        self.rollback_successful = rollback_successful


class CacheError(TenantDataError):
    """Raised when the cache backend fails."""

    code = "CACHE_ERROR"


class MigrationError(TenantDataError):
    """Raised when a migration run fails. Requires operator action."""

    code = "MIGRATION_ERROR"

    def __init__(self,
                 message: str,
                 migration_id: Optional[str] = None,
                 results: Optional[List[Any]] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.migration_id = migration_id
        self.results = results or []


class MigrationValidationError(MigrationError):
    """Raised when a migration object is malformed."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, migration_id: Optional[str], validation_errors: List[str]):
        super().__init__(message, migration_id)
        self.validation_errors = validation_errors


class MigrationLockError(MigrationError):
    """Raised when another migration run holds the lock."""

    code = "MIGRATION_LOCKED"
