"""Exception hierarchy for the migration engine and the runtime persister."""

from typing import Optional


class MigrationError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(MigrationError):
    """Invalid or incomplete configuration."""


class ExtractionError(MigrationError):
    """The source could not be enumerated. Fatal to an export run."""


class MappingError(MigrationError):
    """A value cannot be represented in the target document schema."""

    def __init__(self, message: str, field: Optional[str] = None, record_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.record_id = record_id

    def __str__(self) -> str:
        if self.field:
            return f"{self.field}: {self.message}"
        return self.message


class WriteError(MigrationError):
    """An export file could not be written after all retries."""

    def __init__(self, message: str, record_id: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.record_id = record_id
        self.attempts = attempts


class DocumentImportError(MigrationError):
    """The target store rejected one exported document."""

    def __init__(self, message: str, document_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.document_id = document_id
        self.status_code = status_code


class LockTimeoutError(MigrationError):
    """A per-key lock was not acquired within the configured bound."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.2f}s waiting for lock on {key}")
        self.key = key
        self.timeout = timeout


class SagaLookupError(MigrationError):
    """A store was unreachable while resolving a saga. Never means "not found"."""


class SagaConcurrencyError(MigrationError):
    """The saga changed in the target store since it was read."""


class StoreError(MigrationError):
    """A storage service returned an unexpected response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    """An item with the same id already exists."""


class PreconditionFailedError(StoreError):
    """The If-Match ETag no longer matches."""
