from typing import Any, Optional


class MongoLiteError(Exception):
    """Base class for MongoLite errors."""
    pass


class ValidationError(MongoLiteError):
    """Raised when caller-supplied input is structurally invalid."""
    pass


class InvalidDocumentError(ValidationError):
    """Raised when a document cannot be stored (unsupported content or key)."""
    pass


class InvalidQueryError(ValidationError):
    """Raised when query syntax is invalid."""
    pass


class InvalidUpdateError(ValidationError):
    """Raised when update operator is invalid."""
    pass


class InvalidPathError(ValidationError):
    """Raised when a dotted field path cannot be parsed."""
    pass


class InvalidIndexError(ValidationError):
    """Raised when an index key list or name is invalid."""
    pass


class DuplicateKeyError(MongoLiteError):
    """Raised when violating unique key (_id or unique index) constraint."""

    def __init__(self, message: str, key: Optional[Any] = None):
        super().__init__(message)
        self.key = key


class TransientStorageError(MongoLiteError):
    """Raised when the storage engine reports busy/locked."""
    pass


class InvalidOperationError(MongoLiteError):
    """Raised when an object is used in a state that does not allow the call."""
    pass
