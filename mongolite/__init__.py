"""MongoDB-style document collections stored in SQLite."""

from .change_stream import ChangeStream, ChangeStreamState
from .collection import Collection, ReturnDocument
from .cursor import ASCENDING, DESCENDING, Cursor
from .database import Database, MongoLiteClient
from .errors import (
    DuplicateKeyError, InvalidDocumentError, InvalidIndexError, InvalidOperationError, InvalidPathError,
    InvalidQueryError, InvalidUpdateError, MongoLiteError, TransientStorageError, ValidationError,
)
from .indexes import IndexInfo
from .matching import matches
from .query import compile_filter, parse_filter
from .results import DeleteResult, InsertManyResult, InsertOneResult, UpdateResult
from .retry import RetryPolicy
from .serialization import generate_object_id

__version__ = "0.1.0"

__all__ = [
    "ASCENDING",
    "DESCENDING",
    "ChangeStream",
    "ChangeStreamState",
    "Collection",
    "Cursor",
    "Database",
    "DeleteResult",
    "DuplicateKeyError",
    "IndexInfo",
    "InsertManyResult",
    "InsertOneResult",
    "InvalidDocumentError",
    "InvalidIndexError",
    "InvalidOperationError",
    "InvalidPathError",
    "InvalidQueryError",
    "InvalidUpdateError",
    "MongoLiteClient",
    "MongoLiteError",
    "RetryPolicy",
    "ReturnDocument",
    "TransientStorageError",
    "UpdateResult",
    "ValidationError",
    "compile_filter",
    "generate_object_id",
    "matches",
    "parse_filter",
]
