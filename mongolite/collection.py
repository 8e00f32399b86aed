import copy
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Callable, Iterable, List, Optional, Tuple, TypeVar

from .change_stream import ChangeStream
from .cursor import Cursor, SortSpec, apply_projection
from .errors import DuplicateKeyError, InvalidDocumentError, InvalidUpdateError
from .indexes import IndexInfo, IndexManager, KeySpec
from .paths import MISSING, get_path
from .query import KEY_FIELD, FilterCompiler
from .results import DeleteResult, InsertManyResult, InsertOneResult, UpdateResult
from .serialization import dumps, encode, generate_object_id, is_corrupted, loads, validate_key
from .update import apply_update, upsert_document, validate_update

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
_RESERVED_PREFIXES = ("sqlite_", "__mongolite")

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS "{table}" (
    _id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);
"""


class ReturnDocument:
    BEFORE = "before"
    AFTER = "after"


def validate_collection_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise InvalidDocumentError(
            f"Invalid collection name {name!r}: use letters, digits, '_' and '-' only."
        )
    if name.lower().startswith(_RESERVED_PREFIXES):
        raise InvalidDocumentError(f"Collection name {name!r} uses a reserved prefix.")
    return name


def _split(doc: dict) -> Tuple[str, str]:
    """Key and stored JSON body (everything but _id) of a document."""
    key = validate_key(doc.get(KEY_FIELD))
    return key, dumps({k: v for k, v in doc.items() if k != KEY_FIELD})


class Collection:
    """
    One table of documents: ``_id TEXT PRIMARY KEY`` plus the JSON body in
    ``data``. Filters compile to SQL; updates are applied in memory and the
    whole body is written back.
    """

    def __init__(self, database: "Database", name: str, logger: Optional[logging.Logger] = None):
        self.database = database
        self.name = validate_collection_name(name)
        self.logger = logger or logging.getLogger(__name__)
        self._storage = database._storage
        self._retry = database.retry
        self._compiler = FilterCompiler(logger=self.logger)
        self._indexes = IndexManager(self._storage, self.name, logger=self.logger)
        if not self._storage.read_only:
            self._storage.execute(CREATE_TABLE_SQL.format(table=self.name))

    def __repr__(self):
        return f"Collection({self.database.name!r}, {self.name!r})"

    # ----- Internal helpers -----
    def _decode(self, row) -> dict:
        key, data = row
        doc = loads(data, context=f"{self.name}/{key}", log=self.logger)
        return {KEY_FIELD: key, **{k: v for k, v in doc.items() if k != KEY_FIELD}}

    def _write(self, operation: Callable[[], T], description: str) -> T:
        # Inside a caller's transaction a retry could replay half a block.
        if self._storage.in_transaction:
            return operation()
        return self._retry.run(operation, f"{self.name}.{description}")

    def _select(self, filter: Optional[dict], limit: Optional[int] = None) -> List[tuple]:
        where, params = self._compiler.compile(filter or {})
        sql = f'SELECT _id, data FROM "{self.name}" WHERE {where}'
        if limit:
            sql += " LIMIT ?"
            params = params + [limit]
        return self._storage.query_all(sql, params)

    def _insert_row(self, key: str, data: str) -> None:
        try:
            self._storage.run(f'INSERT INTO "{self.name}" (_id, data) VALUES (?, ?)', (key, data))
        except DuplicateKeyError as e:
            raise DuplicateKeyError(f"Duplicate key error in {self.name}: {key!r} ({e})", key=key) from e

    def _update_row(self, key: str, doc: dict) -> None:
        _, data = _split({**doc, KEY_FIELD: key})
        try:
            self._storage.run(f'UPDATE "{self.name}" SET data = ? WHERE _id = ?', (data, key))
        except DuplicateKeyError as e:
            raise DuplicateKeyError(f"Duplicate key error in {self.name}: {key!r} ({e})", key=key) from e

    # ----- Insert -----
    def insert_one(self, document: dict) -> InsertOneResult:
        if not isinstance(document, dict):
            raise InvalidDocumentError(f"Document must be a dict, got {type(document).__name__}.")
        doc = dict(document)
        if KEY_FIELD not in doc:
            doc[KEY_FIELD] = generate_object_id()
        key, data = _split(doc)
        self._write(lambda: self._insert_row(key, data), "insert_one")
        self.logger.debug("Inserted %s into %s", key, self.name)
        return InsertOneResult(key)

    def insert_many(self, documents: Iterable[dict]) -> InsertManyResult:
        rows = []
        for document in documents:
            if not isinstance(document, dict):
                raise InvalidDocumentError(f"Document must be a dict, got {type(document).__name__}.")
            doc = dict(document)
            if KEY_FIELD not in doc:
                doc[KEY_FIELD] = generate_object_id()
            rows.append(_split(doc))

        def op():
            with self._storage.transaction():
                for key, data in rows:
                    self._insert_row(key, data)

        if rows:
            self._write(op, "insert_many")
        self.logger.debug("Inserted %d documents into %s", len(rows), self.name)
        return InsertManyResult([key for key, _ in rows])

    # ----- Find -----
    def find(self, filter: Optional[dict] = None, projection: Optional[dict] = None,
             sort: Optional[SortSpec] = None, skip: int = 0, limit: int = 0) -> Cursor:
        return Cursor(self, filter, projection=projection, sort=sort, skip=skip, limit=limit)

    def find_one(self, filter: Optional[dict] = None, projection: Optional[dict] = None,
                 sort: Optional[SortSpec] = None) -> Optional[dict]:
        return Cursor(self, filter, projection=projection, sort=sort).first()

    def count_documents(self, filter: Optional[dict] = None) -> int:
        return Cursor(self, filter).count()

    def distinct(self, key: str, filter: Optional[dict] = None) -> List[Any]:
        values = []
        for doc in self.find(filter):
            val = get_path(doc, key)
            if val is MISSING or val is None:
                continue
            if isinstance(val, list):
                values.extend(val)
            else:
                values.append(val)
        # unique preserving order
        seen = set()
        out = []
        for v in values:
            marker = json.dumps(encode(v), sort_keys=True)
            if marker not in seen:
                seen.add(marker)
                out.append(v)
        return out

    # ----- Delete -----
    def delete_one(self, filter: Optional[dict] = None) -> DeleteResult:
        where, params = self._compiler.compile(filter or {})
        sql = (f'DELETE FROM "{self.name}" WHERE rowid IN '
               f'(SELECT rowid FROM "{self.name}" WHERE {where} LIMIT 1)')
        deleted = self._write(lambda: self._storage.run(sql, params), "delete_one")
        return DeleteResult(deleted)

    def delete_many(self, filter: Optional[dict] = None) -> DeleteResult:
        where, params = self._compiler.compile(filter or {})
        sql = f'DELETE FROM "{self.name}" WHERE {where}'
        deleted = self._write(lambda: self._storage.run(sql, params), "delete_many")
        return DeleteResult(deleted)

    # ----- Update / Replace -----
    def _update(self, filter: Optional[dict], update: dict, upsert: bool, limit: Optional[int]) -> UpdateResult:
        spec = validate_update(update)

        def op():
            with self._storage.transaction():
                matched = modified = 0
                for row in self._select(filter, limit):
                    doc = self._decode(row)
                    matched += 1
                    if is_corrupted(doc):
                        self.logger.warning("Skipping update of corrupted document %s in %s", doc[KEY_FIELD], self.name)
                        continue
                    if apply_update(doc, spec, self.logger):
                        self._update_row(doc[KEY_FIELD], doc)
                        modified += 1
                if matched == 0 and upsert:
                    key, seed = upsert_document(filter, spec)
                    validate_key(key)
                    _, data = _split({**seed, KEY_FIELD: key})
                    self._insert_row(key, data)
                    return UpdateResult(0, 0, upserted_id=key)
                return UpdateResult(matched, modified)

        return self._write(op, "update")

    def update_one(self, filter: Optional[dict], update: dict, upsert: bool = False) -> UpdateResult:
        return self._update(filter, update, upsert, limit=1)

    def update_many(self, filter: Optional[dict], update: dict, upsert: bool = False) -> UpdateResult:
        return self._update(filter, update, upsert, limit=None)

    def replace_one(self, filter: Optional[dict], replacement: dict, upsert: bool = False) -> UpdateResult:
        if not isinstance(replacement, dict) or any(
            isinstance(k, str) and k.startswith("$") for k in replacement.keys()
        ):
            raise InvalidUpdateError("Replacement document must be a plain dict without update operators.")
        encode(replacement)

        def op():
            with self._storage.transaction():
                rows = self._select(filter, 1)
                if rows:
                    current = self._decode(rows[0])
                    key = current[KEY_FIELD]
                    if KEY_FIELD in replacement and replacement[KEY_FIELD] != key:
                        raise InvalidUpdateError("The _id field cannot be changed by a replacement.")
                    new_doc = {**replacement, KEY_FIELD: key}
                    if _split(new_doc)[1] == rows[0][1]:
                        return UpdateResult(1, 0)
                    self._update_row(key, new_doc)
                    return UpdateResult(1, 1)
                if upsert:
                    key = replacement.get(KEY_FIELD, MISSING)
                    if key is MISSING:
                        key, _ = upsert_document(filter, {"$set": {}})
                    validate_key(key)
                    _, data = _split({**replacement, KEY_FIELD: key})
                    self._insert_row(key, data)
                    return UpdateResult(0, 0, upserted_id=key)
                return UpdateResult(0, 0)

        return self._write(op, "replace_one")

    # ----- FindOneAndX -----
    def find_one_and_update(self, filter: Optional[dict], update: dict, projection: Optional[dict] = None,
                            sort: Optional[SortSpec] = None, upsert: bool = False,
                            return_document: str = ReturnDocument.AFTER) -> Optional[dict]:
        if return_document not in (ReturnDocument.BEFORE, ReturnDocument.AFTER):
            raise ValueError(f"return_document must be 'before' or 'after', got {return_document!r}")
        spec = validate_update(update)
        cursor = Cursor(self, filter, sort=sort)

        def op():
            with self._storage.transaction():
                doc = cursor.first()
                if doc is None:
                    if not upsert:
                        return None
                    key, seed = upsert_document(filter, spec)
                    validate_key(key)
                    _, data = _split({**seed, KEY_FIELD: key})
                    self._insert_row(key, data)
                    return {KEY_FIELD: key, **seed} if return_document == ReturnDocument.AFTER else None
                if is_corrupted(doc):
                    self.logger.warning("Skipping update of corrupted document %s in %s", doc[KEY_FIELD], self.name)
                    return doc
                before = copy.deepcopy(doc)
                if apply_update(doc, spec, self.logger):
                    self._update_row(doc[KEY_FIELD], doc)
                return doc if return_document == ReturnDocument.AFTER else before

        result = self._write(op, "find_one_and_update")
        return None if result is None else apply_projection(result, projection)

    def find_one_and_delete(self, filter: Optional[dict], projection: Optional[dict] = None,
                            sort: Optional[SortSpec] = None) -> Optional[dict]:
        cursor = Cursor(self, filter, sort=sort)

        def op():
            with self._storage.transaction():
                doc = cursor.first()
                if doc is not None:
                    self._storage.run(f'DELETE FROM "{self.name}" WHERE _id = ?', (doc[KEY_FIELD],))
                return doc

        result = self._write(op, "find_one_and_delete")
        return None if result is None else apply_projection(result, projection)

    # ----- Indexes -----
    def create_index(self, keys: KeySpec, unique: bool = False, name: Optional[str] = None) -> str:
        return self._write(lambda: self._indexes.create_index(keys, unique=unique, name=name), "create_index")

    def list_indexes(self) -> List[IndexInfo]:
        return self._indexes.list_indexes()

    def drop_index(self, name: str) -> None:
        self._write(lambda: self._indexes.drop_index(name), "drop_index")

    def drop_indexes(self) -> int:
        return self._write(self._indexes.drop_indexes, "drop_indexes")

    # ----- Change streams -----
    def watch(self, filter: Optional[dict] = None, full_document: str = "default",
              full_document_before_change: str = "off", resume_after: Any = None,
              poll_interval: float = 0.1, batch_size: int = 100, max_buffer_size: int = 1000) -> ChangeStream:
        stream = ChangeStream(
            self._storage, self.name, db_name=self.database.name, filter=filter,
            full_document=full_document, full_document_before_change=full_document_before_change,
            resume_after=resume_after, poll_interval=poll_interval, batch_size=batch_size,
            max_buffer_size=max_buffer_size, on_close=self.database._stream_closed, logger=self.logger,
        )
        self.database._stream_opened(stream)
        return stream

    # ----- Drop -----
    def drop(self) -> None:
        self._write(lambda: self._storage.execute(f'DROP TABLE IF EXISTS "{self.name}"'), "drop")
        self.database._forget(self.name)
        self.logger.info("Dropped collection %s", self.name)
