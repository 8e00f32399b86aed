"""
Secondary indexes as native SQLite expression indexes.

An index over ``address.city`` becomes
``CREATE INDEX "users_address_city_1" ON "users" (json_extract(data, '$.address.city') ASC)``.
Nothing is stored besides the DDL itself; ``list_indexes`` reads it back
from ``sqlite_master``.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .errors import DuplicateKeyError, InvalidIndexError, InvalidPathError
from .paths import parse_path, path_from_json_path, sql_json_path
from .query import KEY_FIELD
from .storage import Storage

logger = logging.getLogger(__name__)

KeySpec = Union[str, Dict[str, int], Sequence[Tuple[str, int]]]

_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")
_UNIQUE_RE = re.compile(r"^\s*CREATE\s+UNIQUE\s+INDEX", re.IGNORECASE)
_DIRECTION_RE = re.compile(r"\s+(ASC|DESC)\s*$", re.IGNORECASE)
_JSON_EXTRACT_RE = re.compile(r"^json_extract\s*\(\s*\w+\s*,\s*'([^']*)'\s*\)$", re.IGNORECASE)
_ON_RE = re.compile(r"\bON\s+(\"[^\"]+\"|\S+)\s*\(", re.IGNORECASE)


@dataclass
class IndexInfo:
    name: str
    key: Dict[str, int] = field(default_factory=dict)
    unique: bool = False

    def to_dict(self) -> dict:
        return {"name": self.name, "key": dict(self.key), "unique": self.unique}


def validate_index_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name) or name.lower().startswith("sqlite_"):
        raise InvalidIndexError(f"Invalid index name: {name!r}")
    return name


def normalize_keys(keys: KeySpec) -> List[Tuple[str, int]]:
    if isinstance(keys, str):
        pairs = [(keys, 1)]
    elif isinstance(keys, dict):
        pairs = list(keys.items())
    elif isinstance(keys, (list, tuple)):
        pairs = [tuple(p) for p in keys]
    else:
        raise InvalidIndexError(f"Index keys must be a path, dict or list of pairs, got {type(keys).__name__}")
    if not pairs:
        raise InvalidIndexError("Index must cover at least one field.")
    out = []
    for pair in pairs:
        if len(pair) != 2:
            raise InvalidIndexError(f"Index keys must be (path, direction) pairs, got {pair!r}")
        path, direction = pair
        try:
            parse_path(path)
        except InvalidPathError as e:
            raise InvalidIndexError(str(e)) from e
        if isinstance(direction, bool) or direction not in (1, -1):
            raise InvalidIndexError(f"Index direction for '{path}' must be 1 or -1, got {direction!r}")
        out.append((path, direction))
    return out


def default_index_name(collection: str, keys: List[Tuple[str, int]]) -> str:
    parts = [f"{re.sub(r'[^A-Za-z0-9_]', '_', path)}_{direction}" for path, direction in keys]
    return f"{collection}_" + "_".join(parts)


def _column_sql(path: str, direction: int) -> str:
    expr = KEY_FIELD if path == KEY_FIELD else f"json_extract(data, {sql_json_path(path)})"
    return f"{expr} {'ASC' if direction == 1 else 'DESC'}"


def split_columns(body: str) -> List[str]:
    """Split an index column list on top-level commas (outside parens and quotes)."""
    columns, current, depth, quote = [], "", 0, None
    for ch in body:
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            columns.append(current.strip())
            current = ""
            continue
        current += ch
    if current.strip():
        columns.append(current.strip())
    return columns


def parse_index_sql(name: str, sql: str) -> IndexInfo:
    m = _ON_RE.search(sql)
    if not m:
        raise InvalidIndexError(f"Cannot parse index definition: {sql!r}")
    body = sql[m.end():sql.rstrip().rfind(")")]
    key = {}
    for column in split_columns(body):
        direction = 1
        d = _DIRECTION_RE.search(column)
        if d:
            direction = 1 if d.group(1).upper() == "ASC" else -1
            column = column[:d.start()].strip()
        j = _JSON_EXTRACT_RE.match(column)
        if j:
            path = path_from_json_path(j.group(1))
        else:
            path = column.strip('"')
        key[path] = direction
    return IndexInfo(name=name, key=key, unique=bool(_UNIQUE_RE.match(sql)))


class IndexManager:
    def __init__(self, storage: Storage, collection: str, logger: Optional[logging.Logger] = None):
        self.storage = storage
        self.collection = collection
        self.logger = logger or logging.getLogger(__name__)

    def _existing(self, name: str) -> Optional[Tuple[str, Optional[str]]]:
        return self.storage.query_one(
            "SELECT tbl_name, sql FROM sqlite_master WHERE type = 'index' AND name = ?", (name,)
        )

    def create_index(self, keys: KeySpec, unique: bool = False, name: Optional[str] = None) -> str:
        pairs = normalize_keys(keys)
        name = validate_index_name(name or default_index_name(self.collection, pairs))
        existing = self._existing(name)
        if existing is not None:
            table, sql = existing
            # Index names are database-wide; only an identical definition is a no-op.
            info = parse_index_sql(name, sql) if sql and table == self.collection else None
            if info is None or list(info.key.items()) != pairs or info.unique != bool(unique):
                raise InvalidIndexError(
                    f"Index name {name!r} is already used by a different index on {table!r}; "
                    f"pass an explicit name."
                )
            self.logger.debug("Index %s already exists on %s", name, self.collection)
            return name
        columns = ", ".join(_column_sql(path, direction) for path, direction in pairs)
        sql = (f'CREATE {"UNIQUE " if unique else ""}INDEX IF NOT EXISTS "{name}" '
               f'ON "{self.collection}" ({columns})')
        try:
            self.storage.execute(sql)
        except DuplicateKeyError as e:
            raise DuplicateKeyError(
                f"Cannot build unique index {name}: collection {self.collection} contains duplicate values."
            ) from e
        self.logger.info("Created %sindex %s on %s", "unique " if unique else "", name, self.collection)
        return name

    def list_indexes(self) -> List[IndexInfo]:
        rows = self.storage.query_all(
            "SELECT name, sql FROM sqlite_master "
            "WHERE type = 'index' AND tbl_name = ? AND sql IS NOT NULL ORDER BY name",
            (self.collection,),
        )
        out = []
        for name, sql in rows:
            try:
                out.append(parse_index_sql(name, sql))
            except (InvalidIndexError, InvalidPathError) as e:
                self.logger.warning("Skipping unparseable index %s: %s", name, e)
        return out

    def drop_index(self, name: str) -> None:
        validate_index_name(name)
        row = self.storage.query_one(
            "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ? AND tbl_name = ?",
            (name, self.collection),
        )
        if row is None:
            self.logger.debug("Index %s not present on %s; nothing to drop", name, self.collection)
            return
        self.storage.execute(f'DROP INDEX IF EXISTS "{name}"')
        self.logger.info("Dropped index %s on %s", name, self.collection)

    def drop_indexes(self) -> int:
        dropped = 0
        for info in self.list_indexes():
            self.drop_index(info.name)
            dropped += 1
        return dropped
