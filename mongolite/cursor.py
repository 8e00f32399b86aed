import copy
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import InvalidOperationError, InvalidQueryError
from .paths import MISSING, get_path, parse_path, set_path, sql_json_path, unset_path
from .query import KEY_FIELD

if TYPE_CHECKING:
    from .collection import Collection

ASCENDING = 1
DESCENDING = -1

SortSpec = Union[str, dict, Sequence[Tuple[str, int]]]


def normalize_sort(spec: SortSpec, direction: Optional[int] = None) -> List[Tuple[str, int]]:
    if isinstance(spec, str):
        pairs = [(spec, ASCENDING if direction is None else direction)]
    elif isinstance(spec, dict):
        pairs = list(spec.items())
    elif isinstance(spec, (list, tuple)):
        pairs = [tuple(p) for p in spec]
    else:
        raise TypeError(f"Sort must be a path, dict or list of (path, direction) pairs, got {type(spec).__name__}")
    out = []
    for pair in pairs:
        if len(pair) != 2:
            raise ValueError(f"Sort entries must be (path, direction) pairs, got {pair!r}")
        path, d = pair
        parse_path(path)
        if isinstance(d, bool) or d not in (ASCENDING, DESCENDING):
            raise ValueError(f"Sort direction for '{path}' must be 1 or -1, got {d!r}")
        out.append((path, d))
    return out


def apply_projection(doc: dict, projection: Optional[dict]) -> dict:
    if not projection:
        return doc
    fields = {k: v for k, v in projection.items() if k != KEY_FIELD}
    keep_id = projection.get(KEY_FIELD, True) not in (0, False)
    include = [k for k, v in fields.items() if v]
    if include:
        out = {}
        if keep_id and KEY_FIELD in doc:
            out[KEY_FIELD] = doc[KEY_FIELD]
        for path in include:
            value = get_path(doc, path)
            if value is not MISSING:
                set_path(out, path, copy.deepcopy(value))
        return out
    out = copy.deepcopy(doc)
    for path in fields:
        unset_path(out, path)
    if not keep_id:
        out.pop(KEY_FIELD, None)
    return out


class Cursor:
    """
    Deferred query over one collection. Builder calls only record state;
    the SQL runs on iteration, ``to_list``, ``first`` or ``count``.
    """

    def __init__(self, collection: "Collection", filter: Optional[dict] = None,
                 projection: Optional[dict] = None, sort: Optional[SortSpec] = None,
                 skip: int = 0, limit: int = 0):
        self._collection = collection
        self._where, self._params = collection._compiler.compile(filter or {})
        self._projection = None
        self._sort: List[Tuple[str, int]] = []
        self._skip = 0
        self._limit = 0
        self._executed = False
        if projection:
            self.project(projection)
        if sort:
            self.sort(sort)
        self.skip(skip)
        self.limit(limit)

    # ----- builders -----
    def _check_mutable(self):
        if self._executed:
            raise InvalidOperationError("Cannot modify a cursor after it has been executed.")

    def sort(self, spec: SortSpec, direction: Optional[int] = None) -> "Cursor":
        self._check_mutable()
        self._sort = normalize_sort(spec, direction)
        return self

    def skip(self, n: int) -> "Cursor":
        self._check_mutable()
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise ValueError(f"skip must be a non-negative integer, got {n!r}")
        self._skip = n
        return self

    def limit(self, n: int) -> "Cursor":
        self._check_mutable()
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise ValueError(f"limit must be a non-negative integer, got {n!r}")
        self._limit = n
        return self

    def project(self, projection: dict) -> "Cursor":
        self._check_mutable()
        if not isinstance(projection, dict):
            raise InvalidQueryError("Projection must be a dict.")
        for path in projection:
            if path != KEY_FIELD:
                parse_path(path)
        self._projection = projection
        return self

    # ----- SQL -----
    def _order_by(self) -> str:
        terms = []
        for path, direction in self._sort:
            expr = KEY_FIELD if path == KEY_FIELD else f"json_extract(data, {sql_json_path(path)})"
            terms.append(f"{expr} {'ASC' if direction == ASCENDING else 'DESC'}")
        return ", ".join(terms)

    def _build(self, limit: Optional[int] = None) -> Tuple[str, List[Any]]:
        limit = self._limit if limit is None else limit
        sql = f'SELECT _id, data FROM "{self._collection.name}" WHERE {self._where}'
        params = list(self._params)
        if self._sort:
            sql += f" ORDER BY {self._order_by()}"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        if self._skip:
            if not limit:
                sql += " LIMIT -1"
            sql += " OFFSET ?"
            params.append(self._skip)
        return sql, params

    def explain(self) -> dict:
        sql, params = self._build()
        return {"sql": sql, "params": params}

    def _execute(self, limit: Optional[int] = None) -> List[dict]:
        self._executed = True
        sql, params = self._build(limit)
        rows = self._collection._storage.query_all(sql, params)
        return [apply_projection(self._collection._decode(row), self._projection) for row in rows]

    # ----- execution -----
    def __iter__(self) -> Iterator[dict]:
        return iter(self._execute())

    def to_list(self, length: Optional[int] = None) -> List[dict]:
        if length is not None and length < 0:
            raise ValueError(f"length must be non-negative, got {length!r}")
        if length is None:
            return self._execute()
        if length == 0:
            self._executed = True
            return []
        limit = min(self._limit, length) if self._limit else length
        return self._execute(limit)

    def first(self) -> Optional[dict]:
        docs = self._execute(1)
        return docs[0] if docs else None

    def count(self) -> int:
        """Number of matching documents, ignoring skip and limit."""
        self._executed = True
        sql = f'SELECT COUNT(*) FROM "{self._collection.name}" WHERE {self._where}'
        row = self._collection._storage.query_one(sql, self._params)
        return row[0] if row else 0
