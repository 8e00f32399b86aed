import logging
import os
import re
import threading
from typing import Dict, List, Optional

from .change_stream import CHANGES_TABLE, ChangeStream
from .collection import Collection, validate_collection_name
from .query import REGEXP_FUNCTION, sql_regexp
from .retry import RetryPolicy
from .storage import Storage

logger = logging.getLogger(__name__)

_DB_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


class Database:
    """
    A SQLite file (or ``:memory:``) holding any number of collections.

    Usage:
        with Database("app.db") as db:
            db["users"].insert_one({"name": "Alice"})
    """

    def __init__(self, path: str = ":memory:", wal: bool = True, timeout: float = 5.0,
                 read_only: bool = False, retry: Optional[RetryPolicy] = None,
                 logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger(__name__)
        self.retry = retry or RetryPolicy(logger=self.logger)
        self._storage = Storage(path, wal=wal, timeout=timeout, read_only=read_only, logger=self.logger)
        self._storage.create_function(REGEXP_FUNCTION, 3, sql_regexp)
        self.collections: Dict[str, Collection] = {}
        self._streams: List[ChangeStream] = []
        self._streams_lock = threading.Lock()
        if path == ":memory:" or not path:
            self.name = "mongolite"
        else:
            self.name = os.path.splitext(os.path.basename(path))[0] or "mongolite"

    def __repr__(self):
        return f"Database({self.path!r})"

    def __getitem__(self, coll_name: str) -> Collection:
        return self.collection(coll_name)

    def collection(self, name: str) -> Collection:
        if name not in self.collections:
            self.collections[name] = Collection(self, name, logger=self.logger)
        return self.collections[name]

    def list_collection_names(self) -> List[str]:
        rows = self._storage.query_all(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\' AND name != ? ORDER BY name",
            (CHANGES_TABLE,),
        )
        return [name for (name,) in rows]

    def drop_collection(self, name: str) -> None:
        validate_collection_name(name)
        self.collection(name).drop()

    def _forget(self, name: str) -> None:
        self.collections.pop(name, None)

    def transaction(self):
        """
        Group several operations into one SQLite transaction:

            with db.transaction():
                db["a"].insert_one(...)
                db["b"].delete_one(...)
        """
        return self._storage.transaction()

    # ----- change stream bookkeeping -----
    def _stream_opened(self, stream: ChangeStream) -> None:
        with self._streams_lock:
            self._streams.append(stream)

    def _stream_closed(self, stream: ChangeStream) -> None:
        with self._streams_lock:
            if stream in self._streams:
                self._streams.remove(stream)

    @property
    def closed(self) -> bool:
        return self._storage.closed

    def close(self):
        with self._streams_lock:
            streams = list(self._streams)
        if streams:
            self.logger.warning("Closing %d open change stream(s) before closing %s", len(streams), self.path)
        for stream in streams:
            stream.close()
        self._storage.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class MongoLiteClient:
    """
    Top-level client similar to pymongo.MongoClient.
    Usage:
        client = MongoLiteClient()
        db = client["my_db"]
        coll = db["my_coll"]
    """
    def __init__(self, base_dir: str = ".", **options):
        self.base_dir = base_dir
        self.options = options
        self.databases: Dict[str, Database] = {}

    def __getitem__(self, db_name: str) -> Database:
        if db_name not in self.databases:
            if not _DB_NAME_RE.match(db_name):
                raise ValueError(f"Invalid database name: {db_name!r}")
            db_path = os.path.join(self.base_dir, f"{db_name}.db")
            self.databases[db_name] = Database(db_path, **self.options)
        return self.databases[db_name]

    def list_database_names(self) -> List[str]:
        return sorted(self.databases)

    def close(self):
        for db in self.databases.values():
            db.close()
        self.databases.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
