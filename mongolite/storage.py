"""
Thin wrapper over a single ``sqlite3`` connection.

All access goes through one re-entrant lock, so caller threads and the
change-stream poller never interleave statements or transactions.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

from .errors import DuplicateKeyError, InvalidOperationError, MongoLiteError, TransientStorageError

logger = logging.getLogger(__name__)

_SQLITE_BUSY = 5
_SQLITE_LOCKED = 6


def is_transient(exc: BaseException) -> bool:
    """True for busy/locked errors that are worth retrying."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None and code & 0xFF in (_SQLITE_BUSY, _SQLITE_LOCKED):
        return True
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def translate_error(exc: sqlite3.Error) -> MongoLiteError:
    if isinstance(exc, sqlite3.IntegrityError) and "UNIQUE" in str(exc).upper():
        return DuplicateKeyError(f"Duplicate key: {exc}")
    if is_transient(exc):
        return TransientStorageError(f"Database is busy: {exc}")
    return MongoLiteError(f"Storage error: {exc}")


class Storage:
    """
    Connection lifecycle, statement execution and transactions.

    Only validated identifiers are ever interpolated into SQL by callers;
    values always travel as positional parameters.
    """

    def __init__(self, path: str = ":memory:", wal: bool = True, timeout: float = 5.0,
                 read_only: bool = False, logger: Optional[logging.Logger] = None):
        self.path = path
        self.read_only = read_only
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._depth = 0
        self._closed = False
        try:
            if read_only and path != ":memory:":
                self.conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True, timeout=timeout,
                                            isolation_level=None, check_same_thread=False)
            else:
                self.conn = sqlite3.connect(path, timeout=timeout, isolation_level=None,
                                            check_same_thread=False)
            if wal and path != ":memory:" and not read_only:
                self.conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.Error as e:
            raise translate_error(e) from e
        self.logger.debug("Opened database %s (wal=%s, read_only=%s)", path, wal, read_only)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def _check_open(self):
        if self._closed:
            raise InvalidOperationError("Database is closed.")

    def create_function(self, name: str, num_params: int, func: Callable) -> None:
        with self._lock:
            self._check_open()
            self.conn.create_function(name, num_params, func, deterministic=True)

    # ----- Statements -----
    def _run(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        self._check_open()
        self.logger.debug("SQL: %s | params=%r", sql, list(params))
        try:
            return self.conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise translate_error(e) from e

    def execute(self, sql: str) -> None:
        """Run a parameterless statement (DDL, pragmas)."""
        with self._lock:
            self._run(sql)

    def run(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._lock:
            return self._run(sql, params).rowcount

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Tuple]:
        with self._lock:
            return self._run(sql, params).fetchone()

    def query_all(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple]:
        with self._lock:
            return self._run(sql, params).fetchall()

    # ----- Transactions -----
    def begin(self):
        self._run("BEGIN;" if self.read_only else "BEGIN IMMEDIATE;")

    def commit(self):
        self._run("COMMIT;")

    def rollback(self):
        self._run("ROLLBACK;")

    @contextmanager
    def transaction(self) -> Iterator["Storage"]:
        """
        Hold the lock for a BEGIN..COMMIT block. Nested calls join the
        outermost transaction; an exception rolls the whole thing back.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            self.begin()
            self._depth = 1
            try:
                yield self
                self._depth = 0
                self.commit()
            except BaseException:
                self._depth = 0
                if self.conn.in_transaction:
                    try:
                        self.rollback()
                    except MongoLiteError as e:
                        self.logger.error("Rollback failed: %s", e)
                raise

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self.conn.close()
            except sqlite3.Error as e:
                self.logger.warning("Error while closing %s: %s", self.path, e)
