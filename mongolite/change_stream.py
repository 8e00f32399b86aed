"""
Change streams over a collection.

Row-level triggers append every insert, update and delete to the shared
``__mongolite_changes__`` log. A ``ChangeStream`` polls that log from a
background thread, turns rows into MongoDB-shaped change events and hands
them to ``change`` handlers and to pull-style consumers (``next``,
``try_next``, iteration). Delivery is at-least-once and in log order.
"""

import logging
import threading
from collections import deque
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import InvalidOperationError
from .matching import evaluate
from .query import parse_filter
from .serialization import dumps_value, loads, parse_datetime
from .storage import Storage

logger = logging.getLogger(__name__)

CHANGES_TABLE = "__mongolite_changes__"

FULL_DOCUMENT_OPTIONS = ("default", "updateLookup", "whenAvailable", "required")
FULL_DOCUMENT_BEFORE_OPTIONS = ("off", "whenAvailable", "required")
CHANNELS = ("change", "error", "close")
TRIGGER_KINDS = ("insert", "update", "delete")

CREATE_CHANGES_SQL = f"""
CREATE TABLE IF NOT EXISTS {CHANGES_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    operation_type TEXT NOT NULL,
    collection_name TEXT NOT NULL,
    document_id TEXT NOT NULL,
    full_document TEXT,
    full_document_before TEXT,
    updated_fields TEXT,
    removed_fields TEXT
);
"""

CREATE_CHANGES_INDEX_SQL = (
    f"CREATE INDEX IF NOT EXISTS idx_mongolite_changes_collection_id "
    f"ON {CHANGES_TABLE} (collection_name, id);"
)

_TRIGGER_SQL = {
    "insert": """
CREATE TRIGGER IF NOT EXISTS "{name}" AFTER INSERT ON "{coll}" FOR EACH ROW
BEGIN
    INSERT INTO {table} (operation_type, collection_name, document_id, full_document)
    VALUES ('insert', '{coll}', NEW._id, NEW.data);
END;
""",
    "update": """
CREATE TRIGGER IF NOT EXISTS "{name}" AFTER UPDATE ON "{coll}" FOR EACH ROW
BEGIN
    INSERT INTO {table} (operation_type, collection_name, document_id, full_document, full_document_before)
    VALUES ('update', '{coll}', NEW._id, NEW.data, OLD.data);
END;
""",
    "delete": """
CREATE TRIGGER IF NOT EXISTS "{name}" AFTER DELETE ON "{coll}" FOR EACH ROW
BEGIN
    INSERT INTO {table} (operation_type, collection_name, document_id, full_document_before)
    VALUES ('delete', '{coll}', OLD._id, OLD.data);
END;
""",
}


class ChangeStreamState(Enum):
    INITIALIZING = "initializing"
    POLLING = "polling"
    CLOSED = "closed"


def trigger_name(collection: str, kind: str) -> str:
    return f"{collection}_mongolite_{kind}_trigger"


def ensure_change_log(storage: Storage) -> None:
    storage.execute(CREATE_CHANGES_SQL)
    storage.execute(CREATE_CHANGES_INDEX_SQL)


def install_triggers(storage: Storage, collection: str) -> None:
    for kind in TRIGGER_KINDS:
        storage.execute(_TRIGGER_SQL[kind].format(
            name=trigger_name(collection, kind), coll=collection, table=CHANGES_TABLE,
        ))


def update_description(before: dict, after: dict) -> dict:
    """Top-level diff of two snapshots."""
    updated = {}
    removed = []
    for key in list(before) + [k for k in after if k not in before]:
        if key not in after:
            removed.append(key)
        elif key not in before or dumps_value(before[key]) != dumps_value(after[key]):
            updated[key] = after[key]
    return {"updatedFields": updated, "removedFields": removed}


class ChangeStream:
    """
    Ordered, resumable stream of change events for one collection.

    Polling starts on construction. Use as a context manager or call
    ``close()``; ``cleanup()`` additionally removes the triggers.
    """

    def __init__(self, storage: Storage, collection: str, db_name: str = "mongolite",
                 filter: Optional[dict] = None, full_document: str = "default",
                 full_document_before_change: str = "off", resume_after: Union[str, int, dict, None] = None,
                 poll_interval: float = 0.1, batch_size: int = 100, max_buffer_size: int = 1000,
                 on_close: Optional[Callable[["ChangeStream"], None]] = None,
                 logger: Optional[logging.Logger] = None):
        if full_document not in FULL_DOCUMENT_OPTIONS:
            raise ValueError(f"full_document must be one of {FULL_DOCUMENT_OPTIONS}, got {full_document!r}")
        if full_document_before_change not in FULL_DOCUMENT_BEFORE_OPTIONS:
            raise ValueError(
                f"full_document_before_change must be one of {FULL_DOCUMENT_BEFORE_OPTIONS}, "
                f"got {full_document_before_change!r}"
            )
        if poll_interval <= 0 or batch_size <= 0 or max_buffer_size <= 0:
            raise ValueError("poll_interval, batch_size and max_buffer_size must be positive")
        self.logger = logger or logging.getLogger(__name__)
        self.storage = storage
        self.collection = collection
        self.db_name = db_name
        self.full_document = full_document
        self.full_document_before_change = full_document_before_change
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._filter = parse_filter(filter, self.logger) if filter else None
        self._on_close = on_close
        self._handlers: Dict[str, List[Callable]] = {channel: [] for channel in CHANNELS}
        self._buffer: deque = deque(maxlen=max_buffer_size)
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._close_lock = threading.Lock()
        self.state = ChangeStreamState.INITIALIZING

        ensure_change_log(storage)
        install_triggers(storage, collection)
        if resume_after is not None:
            self._last_id = self._token_id(resume_after)
        else:
            row = storage.query_one(
                f"SELECT COALESCE(MAX(id), 0) FROM {CHANGES_TABLE} WHERE collection_name = ?",
                (collection,),
            )
            self._last_id = row[0] if row else 0

        self._thread = threading.Thread(
            target=self._run, name=f"mongolite-change-stream-{collection}", daemon=True
        )
        self.state = ChangeStreamState.POLLING
        self._thread.start()
        self.logger.debug("Change stream on %s started after change %d", collection, self._last_id)

    @staticmethod
    def _token_id(token: Union[str, int, dict]) -> int:
        if isinstance(token, dict):
            token = token.get("_id")
        try:
            return int(token)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid resume token: {token!r}") from e

    @property
    def closed(self) -> bool:
        return self.state is ChangeStreamState.CLOSED

    @property
    def resume_token(self) -> str:
        return str(self._last_id)

    # ----- handlers -----
    def on(self, channel: str, handler: Callable) -> "ChangeStream":
        if channel not in CHANNELS:
            raise ValueError(f"Unknown change stream channel: {channel!r}")
        self._handlers[channel].append(handler)
        return self

    def off(self, channel: str, handler: Optional[Callable] = None) -> "ChangeStream":
        if channel not in CHANNELS:
            raise ValueError(f"Unknown change stream channel: {channel!r}")
        if handler is None:
            self._handlers[channel].clear()
        elif handler in self._handlers[channel]:
            self._handlers[channel].remove(handler)
        return self

    def _emit(self, channel: str, *args) -> None:
        for handler in list(self._handlers[channel]):
            try:
                handler(*args)
            except Exception:
                self.logger.exception("Change stream %s handler failed", channel)

    def _emit_error(self, error: Exception) -> None:
        if self._handlers["error"]:
            self._emit("error", error)
        else:
            self.logger.error("Change stream poll on %s failed: %s", self.collection, error)

    # ----- polling -----
    def _run(self):
        while not self._stop.is_set():
            try:
                self.poll()
            except Exception as e:
                if self._stop.is_set():
                    break
                self._emit_error(e)
            self._stop.wait(self.poll_interval)

    def poll(self) -> int:
        """Read one batch from the change log. Returns the number of events delivered."""
        if self.closed:
            raise InvalidOperationError("Change stream is closed.")
        rows = self.storage.query_all(
            f"SELECT id, timestamp, operation_type, document_id, full_document, full_document_before "
            f"FROM {CHANGES_TABLE} WHERE collection_name = ? AND id > ? ORDER BY id LIMIT ?",
            (self.collection, self._last_id, self.batch_size),
        )
        delivered = 0
        for row in rows:
            event = self._to_event(row)
            self._last_id = row[0]
            if self._filter is not None and not evaluate(self._filter, event):
                continue
            with self._cond:
                if len(self._buffer) == self._buffer.maxlen:
                    self.logger.warning("Change stream buffer full on %s; dropping oldest event", self.collection)
                self._buffer.append(event)
                self._cond.notify_all()
            self._emit("change", event)
            delivered += 1
        return delivered

    def _wants_full_document(self, op: str) -> bool:
        if self.full_document == "default":
            return op == "insert"
        return op in ("insert", "update", "replace")

    def _wants_before(self, op: str) -> bool:
        if self.full_document_before_change == "off":
            return False
        return op in ("update", "replace", "delete")

    def _snapshot(self, raw: Optional[str], key: str) -> Optional[dict]:
        if raw is None:
            return None
        doc = loads(raw, context=f"change log for {self.collection}/{key}", log=self.logger)
        return {"_id": key, **doc}

    def _to_event(self, row) -> dict:
        change_id, timestamp, op, key, full, before = row
        after_doc = self._snapshot(full, key)
        before_doc = self._snapshot(before, key)
        event: Dict[str, Any] = {
            "_id": str(change_id),
            "operationType": op,
            "clusterTime": parse_datetime(timestamp) if timestamp else None,
            "documentKey": {"_id": key},
            "ns": {"db": self.db_name, "coll": self.collection},
        }
        if self._wants_full_document(op):
            event["fullDocument"] = after_doc
        if self._wants_before(op):
            event["fullDocumentBeforeChange"] = before_doc
        if op == "update" and after_doc is not None and before_doc is not None:
            event["updateDescription"] = update_description(before_doc, after_doc)
        return event

    # ----- pull consumers -----
    def next(self, timeout: Optional[float] = None) -> Optional[dict]:
        """
        Block until an event is available and return it. Returns None when
        ``timeout`` elapses first; raises StopIteration once the stream is
        closed and nothing is left to read.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._buffer or self.closed, timeout)
            if self._buffer:
                return self._buffer.popleft()
            if self.closed:
                raise StopIteration
            return None

    def try_next(self) -> Optional[dict]:
        return self.next(timeout=0)

    def __iter__(self):
        return self

    def __next__(self) -> dict:
        return self.next()

    # ----- lifecycle -----
    def close(self) -> None:
        with self._close_lock:
            if self.closed:
                return
            self._stop.set()
            with self._cond:
                self.state = ChangeStreamState.CLOSED
                self._cond.notify_all()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=max(1.0, self.poll_interval * 10))
        self.logger.debug("Change stream on %s closed at change %d", self.collection, self._last_id)
        if self._on_close is not None:
            self._on_close(self)
        self._emit("close")

    def cleanup(self) -> None:
        """Close the stream and drop the collection's change triggers."""
        self.close()
        for kind in TRIGGER_KINDS:
            name = trigger_name(self.collection, kind)
            try:
                self.storage.execute(f'DROP TRIGGER IF EXISTS "{name}"')
            except Exception as e:
                self.logger.warning("Failed to drop trigger %s: %s", name, e)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
