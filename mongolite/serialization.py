"""
Document serialization boundary.

Everything written to a collection goes through ``dumps`` (which rejects
values SQLite's JSON functions cannot represent faithfully) and everything
read back goes through ``loads`` (which never raises on a damaged row).
"""

import binascii
import json
import logging
import math
import os
import re
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from .errors import InvalidDocumentError

logger = logging.getLogger(__name__)

CORRUPTED_FLAG = "__mongolite_corrupted__"
CORRUPTED_RAW = "__mongolite_raw__"
CORRUPTED_ERROR = "__mongolite_error__"

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1
_PATTERN_TYPE = type(re.compile(""))
_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


# =========================
# Dates
# =========================
def format_datetime(value: datetime) -> str:
    """Canonical storage form: UTC, millisecond precision, ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_datetime(text: str) -> Optional[datetime]:
    if not _ISO_RE.match(text):
        return None
    try:
        parsed = datetime.strptime(text, "%Y-%m-%dT%H:%M:%S.%fZ")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def restore_dates(value: Any) -> Any:
    if isinstance(value, str):
        parsed = parse_datetime(value)
        return value if parsed is None else parsed
    if isinstance(value, list):
        return [restore_dates(v) for v in value]
    if isinstance(value, dict):
        return {k: restore_dates(v) for k, v in value.items()}
    return value


def to_sql_value(value: Any) -> Any:
    """Bind form of a scalar: booleans as 0/1, datetimes as canonical text."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, (dict, list, tuple)):
        return dumps_value(value)
    return value


# =========================
# Encoding
# =========================
def _where(path: str) -> str:
    return f" at '{path}'" if path else ""


def _encode(value: Any, path: str, active: set) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        if not _INT64_MIN <= value <= _INT64_MAX:
            raise InvalidDocumentError(
                f"Integer {value} does not fit in 64 bits{_where(path)}; unsupported numeric precision."
            )
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise InvalidDocumentError(f"NaN and Infinity are not valid JSON numbers{_where(path)}.")
        return value
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, Decimal):
        raise InvalidDocumentError(f"Decimal values are not supported{_where(path)}; unsupported numeric precision.")
    if isinstance(value, _PATTERN_TYPE):
        raise InvalidDocumentError(f"Regular expression objects cannot be stored{_where(path)}.")
    if isinstance(value, (dict, list, tuple)):
        if id(value) in active:
            raise InvalidDocumentError(f"Circular reference detected{_where(path)}.")
        active.add(id(value))
        try:
            if isinstance(value, dict):
                out = {}
                for key, item in value.items():
                    if not isinstance(key, str):
                        raise InvalidDocumentError(f"Document keys must be strings, got {key!r}{_where(path)}.")
                    out[key] = _encode(item, f"{path}.{key}" if path else key, active)
                return out
            return [_encode(item, f"{path}[{i}]", active) for i, item in enumerate(value)]
        finally:
            active.discard(id(value))
    if callable(value):
        raise InvalidDocumentError(f"Functions cannot be stored in documents{_where(path)}.")
    raise InvalidDocumentError(f"Unsupported value of type {type(value).__name__}{_where(path)}.")


def encode(value: Any) -> Any:
    """Validate a value and convert it to plain JSON types."""
    return _encode(value, "", set())


def dumps_value(value: Any) -> str:
    return json.dumps(encode(value), ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def dumps(doc: dict) -> str:
    if not isinstance(doc, dict):
        raise InvalidDocumentError(f"Document must be a dict, got {type(doc).__name__}.")
    return dumps_value(doc)


# =========================
# Decoding
# =========================
def _corrupted(raw: str, error: str) -> dict:
    return {CORRUPTED_FLAG: True, CORRUPTED_RAW: raw, CORRUPTED_ERROR: error}


def loads(raw: Any, context: str = "", log: Optional[logging.Logger] = None) -> dict:
    """Decode stored document text, recovering what it can instead of raising."""
    log = log or logger
    where = f" in {context}" if context else ""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str) or not raw.strip():
        log.warning("Empty or non-text document data%s; using empty document", where)
        return {}
    try:
        value = json.loads(raw)
    except ValueError as exc:
        log.error("JSON parse error%s: %s; raw data: %.500s", where, exc, raw)
        repaired = raw.replace('\\"', '"').replace("\\\\", "\\")
        try:
            value = json.loads(repaired)
        except ValueError as repair_exc:
            log.error("JSON recovery failed%s: %s", where, repair_exc)
            return _corrupted(raw, str(exc))
        log.warning("Recovered malformed JSON%s", where)
    if not isinstance(value, dict):
        log.error("Stored document%s is a %s, not an object", where, type(value).__name__)
        return _corrupted(raw, f"expected a JSON object, got {type(value).__name__}")
    return restore_dates(value)


def is_corrupted(doc: dict) -> bool:
    return bool(doc.get(CORRUPTED_FLAG))


# =========================
# Identifiers
# =========================
def generate_object_id() -> str:
    """Generate a 24-char hex string similar to Mongo ObjectId."""
    ts = int(time.time())
    rand = binascii.b2a_hex(os.urandom(8)).decode("ascii")
    return f"{ts:08x}{rand}"[:24]


def validate_key(key: Any) -> str:
    if not isinstance(key, str) or not key:
        raise InvalidDocumentError(f"_id must be a non-empty string, got {key!r}")
    return key
