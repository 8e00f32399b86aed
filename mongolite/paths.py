"""
Field path handling.

A path is a dotted string (``a.b.c``) where any segment may carry numeric
bracket suffixes addressing array elements (``tags[0]``, ``a.b[2].c``).
The same parsed steps drive both the SQLite JSON path used inside
``json_extract`` and the in-memory walkers used by updates and projections.
"""

import re
from functools import lru_cache
from typing import Any, List, Sequence, Tuple, Union

from .errors import InvalidPathError

Step = Union[str, int]


class _Missing:
    __slots__ = ()

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


# Returned by get_path for absent fields; distinct from a stored null.
MISSING = _Missing()

_SEGMENT_RE = re.compile(r"^([^\[\]]+)((?:\[\d+\])*)$")
_INDEX_RE = re.compile(r"\[(\d+)\]")
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_JSON_STEP_RE = re.compile(r'\.([A-Za-z_][A-Za-z0-9_]*)|\."([^"]*)"|\[(\d+)\]')
_FORBIDDEN_CHARS = ("'", '"', "\\")


@lru_cache(maxsize=2048)
def _parse(path: str) -> Tuple[Step, ...]:
    if not path:
        raise InvalidPathError("Field path must be a non-empty string.")
    for ch in _FORBIDDEN_CHARS:
        if ch in path:
            raise InvalidPathError(f"Field path may not contain {ch!r}: {path!r}")
    steps: List[Step] = []
    for segment in path.split("."):
        m = _SEGMENT_RE.match(segment)
        if not m:
            raise InvalidPathError(f"Invalid segment {segment!r} in field path {path!r}")
        steps.append(m.group(1))
        steps.extend(int(i) for i in _INDEX_RE.findall(m.group(2)))
    return tuple(steps)


def parse_path(path: Union[str, Sequence[Step]]) -> List[Step]:
    """Split a path into object-key (str) and array-index (int) steps."""
    if isinstance(path, (list, tuple)):
        return list(path)
    if not isinstance(path, str):
        raise InvalidPathError(f"Field path must be a string, got {type(path).__name__}")
    return list(_parse(path))


def format_path(steps: Sequence[Step]) -> str:
    out = ""
    for step in steps:
        if isinstance(step, int):
            out += f"[{step}]"
        else:
            out += f".{step}" if out else step
    return out


def json_path(path: Union[str, Sequence[Step]]) -> str:
    """Render a path as a SQLite JSON path, e.g. ``$.a.b[2]``."""
    out = "$"
    for step in parse_path(path):
        if isinstance(step, int):
            out += f"[{step}]"
        elif _IDENT_RE.match(step):
            out += f".{step}"
        else:
            out += f'."{step}"'
    return out


def sql_json_path(path: Union[str, Sequence[Step]]) -> str:
    return f"'{json_path(path)}'"


def path_from_json_path(expr: str) -> str:
    """Inverse of json_path: ``$.address."zip code"`` -> ``address.zip code``."""
    expr = expr.strip()
    if not expr.startswith("$"):
        raise InvalidPathError(f"Not a JSON path: {expr!r}")
    steps: List[Step] = []
    pos = 1
    while pos < len(expr):
        m = _JSON_STEP_RE.match(expr, pos)
        if not m:
            raise InvalidPathError(f"Cannot parse JSON path {expr!r} at offset {pos}")
        if m.group(1) is not None:
            steps.append(m.group(1))
        elif m.group(2) is not None:
            steps.append(m.group(2))
        else:
            steps.append(int(m.group(3)))
        pos = m.end()
    if not steps:
        raise InvalidPathError(f"JSON path addresses the whole document: {expr!r}")
    return format_path(steps)


def paths_overlap(a: str, b: str) -> bool:
    sa, sb = parse_path(a), parse_path(b)
    n = min(len(sa), len(sb))
    return sa[:n] == sb[:n]


# =========================
# In-memory navigation
# =========================
def get_path(doc: Any, path: Union[str, Sequence[Step]], default: Any = MISSING) -> Any:
    cur = doc
    for step in parse_path(path):
        if isinstance(step, int):
            if isinstance(cur, list) and step < len(cur):
                cur = cur[step]
            else:
                return default
        elif isinstance(cur, dict) and step in cur:
            cur = cur[step]
        else:
            return default
    return cur


# Largest array index set_path will pad up to.
MAX_ARRAY_INDEX = 10000


def _put(container, step: Step, value: Any) -> None:
    if isinstance(step, int):
        if step > MAX_ARRAY_INDEX and len(container) <= step:
            raise InvalidPathError(f"Array index {step} is beyond the padding limit of {MAX_ARRAY_INDEX}.")
        if len(container) <= step:
            container.extend([None] * (step + 1 - len(container)))
    container[step] = value


def set_path(doc: dict, path: Union[str, Sequence[Step]], value: Any) -> None:
    steps = parse_path(path)
    cur = doc
    for step, nxt in zip(steps, steps[1:]):
        want = list if isinstance(nxt, int) else dict
        if isinstance(step, int):
            child = cur[step] if step < len(cur) else MISSING
        else:
            child = cur.get(step, MISSING)
        if not isinstance(child, want):
            child = want()
            _put(cur, step, child)
        cur = child
    _put(cur, steps[-1], value)


def unset_path(doc: dict, path: Union[str, Sequence[Step]]) -> bool:
    steps = parse_path(path)
    parent = get_path(doc, steps[:-1]) if len(steps) > 1 else doc
    leaf = steps[-1]
    if isinstance(leaf, int):
        if isinstance(parent, list) and leaf < len(parent):
            del parent[leaf]
            return True
        return False
    if isinstance(parent, dict) and leaf in parent:
        del parent[leaf]
        return True
    return False
