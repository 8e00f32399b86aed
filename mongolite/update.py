import copy
import logging
import math
from typing import Any, Dict, Optional, Tuple

from .errors import InvalidPathError, InvalidUpdateError
from .matching import evaluate_element, values_equal
from .paths import MAX_ARRAY_INDEX, MISSING, get_path, parse_path, paths_overlap, set_path, unset_path
from .query import KEY_FIELD, FilterParser
from .serialization import generate_object_id

logger = logging.getLogger(__name__)

# Application order; paths may not overlap across or within operators,
# so the order is never observable.
UPDATE_OPERATORS = ("$set", "$unset", "$inc", "$push", "$pull")


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (isinstance(value, float) and (math.isnan(value) or math.isinf(value)))


def validate_update(update: Any) -> Dict[str, Dict[str, Any]]:
    """Check an update spec and return it keyed in application order."""
    if not isinstance(update, dict):
        raise InvalidUpdateError("Update must be a dict of operators.")
    if not update:
        raise InvalidUpdateError("Update must contain at least one operator.")
    seen = []
    for op, changes in update.items():
        if op not in UPDATE_OPERATORS:
            if isinstance(op, str) and not op.startswith("$"):
                raise InvalidUpdateError(f"Update field {op!r} is not an operator; use replace_one for whole documents.")
            raise InvalidUpdateError(f"Unsupported update operator: {op}")
        if not isinstance(changes, dict):
            raise InvalidUpdateError(f"{op} requires an object of field paths.")
        for path, value in changes.items():
            try:
                steps = parse_path(path)
            except InvalidPathError as e:
                raise InvalidUpdateError(f"{op}: {e}") from e
            if op != "$unset" and any(isinstance(s, int) and s > MAX_ARRAY_INDEX for s in steps):
                raise InvalidUpdateError(f"{op}: array index in '{path}' exceeds {MAX_ARRAY_INDEX}.")
            if steps[0] == KEY_FIELD and (len(steps) > 1 or op != "$set"):
                raise InvalidUpdateError(f"{op} cannot modify the immutable field '_id'.")
            for other_op, other in seen:
                if paths_overlap(path, other):
                    raise InvalidUpdateError(
                        f"Updating the path '{path}' would create a conflict at '{other}' ({other_op})."
                    )
            seen.append((op, path))
            if op == "$inc" and not _is_number(value):
                raise InvalidUpdateError(f"$inc requires a numeric delta for '{path}', got {value!r}")
            if op == "$push" and isinstance(value, dict) and "$each" in value:
                if set(value) != {"$each"} or not isinstance(value["$each"], list):
                    raise InvalidUpdateError(f"$push.$each for '{path}' must be the only key and hold a list.")
    return {op: update[op] for op in UPDATE_OPERATORS if op in update}


class _Pull:
    """Element predicate for $pull: an operator/sub-filter condition or plain equality."""

    def __init__(self, condition: Any, parser: FilterParser):
        self.condition = condition
        self.node = parser.parse_element(condition) if isinstance(condition, dict) and condition else None

    def __call__(self, element: Any) -> bool:
        if self.node is not None:
            return evaluate_element(self.node, element)
        if self.condition is None:
            return element is None
        return values_equal(element, self.condition)


def apply_update(doc: dict, update: Any, log: Optional[logging.Logger] = None) -> bool:
    """
    Apply an update spec to ``doc`` in place. Returns True when the
    document changed and needs to be written back.
    """
    log = log or logger
    spec = validate_update(update)
    changed = False

    for path, value in spec.get("$set", {}).items():
        if path == KEY_FIELD:
            if value != doc.get(KEY_FIELD):
                raise InvalidUpdateError("Performing an update on the path '_id' would modify the immutable field '_id'.")
        else:
            set_path(doc, path, copy.deepcopy(value))
        changed = True

    for path in spec.get("$unset", {}):
        changed = unset_path(doc, path) or changed

    for path, delta in spec.get("$inc", {}).items():
        current = get_path(doc, path)
        if current is MISSING:
            set_path(doc, path, delta)
        elif _is_number(current):
            set_path(doc, path, current + delta)
        else:
            log.debug("$inc skipped for non-numeric field %r", path)
            continue
        changed = True

    for path, value in spec.get("$push", {}).items():
        items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
        current = get_path(doc, path)
        if current is MISSING:
            set_path(doc, path, copy.deepcopy(items))
            changed = True
        elif isinstance(current, list):
            current.extend(copy.deepcopy(items))
            changed = changed or bool(items)
        else:
            log.debug("$push skipped for non-array field %r", path)

    parser = FilterParser(log)
    for path, condition in spec.get("$pull", {}).items():
        current = get_path(doc, path)
        if not isinstance(current, list):
            continue
        predicate = _Pull(condition, parser)
        kept = [e for e in current if not predicate(e)]
        if len(kept) < len(current):
            current[:] = kept
            changed = True

    return changed


def upsert_document(query: Any, update: Any) -> Tuple[Any, dict]:
    """
    Seed document for an upsert that matched nothing: the ``$set``
    payload plus a key from the filter's ``_id`` equality, else from
    ``$set._id``, else a generated one.
    """
    spec = validate_update(update)
    payload = spec.get("$set", {})
    key = MISSING
    if isinstance(query, dict) and KEY_FIELD in query:
        cond = query[KEY_FIELD]
        if isinstance(cond, dict) and set(cond) == {"$eq"}:
            key = cond["$eq"]
        elif not isinstance(cond, dict):
            key = cond
    if KEY_FIELD in payload:
        if key is not MISSING and payload[KEY_FIELD] != key:
            raise InvalidUpdateError("$set._id conflicts with the _id in the upsert filter.")
        key = payload[KEY_FIELD]
    if key is MISSING:
        key = generate_object_id()
    doc = {}
    for path, value in payload.items():
        if path != KEY_FIELD:
            set_path(doc, path, copy.deepcopy(value))
    return key, doc
