"""
Filter parsing and SQL compilation.

A pymongo-style filter dict is first parsed into a small tree of node
dataclasses; ``FilterCompiler`` turns that tree into a parameterized WHERE
fragment over the collection's ``data`` JSON column, and
``mongolite.matching`` evaluates the very same tree against Python dicts.

Comparisons are type-bracketed: a numeric operand only ever matches JSON
numbers, a string only JSON text, and so on. Anything the compiler cannot
express safely degrades to a constant false clause with a warning.
"""

import logging
import math
import re
import string
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any, List, Optional, Tuple, Union

from .errors import InvalidDocumentError, InvalidPathError, InvalidQueryError
from .paths import parse_path, sql_json_path
from .serialization import dumps_value, to_sql_value

logger = logging.getLogger(__name__)

REGEXP_FUNCTION = "mongolite_regexp"
KEY_FIELD = "_id"

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1
_PATTERN_TYPE = type(re.compile(""))
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


# =========================
# Node tree
# =========================
class Combinator(Enum):
    AND = "AND"
    OR = "OR"
    NOR = "NOR"
    NOT = "NOT"


class Operator(Enum):
    EQ = "$eq"
    NE = "$ne"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    IN = "$in"
    NIN = "$nin"
    EXISTS = "$exists"
    SIZE = "$size"
    REGEX = "$regex"


RANGE_OPERATORS = {Operator.GT: ">", Operator.GTE: ">=", Operator.LT: "<", Operator.LTE: "<="}


@dataclass(frozen=True)
class Constant:
    value: bool


@dataclass(frozen=True)
class Logical:
    op: Combinator
    children: Tuple[Any, ...]


@dataclass(frozen=True)
class Comparison:
    # path None addresses the array element itself inside $elemMatch
    path: Optional[str]
    op: Operator
    operand: Any
    options: str = ""


@dataclass(frozen=True)
class ArrayMatch:
    """``$all``: every value occurs somewhere in the array."""
    path: Optional[str]
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class ElemMatch:
    """At least one array element satisfies ``predicate`` (evaluated relative to the element)."""
    path: Optional[str]
    predicate: Any


@dataclass(frozen=True)
class TextSearch:
    term: str


Node = Union[Constant, Logical, Comparison, ArrayMatch, ElemMatch, TextSearch]

TRUE = Constant(True)
FALSE = Constant(False)


# =========================
# Value kinds
# =========================
def kind_of(value: Any) -> Optional[str]:
    """JSON kind used for type bracketing; None for values that cannot be compared."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "number" if _INT64_MIN <= value <= _INT64_MAX else None
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else "number"
    if isinstance(value, (str, datetime)):
        return "text"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return None


def regex_flags(options: str) -> int:
    flags = 0
    for ch in options or "":
        if ch not in _REGEX_FLAGS:
            raise InvalidQueryError(f"Unsupported $regex option: {ch!r}")
        flags |= _REGEX_FLAGS[ch]
    return flags


@lru_cache(maxsize=256)
def _compiled_regex(pattern: str, options: str):
    return re.compile(pattern, regex_flags(options))


def regex_search(pattern: str, options: str, value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return _compiled_regex(pattern, options or "").search(value) is not None


_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def ascii_lower(text: str) -> str:
    """Fold A-Z only, like SQLite's built-in lower()."""
    return text.translate(_ASCII_LOWER)


def sql_regexp(pattern, options, value) -> int:
    """SQL function registered on every connection as ``mongolite_regexp(pattern, options, value)``."""
    if pattern is None:
        return 0
    return 1 if regex_search(pattern, options or "", value) else 0


# =========================
# Parsing
# =========================
class FilterParser:
    """Builds the node tree. Malformed structure raises, unsupported content fails closed."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def fail_closed(self, reason: str) -> Constant:
        self.logger.warning("Unsupported filter clause, matching nothing: %s", reason)
        return FALSE

    def parse(self, spec: Any) -> Node:
        if spec is None:
            return TRUE
        if not isinstance(spec, dict):
            raise InvalidQueryError("Query must be a dict.")
        return self._document(spec, in_element=False)

    def parse_element(self, spec: dict) -> Node:
        """
        Predicate over a single array element. Operator-only specs
        (``{"$gte": 80}``) test the element itself, anything else is a
        sub-filter over the keys of object elements.
        """
        if spec and all(isinstance(k, str) and k.startswith("$") for k in spec) \
                and not any(k in ("$and", "$or", "$nor") for k in spec):
            return self._operators(None, spec)
        return self._document(spec, in_element=True)

    def _document(self, spec: dict, in_element: bool) -> Node:
        clauses = []
        for key, cond in spec.items():
            if not isinstance(key, str):
                raise InvalidQueryError(f"Query keys must be strings, got {key!r}")
            if key.startswith("$"):
                clauses.append(self._special(key, cond, in_element))
            else:
                clauses.append(self._field(key, cond))
        return _all_of(clauses)

    def _subfilters(self, op: str, cond: Any, in_element: bool) -> List[Node]:
        if not isinstance(cond, (list, tuple)) or not cond:
            raise InvalidQueryError(f"{op} requires a non-empty list of clauses.")
        out = []
        for clause in cond:
            if not isinstance(clause, dict):
                raise InvalidQueryError(f"{op} clauses must be dicts, got {type(clause).__name__}")
            out.append(self._document(clause, in_element))
        return out

    def _special(self, key: str, cond: Any, in_element: bool) -> Node:
        if key == "$and":
            return _all_of(self._subfilters(key, cond, in_element))
        if key == "$or":
            return Logical(Combinator.OR, tuple(self._subfilters(key, cond, in_element)))
        if key == "$nor":
            return Logical(Combinator.NOR, tuple(self._subfilters(key, cond, in_element)))
        if key == "$not":
            if not isinstance(cond, dict):
                raise InvalidQueryError("$not requires a single clause object.")
            return Logical(Combinator.NOT, (self._document(cond, in_element),))
        if key == "$text":
            if not isinstance(cond, dict):
                raise InvalidQueryError("$text requires an object with $search.")
            term = cond.get("$search")
            if not isinstance(term, str):
                return self.fail_closed("$text.$search must be a string")
            if in_element:
                return self.fail_closed("$text is only supported at the top level")
            if not term.strip():
                return FALSE
            return TextSearch(term)
        if key in ("$exists", "$all", "$elemMatch"):
            if not isinstance(cond, dict):
                raise InvalidQueryError(f"Top-level {key} requires an object of field paths.")
            return _all_of([self._field(path, {key: arg}) for path, arg in cond.items()])
        return self.fail_closed(f"unknown top-level operator {key}")

    def _field(self, path: str, cond: Any) -> Node:
        try:
            parse_path(path)
        except InvalidPathError as e:
            return self.fail_closed(str(e))
        if isinstance(cond, dict) and any(isinstance(k, str) and k.startswith("$") for k in cond):
            return self._operators(path, cond)
        if isinstance(cond, _PATTERN_TYPE):
            return self._regex(path, cond, None)
        return self._comparison(path, Operator.EQ, cond)

    def _operators(self, path: Optional[str], ops: dict) -> Node:
        clauses = []
        for op, arg in ops.items():
            if op == "$options":
                if "$regex" not in ops:
                    clauses.append(self.fail_closed("$options without $regex"))
                continue
            clauses.append(self._operator(path, op, arg, ops))
        return _all_of(clauses)

    def _operator(self, path: Optional[str], op: Any, arg: Any, ops: dict) -> Node:
        if op == "$not":
            if isinstance(arg, _PATTERN_TYPE):
                inner = self._regex(path, arg, None)
            elif isinstance(arg, dict):
                inner = self._operators(path, arg)
            else:
                raise InvalidQueryError("$not requires an operator object or a regular expression.")
            return Logical(Combinator.NOT, (inner,))
        if op == "$all":
            if not isinstance(arg, (list, tuple)):
                return self.fail_closed("$all requires a list")
            if not arg:
                return FALSE
            for item in arg:
                if not self._usable(item):
                    return self.fail_closed(f"unusable $all value {item!r}")
            return ArrayMatch(path, tuple(arg))
        if op == "$elemMatch":
            if not isinstance(arg, dict):
                return self.fail_closed("$elemMatch requires an object")
            return ElemMatch(path, self.parse_element(arg))
        if op == "$regex":
            return self._regex(path, arg, ops.get("$options"))
        try:
            operator = Operator(op)
        except ValueError:
            return self.fail_closed(f"unknown operator {op!r}")
        return self._comparison(path, operator, arg)

    def _regex(self, path, pattern, options) -> Node:
        if isinstance(pattern, _PATTERN_TYPE):
            if options is None:
                options = "".join(ch for ch, flag in _REGEX_FLAGS.items() if pattern.flags & flag)
            pattern = pattern.pattern
        if not isinstance(pattern, str) or not isinstance(options or "", str):
            return self.fail_closed("$regex requires a string pattern")
        options = options or ""
        try:
            _compiled_regex(pattern, options)
        except (re.error, InvalidQueryError) as e:
            return self.fail_closed(f"invalid regular expression {pattern!r}: {e}")
        return Comparison(path, Operator.REGEX, pattern, options)

    def _usable(self, value: Any) -> bool:
        kind = kind_of(value)
        if kind is None:
            return False
        if kind in ("object", "array"):
            try:
                dumps_value(value)
            except InvalidDocumentError:
                return False
        return True

    def _comparison(self, path: Optional[str], op: Operator, arg: Any) -> Node:
        if op in (Operator.IN, Operator.NIN):
            if not isinstance(arg, (list, tuple)):
                return self.fail_closed(f"{op.value} requires a list")
            for item in arg:
                if not self._usable(item):
                    return self.fail_closed(f"unusable {op.value} value {item!r}")
            return Comparison(path, op, tuple(arg))
        if op is Operator.EXISTS:
            return Comparison(path, op, bool(arg))
        if op is Operator.SIZE:
            if isinstance(arg, bool) or not isinstance(arg, int) or arg < 0:
                return self.fail_closed("$size requires a non-negative integer")
            return Comparison(path, op, arg)
        if not self._usable(arg):
            return self.fail_closed(f"unusable {op.value} operand {arg!r}")
        if op in RANGE_OPERATORS and kind_of(arg) not in ("bool", "number", "text"):
            return self.fail_closed(f"{op.value} requires a number, string, boolean or date")
        return Comparison(path, op, arg)


def _all_of(clauses: List[Node]) -> Node:
    clauses = [c for c in clauses if c != TRUE]
    if not clauses:
        return TRUE
    if len(clauses) == 1:
        return clauses[0]
    return Logical(Combinator.AND, tuple(clauses))


def parse_filter(spec: Any, logger: Optional[logging.Logger] = None) -> Node:
    return FilterParser(logger).parse(spec)


# =========================
# Compilation
# =========================
@dataclass
class _Target:
    """SQL expressions addressing one path within the current scope."""
    value: str
    type: str
    source: str
    length: str
    is_key: bool = False


@dataclass
class _Context:
    params: List[Any] = field(default_factory=list)
    aliases: int = 0

    def alias(self) -> str:
        self.aliases += 1
        return f"e{self.aliases}"


_TYPE_GUARDS = {
    "bool": "{t} IN ('true', 'false')",
    "number": "{t} IN ('integer', 'real')",
    "text": "{t} = 'text'",
    "object": "{t} = 'object'",
    "array": "{t} = 'array'",
}


class FilterCompiler:
    """
    Compiles a node tree to ``(sql, params)``.

    Fields resolve through ``json_extract`` on the document column; the
    ``_id`` key resolves to the native key column. Inside ``$elemMatch``
    paths resolve against the ``json_each`` row of the current element.
    """

    def __init__(self, column: str = "data", key_column: str = KEY_FIELD,
                 regexp_function: str = REGEXP_FUNCTION, logger: Optional[logging.Logger] = None):
        self.column = column
        self.key_column = key_column
        self.regexp_function = regexp_function
        self.logger = logger or logging.getLogger(__name__)
        self.parser = FilterParser(self.logger)
        self._handlers = {
            Constant: self._constant,
            Logical: self._logical,
            Comparison: self._comparison,
            ArrayMatch: self._array_match,
            ElemMatch: self._elem_match,
            TextSearch: self._text,
        }

    def compile(self, spec: Any) -> Tuple[str, List[Any]]:
        return self.compile_node(self.parser.parse(spec))

    def compile_node(self, node: Node) -> Tuple[str, List[Any]]:
        ctx = _Context()
        sql = self._compile(node, None, ctx)
        self.logger.debug("Compiled filter: %s | params=%r", sql, ctx.params)
        return sql, ctx.params

    def _compile(self, node: Node, scope: Optional[str], ctx: _Context) -> str:
        handler = self._handlers.get(type(node))
        if handler is None:
            raise TypeError(f"Unknown filter node: {node!r}")
        return handler(node, scope, ctx)

    # ----- targets -----
    def _target(self, scope: Optional[str], path: Optional[str]) -> _Target:
        if scope is None:
            if path == KEY_FIELD:
                return _Target(self.key_column, "'text'", "", "", is_key=True)
            jp = sql_json_path(path)
            col = self.column
            return _Target(f"json_extract({col}, {jp})", f"json_type({col}, {jp})",
                           f"json_each({col}, {jp})", f"json_array_length({col}, {jp})")
        if path is None:
            arr = f"CASE WHEN {scope}.type = 'array' THEN {scope}.value END"
            return _Target(f"{scope}.value", f"{scope}.type", f"json_each({arr})", f"json_array_length({arr})")
        base = f"CASE WHEN {scope}.type = 'object' THEN {scope}.value END"
        jp = sql_json_path(path)
        return _Target(f"json_extract({base}, {jp})", f"json_type({base}, {jp})",
                       f"json_each({base}, {jp})", f"json_array_length({base}, {jp})")

    @staticmethod
    def _guard(type_expr: str, value: Any) -> str:
        return _TYPE_GUARDS[kind_of(value)].format(t=type_expr)

    def _element_equals(self, alias: str, value: Any, ctx: _Context) -> str:
        if value is None:
            return f"{alias}.type = 'null'"
        ctx.params.append(to_sql_value(value))
        return f"{self._guard(f'{alias}.type', value)} AND {alias}.value = ?"

    def _equals(self, target: _Target, value: Any, ctx: _Context) -> str:
        if target.is_key:
            if kind_of(value) != "text":
                return "1=0"
            ctx.params.append(to_sql_value(value))
            return f"{target.value} = ?"
        if value is None:
            return f"{target.value} IS NULL"
        ctx.params.append(to_sql_value(value))
        direct = f"{self._guard(target.type, value)} AND {target.value} = ?"
        alias = ctx.alias()
        element = self._element_equals(alias, value, ctx)
        return (f"(({direct}) OR ({target.type} = 'array' AND EXISTS "
                f"(SELECT 1 FROM {target.source} AS {alias} WHERE {element})))")

    def _in(self, target: _Target, values: Tuple[Any, ...], ctx: _Context) -> str:
        if target.is_key:
            keys = [to_sql_value(v) for v in values if kind_of(v) == "text"]
            if not keys:
                return "1=0"
            ctx.params.extend(keys)
            return f"{target.value} IN ({', '.join('?' for _ in keys)})"
        if not values:
            return "1=0"
        return "(" + " OR ".join(self._equals(target, v, ctx) for v in values) + ")"

    # ----- handlers -----
    def _constant(self, node: Constant, scope, ctx) -> str:
        return "1=1" if node.value else "1=0"

    def _logical(self, node: Logical, scope, ctx) -> str:
        parts = [self._compile(child, scope, ctx) for child in node.children]
        if node.op is Combinator.AND:
            return "(" + " AND ".join(parts) + ")"
        if node.op is Combinator.OR:
            return "(" + " OR ".join(parts) + ")"
        if node.op is Combinator.NOR:
            return "NOT COALESCE((" + " OR ".join(parts) + "), 0)"
        return f"NOT COALESCE({parts[0]}, 0)"

    def _text(self, node: TextSearch, scope, ctx) -> str:
        ctx.params.append(node.term)
        return f"instr(lower({self.column}), lower(?)) > 0"

    def _comparison(self, node: Comparison, scope, ctx) -> str:
        target = self._target(scope, node.path)
        op = node.op
        if op is Operator.EQ:
            return self._equals(target, node.operand, ctx)
        if op is Operator.NE:
            return f"NOT COALESCE({self._equals(target, node.operand, ctx)}, 0)"
        if op is Operator.IN:
            return self._in(target, node.operand, ctx)
        if op is Operator.NIN:
            if not node.operand:
                return "1=1"
            return f"NOT COALESCE({self._in(target, node.operand, ctx)}, 0)"
        if op in RANGE_OPERATORS:
            symbol = RANGE_OPERATORS[op]
            if target.is_key:
                if kind_of(node.operand) != "text":
                    return "1=0"
                ctx.params.append(to_sql_value(node.operand))
                return f"{target.value} {symbol} ?"
            ctx.params.append(to_sql_value(node.operand))
            return f"({self._guard(target.type, node.operand)} AND {target.value} {symbol} ?)"
        if op is Operator.EXISTS:
            if target.is_key:
                return "1=1" if node.operand else "1=0"
            return f"{target.value} IS {'NOT ' if node.operand else ''}NULL"
        if op is Operator.SIZE:
            if target.is_key:
                return "1=0"
            ctx.params.append(node.operand)
            return f"({target.type} = 'array' AND {target.length} = ?)"
        if op is Operator.REGEX:
            ctx.params.extend([node.operand, node.options])
            call = f"{self.regexp_function}(?, ?, {target.value})"
            if target.is_key:
                return call
            return f"({target.type} = 'text' AND {call})"
        raise TypeError(f"Unknown comparison operator: {op!r}")

    def _array_match(self, node: ArrayMatch, scope, ctx) -> str:
        target = self._target(scope, node.path)
        if target.is_key or not node.values:
            return "1=0"
        parts = [f"{target.type} = 'array'"]
        for value in node.values:
            alias = ctx.alias()
            element = self._element_equals(alias, value, ctx)
            parts.append(f"EXISTS (SELECT 1 FROM {target.source} AS {alias} WHERE {element})")
        return "(" + " AND ".join(parts) + ")"

    def _elem_match(self, node: ElemMatch, scope, ctx) -> str:
        target = self._target(scope, node.path)
        if target.is_key:
            return "1=0"
        alias = ctx.alias()
        predicate = self._compile(node.predicate, alias, ctx)
        return (f"({target.type} = 'array' AND EXISTS "
                f"(SELECT 1 FROM {target.source} AS {alias} WHERE {predicate}))")


_default_compiler = FilterCompiler()


def compile_filter(spec: Any, logger: Optional[logging.Logger] = None) -> Tuple[str, List[Any]]:
    """Compile a filter dict to a WHERE fragment and its positional params."""
    compiler = _default_compiler if logger is None else FilterCompiler(logger=logger)
    return compiler.compile(spec)
