"""
In-memory evaluation of parsed filters.

Mirrors the SQL produced by ``FilterCompiler`` value for value, so that a
document matches here exactly when the compiled WHERE clause selects its
row. Used for change-stream filters and ``$pull`` conditions.
"""

import logging
from typing import Any, Optional

from .paths import MISSING, get_path
from .query import (
    KEY_FIELD, RANGE_OPERATORS, ArrayMatch, Combinator, Comparison, Constant, ElemMatch, Logical,
    Node, Operator, TextSearch, ascii_lower, kind_of, parse_filter, regex_search,
)
from .serialization import dumps_value, to_sql_value


def _scalar(value: Any) -> Any:
    return to_sql_value(value)


def values_equal(stored: Any, operand: Any) -> bool:
    """Type-bracketed equality of a stored value and a query operand."""
    if stored is MISSING:
        return False
    kind = kind_of(stored)
    if kind is None or kind != kind_of(operand):
        return False
    if kind in ("object", "array"):
        return dumps_value(stored) == dumps_value(operand)
    return _scalar(stored) == _scalar(operand)


def _equals(value: Any, operand: Any) -> bool:
    if operand is None:
        return value is MISSING or value is None
    if values_equal(value, operand):
        return True
    return isinstance(value, list) and any(values_equal(e, operand) for e in value)


def _compare(value: Any, op: Operator, operand: Any) -> bool:
    kind = kind_of(operand)
    if value is MISSING or kind_of(value) != kind:
        return False
    a, b = _scalar(value), _scalar(operand)
    symbol = RANGE_OPERATORS[op]
    if symbol == ">":
        return a > b
    if symbol == ">=":
        return a >= b
    if symbol == "<":
        return a < b
    return a <= b


class _Evaluator:
    def __init__(self, root: dict):
        self.root = root

    def resolve(self, subject: Any, path: Optional[str], in_element: bool) -> Any:
        if path is None:
            return subject
        if in_element and not isinstance(subject, dict):
            return MISSING
        return get_path(subject, path)

    def eval(self, node: Node, subject: Any, in_element: bool) -> bool:
        if isinstance(node, Constant):
            return node.value
        if isinstance(node, Logical):
            results = (self.eval(child, subject, in_element) for child in node.children)
            if node.op is Combinator.AND:
                return all(results)
            if node.op is Combinator.OR:
                return any(results)
            if node.op is Combinator.NOR:
                return not any(results)
            return not next(results)
        if isinstance(node, TextSearch):
            text = dumps_value({k: v for k, v in self.root.items() if k != KEY_FIELD})
            return ascii_lower(node.term) in ascii_lower(text)
        if isinstance(node, Comparison):
            return self.comparison(node, self.resolve(subject, node.path, in_element))
        if isinstance(node, ArrayMatch):
            value = self.resolve(subject, node.path, in_element)
            if not isinstance(value, list) or not node.values:
                return False
            return all(any(_element_equals(e, item) for e in value) for item in node.values)
        if isinstance(node, ElemMatch):
            value = self.resolve(subject, node.path, in_element)
            if not isinstance(value, list):
                return False
            return any(self.eval(node.predicate, element, True) for element in value)
        raise TypeError(f"Unknown filter node: {node!r}")

    def comparison(self, node: Comparison, value: Any) -> bool:
        op = node.op
        if op is Operator.EQ:
            return _equals(value, node.operand)
        if op is Operator.NE:
            return not _equals(value, node.operand)
        if op is Operator.IN:
            return any(_equals(value, v) for v in node.operand)
        if op is Operator.NIN:
            return not any(_equals(value, v) for v in node.operand)
        if op in RANGE_OPERATORS:
            return _compare(value, op, node.operand)
        if op is Operator.EXISTS:
            # a stored null counts as absent
            return (value is not MISSING and value is not None) == node.operand
        if op is Operator.SIZE:
            return isinstance(value, list) and len(value) == node.operand
        if op is Operator.REGEX:
            if kind_of(value) != "text":
                return False
            return regex_search(node.operand, node.options, _scalar(value))
        raise TypeError(f"Unknown comparison operator: {op!r}")


def _element_equals(element: Any, operand: Any) -> bool:
    if operand is None:
        return element is None
    return values_equal(element, operand)


def evaluate(node: Node, doc: dict) -> bool:
    return _Evaluator(doc).eval(node, doc, False)


def evaluate_element(node: Node, element: Any, root: Optional[dict] = None) -> bool:
    """Evaluate a predicate relative to one array element (``$elemMatch`` scope)."""
    return _Evaluator(root or {}).eval(node, element, True)


def matches(spec: Any, doc: dict, logger: Optional[logging.Logger] = None) -> bool:
    return evaluate(parse_filter(spec, logger), doc)
