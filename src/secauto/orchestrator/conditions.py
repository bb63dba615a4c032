"""
Condition Evaluation

Stateless predicates over an event or execution context. Two forms are
supported and share the same field-resolution rules:

- structured conditions ``(field, operator, value)`` joined left to right
  by ``and``/``or``, used by triggers, response gating and response
  conditions;
- textual expressions such as ``vulnerability.exploitable === true``,
  used by condition steps, loop break conditions, wait conditions and
  policy rules.

Nothing here performs I/O or mutates its inputs.
"""

import re
from functools import lru_cache
from typing import Any, Iterable, Optional, Sequence

from secauto.orchestrator.errors import ValidationError
from secauto.store.models import (
    ConditionOperator,
    LogicalOperator,
    ResponseCondition,
    TriggerCondition,
)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def resolve_field(context: Any, path: str) -> Any:
    """
    Resolve a dotted path such as ``session.user.id`` against a context.

    ``length`` on a string, list or dict without such a key yields its size.
    Returns ``MISSING`` when any segment is absent.
    """
    current = context
    for part in path.split("."):
        if isinstance(current, dict):
            if part in current:
                current = current[part]
                continue
            if part == "length":
                current = len(current)
                continue
            return MISSING
        if isinstance(current, (list, tuple)):
            if part == "length":
                current = len(current)
                continue
            if part.isdigit() and int(part) < len(current):
                current = current[int(part)]
                continue
            return MISSING
        if isinstance(current, str) and part == "length":
            current = len(current)
            continue
        return MISSING
    return current


def _compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    if operator == ConditionOperator.EXISTS:
        return actual is not MISSING and actual is not None
    if actual is MISSING:
        return False
    try:
        if operator == ConditionOperator.EQUALS:
            return actual == expected
        if operator == ConditionOperator.NOT_EQUALS:
            return actual != expected
        if operator == ConditionOperator.CONTAINS:
            if isinstance(actual, (list, tuple, set)):
                return expected in actual
            return str(expected) in str(actual)
        if operator == ConditionOperator.GREATER_THAN:
            return actual > expected
        if operator == ConditionOperator.LESS_THAN:
            return actual < expected
    except TypeError:
        return False
    return False


def evaluate(condition: TriggerCondition | ResponseCondition, context: dict[str, Any]) -> bool:
    """Evaluate one structured condition against a context."""
    actual = resolve_field(context, condition.field)
    return _compare(ConditionOperator(condition.operator), actual, condition.value)


def evaluate_all(conditions: Sequence[TriggerCondition], context: dict[str, Any]) -> bool:
    """
    Evaluate a condition list left to right.

    The ``logical_operator`` of entry *i* joins it to entry *i + 1*
    (``and`` when unset). An empty list holds.
    """
    if not conditions:
        return True

    result = evaluate(conditions[0], context)
    for previous, condition in zip(conditions, conditions[1:]):
        join = LogicalOperator(previous.logical_operator or LogicalOperator.AND)
        if join == LogicalOperator.AND:
            result = result and evaluate(condition, context)
        else:
            result = result or evaluate(condition, context)
    return result


def evaluate_response_conditions(
    conditions: Iterable[ResponseCondition],
    context: dict[str, Any],
) -> bool:
    """
    Every response condition must hold.

    A condition marked ``required=False`` only filters events that carry
    its field; events without the field pass it.
    """
    for condition in conditions:
        if not condition.required and resolve_field(context, condition.field) is MISSING:
            continue
        if not evaluate(condition, context):
            return False
    return True


# ============================================================================
# Textual expressions
# ============================================================================

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>===|!==|==|!=|>=|<=|>|<|&&|\|\||!|\(|\))
      | (?P<name>[A-Za-z_][\w\-]*(?:\.[A-Za-z0-9_][\w\-]*)*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and": "AND", "or": "OR", "not": "NOT", "contains": "contains"}
_LITERALS = {"true": True, "false": False, "null": None, "none": None, "undefined": None}
_COMPARATORS = {
    "==": ConditionOperator.EQUALS,
    "===": ConditionOperator.EQUALS,
    "!=": ConditionOperator.NOT_EQUALS,
    "!==": ConditionOperator.NOT_EQUALS,
    "contains": ConditionOperator.CONTAINS,
}


def _tokenize(expression: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    position = 0
    text = expression.rstrip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match or match.end() == position:
            raise ValidationError(f"Invalid expression near {text[position:]!r}")
        position = match.end()
        if match.group("number") is not None:
            raw = match.group("number")
            tokens.append(("lit", float(raw) if "." in raw else int(raw)))
        elif match.group("string") is not None:
            raw = match.group("string")[1:-1]
            tokens.append(("lit", re.sub(r"\\(.)", r"\1", raw)))
        elif match.group("op") is not None:
            op = match.group("op")
            tokens.append(("op", {"&&": "AND", "||": "OR", "!": "NOT"}.get(op, op)))
        else:
            name = match.group("name")
            lowered = name.lower()
            if lowered in _KEYWORDS:
                tokens.append(("op", _KEYWORDS[lowered]))
            elif lowered in _LITERALS:
                tokens.append(("lit", _LITERALS[lowered]))
            else:
                tokens.append(("path", name))
    return tokens


class _Parser:
    """Recursive-descent parser producing a tuple AST."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def parse(self) -> tuple:
        if not self.tokens:
            raise ValidationError("Empty expression")
        node = self._or()
        if self.index != len(self.tokens):
            raise ValidationError(f"Unexpected token in expression {self.expression!r}")
        return node

    def _peek(self) -> Optional[tuple[str, Any]]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, value: str) -> bool:
        token = self._peek()
        if token and token[0] == "op" and token[1] == value:
            self.index += 1
            return True
        return False

    def _or(self) -> tuple:
        node = self._and()
        while self._accept("OR"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._not()
        while self._accept("AND"):
            node = ("and", node, self._not())
        return node

    def _not(self) -> tuple:
        if self._accept("NOT"):
            return ("not", self._not())
        return self._comparison()

    def _comparison(self) -> tuple:
        left = self._operand()
        token = self._peek()
        if token and token[0] == "op" and token[1] in ("==", "===", "!=", "!==", ">", ">=", "<", "<=", "contains"):
            self.index += 1
            right = self._operand()
            return ("cmp", token[1], left, right)
        return ("truthy", left)

    def _operand(self) -> tuple:
        token = self._peek()
        if token is None:
            raise ValidationError(f"Incomplete expression {self.expression!r}")
        if token == ("op", "("):
            self.index += 1
            node = self._or()
            if not self._accept(")"):
                raise ValidationError(f"Unbalanced parentheses in {self.expression!r}")
            return ("group", node)
        if token[0] in ("lit", "path"):
            self.index += 1
            return token
        raise ValidationError(f"Unexpected {token[1]!r} in expression {self.expression!r}")


class Expression:
    """A compiled, reusable textual expression."""

    def __init__(self, source: str):
        self.source = source
        self._ast = _Parser(source).parse()

    def evaluate(self, context: dict[str, Any]) -> bool:
        return bool(self._eval(self._ast, context))

    def _value(self, node: tuple, context: dict[str, Any]) -> Any:
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "path":
            return resolve_field(context, node[1])
        return self._eval(node, context)

    def _eval(self, node: tuple, context: dict[str, Any]) -> Any:
        kind = node[0]
        if kind == "or":
            return self._eval(node[1], context) or self._eval(node[2], context)
        if kind == "and":
            return self._eval(node[1], context) and self._eval(node[2], context)
        if kind == "not":
            return not self._eval(node[1], context)
        if kind == "group":
            return self._eval(node[1], context)
        if kind == "truthy":
            value = self._value(node[1], context)
            return value is not MISSING and bool(value)
        if kind == "cmp":
            _, op, left_node, right_node = node
            left = self._value(left_node, context)
            right = self._value(right_node, context)
            if left is MISSING or right is MISSING:
                return False
            if op in _COMPARATORS:
                return _compare(_COMPARATORS[op], left, right)
            try:
                if op == ">":
                    return left > right
                if op == ">=":
                    return left >= right
                if op == "<":
                    return left < right
                if op == "<=":
                    return left <= right
            except TypeError:
                return False
        return bool(self._value(node, context)) if kind in ("lit", "path") else False


@lru_cache(maxsize=512)
def compile_expression(source: str) -> Expression:
    """Parse an expression once; raises ValidationError when malformed."""
    return Expression(source)


def evaluate_expression(source: str, context: dict[str, Any]) -> bool:
    """Evaluate a textual expression against a context."""
    return compile_expression(source).evaluate(context)
