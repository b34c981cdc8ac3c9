"""Condition expressions for rule triggers and skip guards.

Conditions are written in a small, closed grammar::

    item.column == 'New' || item.column == 'Parked'
    !item.pr.closed || item.pr.merged
    item.column === item.pr.column && item.assignees === item.pr.assignees
    item.sprint != null

Expressions are parsed once into a tree of nodes and evaluated against a
context mapping (usually :meth:`board_rules.models.Entity.to_context`).
Only field paths rooted at ``item``, literals, comparisons and boolean
connectives are accepted; nothing from configuration is ever executed.

Precedence follows JavaScript: ``!`` (or ``not``) binds tighter than the
equality operators, so ``!item.closed == false`` reads as
``(!item.closed) == false``. Equality never matches across types: ``true``
is not equal to ``1``, while ``1`` and ``1.0`` are the same number.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from board_rules.errors import ConditionSyntaxError
from board_rules.models import Entity


class _Undefined:
    """Value of a field path that does not resolve."""

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>===|!==|==|!=|&&|\|\||!|\(|\))
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    """,
    re.VERBOSE,
)

_LITERALS: dict[str, Any] = {"null": None, "undefined": UNDEFINED, "true": True, "false": False}
_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
_EQUALITY_OPS = {"==": True, "===": True, "!=": False, "!==": False}


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    position: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if match is None:
            raise ConditionSyntaxError(f"Unexpected character {text[position]!r}", text, position)
        kind = match.lastgroup or ""
        value = match.group()
        if kind == "name" and value in _KEYWORD_OPS:
            kind, value = "op", _KEYWORD_OPS[value]
        if kind != "ws":
            tokens.append(_Token(kind, value, position))
        position = match.end()
    return tokens


# Nodes


@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True)
class FieldPath:
    parts: tuple[str, ...]

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        value: Any = context
        for part in self.parts:
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            else:
                return UNDEFINED
        return value

    def __str__(self) -> str:
        return ".".join(self.parts)


@dataclass(frozen=True)
class Compare:
    left: Any
    right: Any
    equal: bool

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        left = self.left.evaluate(context)
        right = self.right.evaluate(context)
        if _is_null_literal(self.left) or _is_null_literal(self.right):
            same = _nullish(left) and _nullish(right)
            return same if self.equal else not same
        if left is UNDEFINED or right is UNDEFINED:
            # Missing fields only ever match an explicit null/undefined.
            return False
        same = _equal(_normalize(left), _normalize(right))
        return same if self.equal else not same


@dataclass(frozen=True)
class Not:
    operand: Any

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return not _truthy(self.operand.evaluate(context))


@dataclass(frozen=True)
class BoolOp:
    operator: str
    operands: tuple[Any, ...]

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        if self.operator == "&&":
            return all(_truthy(operand.evaluate(context)) for operand in self.operands)
        return any(_truthy(operand.evaluate(context)) for operand in self.operands)


def _truthy(value: Any) -> bool:
    return bool(value)


def _nullish(value: Any) -> bool:
    return value is None or value is UNDEFINED


def _is_null_literal(node: Any) -> bool:
    return isinstance(node, Literal) and _nullish(node.value)


def _equal(left: Any, right: Any) -> bool:
    # booleans never equal numbers
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def _normalize(value: Any) -> Any:
    if isinstance(value, (list, tuple, set, frozenset)):
        try:
            return frozenset(value)
        except TypeError:
            return tuple(value)
    return value


class _Parser:
    """Recursive descent parser over the token list."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def parse(self) -> Any:
        if not self.tokens:
            raise ConditionSyntaxError("Empty expression", self.text)
        node = self._or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ConditionSyntaxError(f"Unexpected token {token.value!r}", self.text, token.position)
        return node

    def _peek(self) -> _Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, *values: str) -> _Token | None:
        token = self._peek()
        if token is not None and token.kind == "op" and token.value in values:
            self.index += 1
            return token
        return None

    def _or(self) -> Any:
        operands = [self._and()]
        while self._accept("||"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp("||", tuple(operands))

    def _and(self) -> Any:
        operands = [self._comparison()]
        while self._accept("&&"):
            operands.append(self._comparison())
        return operands[0] if len(operands) == 1 else BoolOp("&&", tuple(operands))

    def _comparison(self) -> Any:
        left = self._not()
        token = self._accept(*_EQUALITY_OPS)
        if token is None:
            return left
        right = self._not()
        if self._peek() is not None and self._peek().value in _EQUALITY_OPS:
            raise ConditionSyntaxError("Chained comparison", self.text, self._peek().position)
        return Compare(left, right, _EQUALITY_OPS[token.value])

    def _not(self) -> Any:
        if self._accept("!"):
            return Not(self._not())
        return self._operand()

    def _operand(self) -> Any:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError("Unexpected end of expression", self.text, len(self.text))
        self.index += 1
        if token.kind == "op" and token.value == "(":
            node = self._or()
            if not self._accept(")"):
                raise ConditionSyntaxError("Missing closing parenthesis", self.text, token.position)
            return node
        if token.kind == "number":
            return Literal(float(token.value) if "." in token.value else int(token.value))
        if token.kind == "string":
            return Literal(_unquote(token.value))
        if token.kind == "name":
            if token.value in _LITERALS:
                return Literal(_LITERALS[token.value])
            parts = tuple(token.value.split("."))
            if parts[0] != "item":
                raise ConditionSyntaxError(f"Unknown identifier {token.value!r}", self.text, token.position)
            return FieldPath(parts)
        raise ConditionSyntaxError(f"Unexpected token {token.value!r}", self.text, token.position)


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


@dataclass(frozen=True)
class Expression:
    """A parsed condition expression."""

    source: str
    root: Any

    def evaluate(self, context: Mapping[str, Any] | Entity) -> bool:
        """Evaluate against an item context mapping or an entity."""
        if isinstance(context, Entity):
            context = context.to_context()
        return _truthy(self.root.evaluate({"item": context}))

    def __str__(self) -> str:
        return self.source


def compile_expression(text: str) -> Expression:
    """Parse an expression string.

    Args:
        text: Expression source

    Returns:
        Parsed expression

    Raises:
        ConditionSyntaxError: If the expression cannot be parsed
    """
    if not isinstance(text, str):
        raise ConditionSyntaxError(f"Expression must be a string, got {type(text).__name__}")
    return _compile_cached(text.strip())


@lru_cache(maxsize=512)
def _compile_cached(text: str) -> Expression:
    return Expression(source=text, root=_Parser(text).parse())


def evaluate(expression: str | Expression, context: Mapping[str, Any] | Entity) -> bool:
    """Evaluate an expression against an entity context.

    Raises:
        ConditionSyntaxError: If ``expression`` is a string that cannot be parsed
    """
    if isinstance(expression, str):
        expression = compile_expression(expression)
    return expression.evaluate(context)


__all__ = ["UNDEFINED", "Expression", "compile_expression", "evaluate"]
