"""Small expression language for computed and conditional field mappings.

Expressions are parsed into an immutable AST and evaluated by an interpreter
that only knows the operations listed here, so a mapping file can never reach
Python builtins, attributes of arbitrary objects, or I/O.

Supported syntax::

    literals      42  3.5  'text'  "text"  true  false  null  [a, b]
    names         value  incident  data  <any key of the evaluation context>
    access        incident.severity.name   incident.roles[0]   name.length
    arithmetic    + - * / %        (``+`` concatenates when either side is text)
    comparison    == != < <= > >= in  not in      (=== and !== are accepted)
    boolean       and or not                      (&& || ! are accepted)
    conditional   a if test else b
    calls         lower(x) upper(x) title(x) strip(x) len(x) str(x) int(x)
                  float(x) round(x[, n]) abs(x) min(...) max(...) concat(...)
                  coalesce(...) default(x, d) contains(h, n) startswith(s, p)
                  endswith(s, p) replace(s, old, new) substr(s, start[, end])
                  join(list[, sep])

Missing dictionary keys and member access on null evaluate to null instead of
raising, matching how webhook payloads omit optional fields.

Evaluation is bounded by a wall-clock budget, a node-visit budget and a
nesting depth limit; the parser enforces the same depth limit.
"""

from __future__ import annotations

import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

DEFAULT_TIMEOUT_SECONDS = 1.0
DEFAULT_MAX_STEPS = 10_000
MAX_NESTING_DEPTH = 64
MAX_EVALUATION_DEPTH = 200


class ExpressionError(Exception):
    """Expression could not be evaluated."""


class ExpressionSyntaxError(ExpressionError):
    """Expression could not be parsed."""


class ExpressionTimeout(ExpressionError):
    """Expression exceeded its evaluation budget."""


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class ListExpr:
    items: tuple


@dataclass(frozen=True, slots=True)
class Name:
    name: str


@dataclass(frozen=True, slots=True)
class Attribute:
    target: Any
    name: str


@dataclass(frozen=True, slots=True)
class Index:
    target: Any
    index: Any


@dataclass(frozen=True, slots=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True, slots=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True, slots=True)
class BoolOp:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True, slots=True)
class Compare:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True, slots=True)
class Conditional:
    test: Any
    body: Any
    orelse: Any


@dataclass(frozen=True, slots=True)
class Call:
    func: str
    args: tuple


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[-+*/%<>!().,\[\]])
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)

_OP_ALIASES = {"===": "==", "!==": "!=", "&&": "and", "||": "or", "!": "not"}
_KEYWORDS = {"and", "or", "not", "in", "if", "else"}
_CONSTANTS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": None,
}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str  # "number", "string", "op", "name", "const"
    value: Any
    pos: int


def _unescape(body: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise ExpressionSyntaxError(f"Unexpected character {source[pos]!r} at position {pos}")
        kind = match.lastgroup
        text = match.group()
        if kind == "number":
            try:
                number = float(text) if "." in text else int(text)
            except ValueError as exc:
                raise ExpressionSyntaxError(f"Invalid number at position {pos}: {exc}") from exc
            tokens.append(_Token("number", number, pos))
        elif kind == "string":
            tokens.append(_Token("string", _unescape(text[1:-1]), pos))
        elif kind == "op":
            tokens.append(_Token("op", _OP_ALIASES.get(text, text), pos))
        elif kind == "name":
            if text in _KEYWORDS:
                tokens.append(_Token("op", text, pos))
            elif text in _CONSTANTS:
                tokens.append(_Token("const", _CONSTANTS[text], pos))
            else:
                tokens.append(_Token("name", text, pos))
        pos = match.end()
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

_COMPARISON_OPS = {"==", "!=", "<", "<=", ">", ">=", "in"}


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0
        self.depth = 0

    def parse(self):
        if not self.tokens:
            raise ExpressionSyntaxError("Empty expression")
        node = self._ternary()
        token = self._peek()
        if token is not None:
            raise ExpressionSyntaxError(f"Unexpected {token.value!r} at position {token.pos}")
        return node

    def _peek(self, offset: int = 0) -> _Token | None:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def _accept(self, *ops: str) -> _Token | None:
        token = self._peek()
        if token is not None and token.kind == "op" and token.value in ops:
            self.pos += 1
            return token
        return None

    def _expect(self, op: str) -> _Token:
        token = self._accept(op)
        if token is None:
            found = self._peek()
            where = f"{found.value!r} at position {found.pos}" if found else "end of expression"
            raise ExpressionSyntaxError(f"Expected {op!r}, found {where}")
        return token

    @contextmanager
    def _nested(self):
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise ExpressionSyntaxError(f"Expression nests deeper than {MAX_NESTING_DEPTH} levels")
        try:
            yield
        finally:
            self.depth -= 1

    def _ternary(self):
        with self._nested():
            body = self._or()
            if self._accept("if"):
                test = self._or()
                self._expect("else")
                return Conditional(test, body, self._ternary())
            return body

    def _or(self):
        left = self._and()
        while self._accept("or"):
            left = BoolOp("or", left, self._and())
        return left

    def _and(self):
        left = self._not()
        while self._accept("and"):
            left = BoolOp("and", left, self._not())
        return left

    def _not(self):
        if self._accept("not"):
            with self._nested():
                return Unary("not", self._not())
        return self._comparison()

    def _comparison(self):
        left = self._additive()
        token = self._peek()
        if token is None or token.kind != "op":
            return left
        if token.value in _COMPARISON_OPS:
            self.pos += 1
            return Compare(token.value, left, self._additive())
        following = self._peek(1)
        if token.value == "not" and following is not None and following.value == "in":
            self.pos += 2
            return Compare("not in", left, self._additive())
        return left

    def _additive(self):
        left = self._term()
        while True:
            token = self._accept("+", "-")
            if token is None:
                return left
            left = Binary(token.value, left, self._term())

    def _term(self):
        left = self._unary()
        while True:
            token = self._accept("*", "/", "%")
            if token is None:
                return left
            left = Binary(token.value, left, self._unary())

    def _unary(self):
        token = self._accept("-", "+")
        if token is not None:
            with self._nested():
                return Unary(token.value, self._unary())
        return self._postfix()

    def _postfix(self):
        node = self._primary()
        while True:
            if self._accept("."):
                token = self._peek()
                if token is None or token.kind != "name":
                    raise ExpressionSyntaxError("Expected attribute name after '.'")
                self.pos += 1
                node = Attribute(node, token.value)
            elif self._accept("["):
                index = self._ternary()
                self._expect("]")
                node = Index(node, index)
            elif self._accept("("):
                if not isinstance(node, Name):
                    raise ExpressionSyntaxError("Only named functions can be called")
                if node.name not in _FUNCTIONS:
                    raise ExpressionSyntaxError(f"Unknown function '{node.name}'")
                node = Call(node.name, self._arguments(")"))
            else:
                return node

    def _arguments(self, closing: str) -> tuple:
        args = []
        if self._accept(closing):
            return ()
        while True:
            args.append(self._ternary())
            if self._accept(closing):
                return tuple(args)
            self._expect(",")

    def _primary(self):
        token = self._peek()
        if token is None:
            raise ExpressionSyntaxError("Unexpected end of expression")
        self.pos += 1
        if token.kind in ("number", "string", "const"):
            return Literal(token.value)
        if token.kind == "name":
            return Name(token.value)
        if token.value == "(":
            node = self._ternary()
            self._expect(")")
            return node
        if token.value == "[":
            return ListExpr(self._arguments("]"))
        raise ExpressionSyntaxError(f"Unexpected {token.value!r} at position {token.pos}")


@lru_cache(maxsize=512)
def parse_expression(source: str):
    """Parse an expression string into an AST node. Results are cached."""
    if not isinstance(source, str):
        raise ExpressionSyntaxError("Expression must be a string")
    return _Parser(source).parse()


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def title_case(value: str) -> str:
    """Capitalise the first letter of each word and lower-case the rest."""
    return re.sub(r"\w\S*", lambda m: m.group(0)[0].upper() + m.group(0)[1:].lower(), value)


def _substr(value: Any, start: int, end: int | None = None) -> str:
    return _text(value)[start:end]


def _join(items: Any, sep: str = ", ") -> str:
    if items is None:
        return ""
    return _text(sep).join(_text(item) for item in items)


def _contains(haystack: Any, needle: Any) -> bool:
    if haystack is None:
        return False
    return needle in haystack


_FUNCTIONS = {
    "lower": lambda v: _text(v).lower(),
    "upper": lambda v: _text(v).upper(),
    "title": lambda v: title_case(_text(v)),
    "strip": lambda v: _text(v).strip(),
    "len": lambda v: 0 if v is None else len(v),
    "str": _text,
    "int": int,
    "float": float,
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
    "concat": lambda *parts: "".join(_text(p) for p in parts),
    "coalesce": lambda *values: next((v for v in values if v not in (None, "")), None),
    "default": lambda value, fallback: fallback if value in (None, "") else value,
    "contains": _contains,
    "startswith": lambda s, prefix: _text(s).startswith(_text(prefix)),
    "endswith": lambda s, suffix: _text(s).endswith(_text(suffix)),
    "replace": lambda s, old, new: _text(s).replace(_text(old), _text(new)),
    "substr": _substr,
    "join": _join,
}


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float))


class _Evaluator:
    def __init__(self, context: dict[str, Any], timeout: float, max_steps: int):
        self.context = context
        self.deadline = time.monotonic() + timeout
        self.max_steps = max_steps
        self.steps = 0
        self.depth = 0
        self._handlers = {
            Literal: self._literal,
            ListExpr: self._list,
            Name: self._name,
            Attribute: self._attribute,
            Index: self._index,
            Unary: self._unary,
            Binary: self._binary,
            BoolOp: self._bool_op,
            Compare: self._compare,
            Conditional: self._conditional,
            Call: self._call,
        }

    def visit(self, node) -> Any:
        self.steps += 1
        if self.steps > self.max_steps:
            raise ExpressionTimeout(f"Expression exceeded {self.max_steps} evaluation steps")
        if time.monotonic() > self.deadline:
            raise ExpressionTimeout("Expression exceeded its time budget")
        if self.depth >= MAX_EVALUATION_DEPTH:
            raise ExpressionError(f"Expression nests deeper than {MAX_EVALUATION_DEPTH} levels")
        self.depth += 1
        try:
            return self._handlers[type(node)](node)
        finally:
            self.depth -= 1

    def _literal(self, node: Literal) -> Any:
        return node.value

    def _list(self, node: ListExpr) -> list:
        return [self.visit(item) for item in node.items]

    def _name(self, node: Name) -> Any:
        if node.name not in self.context:
            raise ExpressionError(f"Unknown name '{node.name}'")
        return self.context[node.name]

    def _attribute(self, node: Attribute) -> Any:
        target = self.visit(node.target)
        if target is None:
            return None
        if isinstance(target, dict):
            return target.get(node.name)
        if node.name == "length" and isinstance(target, (str, list)):
            return len(target)
        raise ExpressionError(f"Cannot read '{node.name}' of {type(target).__name__}")

    def _index(self, node: Index) -> Any:
        target = self.visit(node.target)
        index = self.visit(node.index)
        if target is None:
            return None
        if isinstance(target, dict):
            return target.get(index if isinstance(index, str) else str(index))
        if isinstance(target, (list, str)):
            if not isinstance(index, int) or isinstance(index, bool):
                raise ExpressionError("List index must be an integer")
            if -len(target) <= index < len(target):
                return target[index]
            return None
        raise ExpressionError(f"Cannot index {type(target).__name__}")

    def _unary(self, node: Unary) -> Any:
        operand = self.visit(node.operand)
        if node.op == "not":
            return not operand
        if not _is_number(operand):
            raise ExpressionError(f"Unary '{node.op}' needs a number")
        return -operand if node.op == "-" else operand

    def _binary(self, node: Binary) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        try:
            return self._arithmetic(node.op, left, right)
        except (OverflowError, ValueError) as exc:
            raise ExpressionError(f"Operator '{node.op}' failed: {exc}") from exc

    @staticmethod
    def _arithmetic(op: str, left: Any, right: Any) -> Any:
        if op == "+":
            if isinstance(left, str) or isinstance(right, str):
                return _text(left) + _text(right)
            if isinstance(left, list) and isinstance(right, list):
                return left + right
        if not (_is_number(left) and _is_number(right)):
            raise ExpressionError(
                f"Operator '{op}' needs numbers, got {type(left).__name__} and {type(right).__name__}"
            )
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if right == 0:
            raise ExpressionError("Division by zero")
        if op == "/":
            return left / right
        return left % right

    def _bool_op(self, node: BoolOp) -> Any:
        left = self.visit(node.left)
        if node.op == "and":
            return self.visit(node.right) if left else left
        return left if left else self.visit(node.right)

    def _compare(self, node: Compare) -> bool:
        left = self.visit(node.left)
        right = self.visit(node.right)
        try:
            if node.op == "==":
                return left == right
            if node.op == "!=":
                return left != right
            if node.op == "in":
                return _contains(right, left)
            if node.op == "not in":
                return not _contains(right, left)
            if left is None or right is None:
                return False
            if node.op == "<":
                return left < right
            if node.op == "<=":
                return left <= right
            if node.op == ">":
                return left > right
            return left >= right
        except TypeError as exc:
            raise ExpressionError(f"Cannot compare: {exc}") from exc

    def _conditional(self, node: Conditional) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def _call(self, node: Call) -> Any:
        args = [self.visit(arg) for arg in node.args]
        try:
            return _FUNCTIONS[node.func](*args)
        except (TypeError, ValueError, AttributeError, OverflowError) as exc:
            raise ExpressionError(f"{node.func}() failed: {exc}") from exc


def evaluate(
    expression,
    context: dict[str, Any],
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> Any:
    """Evaluate an expression (source string or parsed node) against ``context``.

    Raises:
        ExpressionSyntaxError: if a source string does not parse.
        ExpressionTimeout: if evaluation exceeds ``timeout`` or ``max_steps``.
        ExpressionError: for any other evaluation failure.
    """
    node = parse_expression(expression) if isinstance(expression, str) else expression
    return _Evaluator(context, timeout, max_steps).visit(node)
