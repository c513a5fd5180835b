"""
Condition expressions used to gate optional steps.

The grammar is deliberately small::

    expr       := or_expr
    or_expr    := and_expr ("||" and_expr)*
    and_expr   := not_expr ("&&" not_expr)*
    not_expr   := "!" not_expr | comparison
    comparison := operand (("=="|"==="|"!="|"!=="|">"|"<"|">="|"<=") operand)?
    operand    := "(" expr ")" | literal | path

Evaluation never raises. Anything that does not parse falls back to the
truthiness of a variable with the same name, or ``False``.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

_MISSING = object()

_STRING = r"'(?:[^'\\]|\\.)*'" + r'|"(?:[^"\\]|\\.)*"'
_STRING_RE = re.compile(_STRING)
_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)", re.DOTALL)
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>""" + _STRING + r""")
      | (?P<number>-?\d+(?:\.\d+)?(?![\w$]))
      | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[<>!()])
      | (?P<name>[A-Za-z_$][\w$-]*(?:\.[\w$-]+)*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None, "undefined": None, "None": None}

# Code-execution primitives rejected at validation time. Checked outside
# string literals only, so ``state == "import"`` stays valid.
DENYLIST_PATTERNS = [
    re.compile(r"\beval\b"),
    re.compile(r"\bFunction\b"),
    re.compile(r"\bsetTimeout\b"),
    re.compile(r"\bsetInterval\b"),
    re.compile(r"\brequire\b"),
    re.compile(r"\bimport\b"),
    re.compile(r"\bprocess\b"),
    re.compile(r"\b__dirname\b"),
    re.compile(r"\b__filename\b"),
    re.compile(r"__\w+__"),
]


class ExpressionSyntaxError(ValueError):
    """Raised internally when an expression does not fit the grammar."""


@dataclass(frozen=True)
class Token:
    kind: str
    value: str


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ExpressionSyntaxError(f"Unexpected character at {pos}: {text[pos:pos + 10]!r}")
        kind = match.lastgroup
        tokens.append(Token(kind, match.group(kind)))
        pos = match.end()
    return tokens


def lookup(path: str, scope: Mapping[str, Any]) -> Any:
    """Resolve a dotted path against ``scope``.

    A flat key containing dots (``"step.output"``) wins over nested lookup.
    Returns ``None`` when any segment is missing.
    """
    if path in scope:
        return scope[path]

    current: Any = scope
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _unquote(literal: str) -> str:
    """Strip the quotes from a string token and apply backslash escapes."""

    def replace(match: re.Match) -> str:
        escape = match.group(1)
        if len(escape) == 5:
            return chr(int(escape[1:], 16))
        return _ESCAPES.get(escape, escape)

    return _ESCAPE_RE.sub(replace, literal[1:-1])


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return math.nan
    return math.nan


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _loose_equals(left: Any, right: Any) -> bool:
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, str) or isinstance(right, numeric) and isinstance(left, str):
        return _to_number(left) == _to_number(right)
    return _strict_equals(left, right)


_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "===": _strict_equals,
    "!==": lambda a, b: not _strict_equals(a, b),
    "==": _loose_equals,
    "!=": lambda a, b: not _loose_equals(a, b),
    ">": lambda a, b: _to_number(a) > _to_number(b),
    "<": lambda a, b: _to_number(a) < _to_number(b),
    ">=": lambda a, b: _to_number(a) >= _to_number(b),
    "<=": lambda a, b: _to_number(a) <= _to_number(b),
}


class _Parser:
    """Recursive-descent evaluator over a token list."""

    def __init__(self, tokens: List[Token], scope: Mapping[str, Any]):
        self.tokens = tokens
        self.scope = scope
        self.pos = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def accept(self, *ops: str) -> Optional[str]:
        token = self.peek()
        if token is not None and token.kind == "op" and token.value in ops:
            self.pos += 1
            return token.value
        return None

    def parse(self) -> Any:
        value = self.or_expr()
        if self.peek() is not None:
            raise ExpressionSyntaxError(f"Unexpected token {self.peek().value!r}")
        return value

    def or_expr(self) -> Any:
        value = self.and_expr()
        while self.accept("||"):
            right = self.and_expr()
            value = bool(value) or bool(right)
        return value

    def and_expr(self) -> Any:
        value = self.not_expr()
        while self.accept("&&"):
            right = self.not_expr()
            value = bool(value) and bool(right)
        return value

    def not_expr(self) -> Any:
        if self.accept("!"):
            return not bool(self.not_expr())
        return self.comparison()

    def comparison(self) -> Any:
        left = self.operand()
        op = self.accept(*_COMPARATORS)
        if op is None:
            return left
        right = self.operand()
        return _COMPARATORS[op](left, right)

    def operand(self) -> Any:
        token = self.peek()
        if token is None:
            raise ExpressionSyntaxError("Unexpected end of expression")

        if self.accept("("):
            value = self.or_expr()
            if not self.accept(")"):
                raise ExpressionSyntaxError("Missing closing parenthesis")
            return value

        self.pos += 1
        if token.kind == "string":
            return _unquote(token.value)
        if token.kind == "number":
            number = float(token.value)
            return int(number) if number.is_integer() and "." not in token.value else number
        if token.kind == "name":
            if token.value in _KEYWORDS:
                return _KEYWORDS[token.value]
            return lookup(token.value, self.scope)
        raise ExpressionSyntaxError(f"Unexpected operator {token.value!r}")


def evaluate_expression(expression: Optional[str], scope: Optional[Mapping[str, Any]] = None) -> bool:
    """Evaluate a condition against a variable scope.

    Args:
        expression: Condition text; empty or None is always true
        scope: Variables visible to the condition

    Returns:
        Boolean outcome. Never raises.
    """
    scope = scope or {}
    if expression is None or not expression.strip():
        return True

    clean = expression.strip()
    try:
        return bool(_Parser(tokenize(clean), scope).parse())
    except ExpressionSyntaxError as e:
        logger.debug(f"Expression {clean!r} did not parse ({e}); falling back to variable lookup")
    except Exception as e:
        logger.warning(f"Expression evaluation failed: {clean!r}: {e}")
        return False

    value = scope.get(clean, _MISSING)
    return False if value is _MISSING else bool(value)


def validate_expression(expression: str) -> bool:
    """Check a condition before it is stored or executed.

    Rejects unbalanced parentheses and code-execution primitives.
    """
    if not isinstance(expression, str) or not expression.strip():
        return False

    code = _STRING_RE.sub('""', expression)

    depth = 0
    for char in code:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return False
    if depth != 0:
        return False

    return not any(pattern.search(code) for pattern in DENYLIST_PATTERNS)


def create_condition(pattern: str, *args: Any) -> str:
    """Build a condition string for a common pattern.

    Args:
        pattern: One of equals, not_equals, greater_than, less_than, exists,
            not_exists
        *args: Variable path followed by the comparison value where needed

    Raises:
        ValueError: If the pattern is unknown
    """
    if pattern == "equals":
        return f"{args[0]} === {json.dumps(args[1])}"
    if pattern == "not_equals":
        return f"{args[0]} !== {json.dumps(args[1])}"
    if pattern == "greater_than":
        return f"{args[0]} > {args[1]}"
    if pattern == "less_than":
        return f"{args[0]} < {args[1]}"
    if pattern == "exists":
        return f"{args[0]} !== null"
    if pattern == "not_exists":
        return f"{args[0]} === null"
    raise ValueError(f"Unknown condition pattern: {pattern}")
