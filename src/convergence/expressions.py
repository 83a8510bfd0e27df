"""Template expression parsing.

Template strings wrapped in square brackets are expressions:

    "[concat('st', uniqueString(resourceGroup().id))]"
    "[reference(resourceId('Microsoft.Insights/components', variables('ai'))).InstrumentationKey]"

A leading "[[" escapes the bracket and yields a literal string. This module
only parses; evaluation lives in evaluator.py.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Union

# Functions whose first argument names another resource
REFERENCE_FUNCTIONS = frozenset({"reference", "resourceid"})

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<string>'(?:[^']|'')*')
    |(?P<number>-?\d+(?:\.\d+)?)
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<punct>[(),.\[\]])
    """,
    re.VERBOSE,
)


class ExpressionSyntaxError(ValueError):
    """Raised when an expression string cannot be parsed."""

    def __init__(self, message: str, text: str, position: int) -> None:
        self.text = text
        self.position = position
        super().__init__(f"{message} at position {position} in {text!r}")


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class FunctionCall:
    name: str  # lower-cased
    args: tuple[Expression, ...]


@dataclass(frozen=True)
class MemberAccess:
    target: Expression
    member: str


@dataclass(frozen=True)
class IndexAccess:
    target: Expression
    index: Expression


Expression = Union[Literal, FunctionCall, MemberAccess, IndexAccess]


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    position: int


def _tokenize(text: str, offset: int) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_PATTERN.match(text, pos)
        if match is None:
            raise ExpressionSyntaxError(
                f"Unexpected character {text[pos]!r}", text, pos + offset
            )
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), pos + offset))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, source: str, tokens: list[_Token]) -> None:
        self._source = source
        self._tokens = tokens
        self._index = 0

    def _peek(self) -> _Token | None:
        if self._index < len(self._tokens):
            return self._tokens[self._index]
        return None

    def _next(self) -> _Token:
        token = self._peek()
        if token is None:
            raise ExpressionSyntaxError(
                "Unexpected end of expression", self._source, len(self._source)
            )
        self._index += 1
        return token

    def _expect(self, text: str) -> _Token:
        token = self._next()
        if token.text != text:
            raise ExpressionSyntaxError(
                f"Expected {text!r} but found {token.text!r}", self._source, token.position
            )
        return token

    def parse(self) -> Expression:
        expr = self._expression()
        trailing = self._peek()
        if trailing is not None:
            raise ExpressionSyntaxError(
                f"Unexpected token {trailing.text!r}", self._source, trailing.position
            )
        return expr

    def _expression(self) -> Expression:
        expr = self._primary()
        while True:
            token = self._peek()
            if token is None or token.text not in (".", "["):
                return expr
            self._next()
            if token.text == ".":
                member = self._next()
                if member.kind != "ident":
                    raise ExpressionSyntaxError(
                        "Expected property name after '.'", self._source, member.position
                    )
                expr = MemberAccess(expr, member.text)
            else:
                index = self._expression()
                self._expect("]")
                expr = IndexAccess(expr, index)

    def _primary(self) -> Expression:
        token = self._next()
        if token.kind == "string":
            return Literal(token.text[1:-1].replace("''", "'"))
        if token.kind == "number":
            if "." in token.text:
                return Literal(float(token.text))
            return Literal(int(token.text))
        if token.kind == "ident":
            following = self._peek()
            if following is not None and following.text == "(":
                return self._call(token.text.lower())
            lowered = token.text.lower()
            if lowered == "true":
                return Literal(True)
            if lowered == "false":
                return Literal(False)
            if lowered == "null":
                return Literal(None)
            raise ExpressionSyntaxError(
                f"Unknown identifier {token.text!r}", self._source, token.position
            )
        raise ExpressionSyntaxError(
            f"Unexpected token {token.text!r}", self._source, token.position
        )

    def _call(self, name: str) -> FunctionCall:
        self._expect("(")
        args: list[Expression] = []
        token = self._peek()
        if token is not None and token.text == ")":
            self._next()
            return FunctionCall(name, ())
        while True:
            args.append(self._expression())
            token = self._next()
            if token.text == ")":
                return FunctionCall(name, tuple(args))
            if token.text != ",":
                raise ExpressionSyntaxError(
                    f"Expected ',' or ')' but found {token.text!r}", self._source, token.position
                )


def is_expression(value: Any) -> bool:
    """Check whether a template value is a bracketed expression."""
    return (
        isinstance(value, str)
        and len(value) >= 2
        and value.startswith("[")
        and value.endswith("]")
        and not value.startswith("[[")
    )


def parse_expression(text: str) -> Expression:
    """Parse a bracketed expression string into an AST.

    Raises:
        ExpressionSyntaxError: If the string is not a well-formed expression.
    """
    if not is_expression(text):
        raise ExpressionSyntaxError("Expression must be wrapped in '[...]'", text, 0)
    body = text[1:-1]
    if not body.strip():
        raise ExpressionSyntaxError("Empty expression", text, 1)
    return _Parser(text, _tokenize(body, offset=1)).parse()


def compile_value(value: Any) -> Any:
    """Replace every expression string inside a template value with its AST.

    Escaped strings ("[[...") lose their leading bracket. Mappings and lists
    are copied; other values are returned unchanged.
    """
    if isinstance(value, str):
        if is_expression(value):
            return parse_expression(value)
        if value.startswith("[["):
            return value[1:]
        return value
    if isinstance(value, dict):
        return {key: compile_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [compile_value(item) for item in value]
    return value


def compile_tree(value: Any, path: str = "") -> tuple[Any, list[tuple[str, ExpressionSyntaxError]]]:
    """Compile a nested template value, collecting syntax errors by path.

    Returns:
        Tuple of (compiled value, [(path, error), ...]). Values that fail to
        parse are left as their raw string.
    """
    errors: list[tuple[str, ExpressionSyntaxError]] = []

    def walk(item: Any, item_path: str) -> Any:
        if isinstance(item, dict):
            return {
                key: walk(child, f"{item_path}.{key}" if item_path else key)
                for key, child in item.items()
            }
        if isinstance(item, list):
            return [walk(child, f"{item_path}[{i}]") for i, child in enumerate(item)]
        try:
            return compile_value(item)
        except ExpressionSyntaxError as e:
            errors.append((item_path, e))
            return item

    return walk(value, path), errors


def iter_expressions(value: Any, path: str = "") -> Iterator[tuple[str, Expression]]:
    """Yield (path, expression) for every compiled expression in a value."""
    if isinstance(value, Literal | FunctionCall | MemberAccess | IndexAccess):
        yield path, value
    elif isinstance(value, dict):
        for key, child in value.items():
            yield from iter_expressions(child, f"{path}.{key}" if path else key)
    elif isinstance(value, list):
        for i, child in enumerate(value):
            yield from iter_expressions(child, f"{path}[{i}]")


def iter_calls(expr: Expression) -> Iterator[FunctionCall]:
    """Yield every function call in an expression tree, outermost first."""
    if isinstance(expr, FunctionCall):
        yield expr
        for arg in expr.args:
            yield from iter_calls(arg)
    elif isinstance(expr, MemberAccess):
        yield from iter_calls(expr.target)
    elif isinstance(expr, IndexAccess):
        yield from iter_calls(expr.target)
        yield from iter_calls(expr.index)


def is_reference_call(call: FunctionCall) -> bool:
    """Check whether a call names another resource as its first argument."""
    return call.name in REFERENCE_FUNCTIONS and len(call.args) >= 1
