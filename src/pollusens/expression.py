"""
Arithmetic formula evaluation over a frame's byte window.

Formulas use C-like syntax, e.g. ``data[1] * 256 + data[2]`` or
``(data[1] ^ data[2] ^ data[3]) == data[4]``. The window is the only name in
scope (available as ``data`` or ``window``). Formulas are parsed into a tree
of closures; nothing is handed to ``eval``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, List, Sequence, Union

Number = Union[int, float]
Node = Callable[[Sequence[int]], Any]

WINDOW_NAMES = frozenset({"data", "window"})
MAX_SHIFT = 64
MAX_EXPONENT = 64


class FormulaError(ValueError):
    """Raised when a formula cannot be parsed or evaluated."""


_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<number>0[xX][0-9a-fA-F]+|0[bB][01]+|(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
    |(?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
    |(?P<op>>>>|===|!==|\*\*|<<|>>|<=|>=|==|!=|&&|\|\||[-+*/%&|^~!<>?:()\[\].])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise FormulaError(f"Unexpected character {source[pos]!r} at {pos} in {source!r}")
        kind = match.lastgroup or ""
        if kind != "space":
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(_Token("end", "", len(source)))
    return tokens


def _parse_number(text: str) -> Number:
    lowered = text.lower()
    if lowered.startswith("0x"):
        return int(lowered, 16)
    if lowered.startswith("0b"):
        return int(lowered[2:], 2)
    if "." in lowered or "e" in lowered:
        return float(lowered)
    return int(lowered)


def _to_int(value: Any) -> int:
    if isinstance(value, float):
        if not math.isfinite(value):
            raise FormulaError(f"Bitwise operand {value} is not finite")
        return int(value)
    if isinstance(value, int):
        return int(value)
    raise FormulaError(f"Bitwise operand {value!r} is not a number")


def _divide(left: Any, right: Any) -> Number:
    if right == 0:
        raise FormulaError("Division by zero")
    return left / right


def _remainder(left: Any, right: Any) -> Number:
    if right == 0:
        raise FormulaError("Modulo by zero")
    if isinstance(left, float) or isinstance(right, float):
        return math.fmod(left, right)
    result = abs(left) % abs(right)
    return -result if left < 0 else result


def _shift_count(value: Any) -> int:
    count = _to_int(value)
    if count < 0 or count > MAX_SHIFT:
        raise FormulaError(f"Shift count {count} outside 0..{MAX_SHIFT}")
    return count


def _shift_left(left: Any, right: Any) -> int:
    return _to_int(left) << _shift_count(right)


def _shift_right(left: Any, right: Any) -> int:
    return _to_int(left) >> _shift_count(right)


def _power(base: Any, exponent: Any) -> Number:
    if isinstance(exponent, int) and abs(exponent) > MAX_EXPONENT:
        raise FormulaError(f"Exponent {exponent} outside -{MAX_EXPONENT}..{MAX_EXPONENT}")
    if base == 0 and exponent < 0:
        raise FormulaError("Zero raised to a negative power")
    return base ** exponent


def _shift_right_unsigned(left: Any, right: Any) -> int:
    return (_to_int(left) & 0xFFFFFFFF) >> (_to_int(right) & 0x1F)


_BINARY_OPS = {
    "*": (11, lambda a, b: a * b),
    "/": (11, _divide),
    "%": (11, _remainder),
    "+": (10, lambda a, b: a + b),
    "-": (10, lambda a, b: a - b),
    "<<": (9, _shift_left),
    ">>": (9, _shift_right),
    ">>>": (9, _shift_right_unsigned),
    "<": (8, lambda a, b: a < b),
    "<=": (8, lambda a, b: a <= b),
    ">": (8, lambda a, b: a > b),
    ">=": (8, lambda a, b: a >= b),
    "==": (7, lambda a, b: a == b),
    "===": (7, lambda a, b: a == b),
    "!=": (7, lambda a, b: a != b),
    "!==": (7, lambda a, b: a != b),
    "&": (6, lambda a, b: _to_int(a) & _to_int(b)),
    "^": (5, lambda a, b: _to_int(a) ^ _to_int(b)),
    "|": (4, lambda a, b: _to_int(a) | _to_int(b)),
}

_POWER_BP = 12
_UNARY_BP = 11
_POSTFIX_BP = 14
_AND_BP = 3
_OR_BP = 2
_TERNARY_BP = 1


class _Parser:
    """Pratt parser turning a token list into nested closures."""

    def __init__(self, source: str):
        self.source = source
        self._tokens = _tokenize(source)
        self._pos = 0

    def parse(self) -> Node:
        node = self._expression(0)
        token = self._peek()
        if token.kind != "end":
            raise self._error(f"unexpected {token.text!r}", token)
        return node

    def _peek(self) -> _Token:
        return self._tokens[self._pos]

    def _advance(self) -> _Token:
        token = self._tokens[self._pos]
        if token.kind != "end":
            self._pos += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._advance()
        if token.text != text:
            found = token.text or "end of formula"
            raise self._error(f"expected {text!r}, found {found!r}", token)

    def _error(self, message: str, token: _Token) -> FormulaError:
        return FormulaError(f"Syntax error in {self.source!r} at {token.pos}: {message}")

    def _binding_power(self, token: _Token) -> int:
        if token.kind != "op":
            return 0
        text = token.text
        if text in ("[", "."):
            return _POSTFIX_BP
        if text == "**":
            return _POWER_BP
        if text in _BINARY_OPS:
            return _BINARY_OPS[text][0]
        if text == "&&":
            return _AND_BP
        if text == "||":
            return _OR_BP
        if text == "?":
            return _TERNARY_BP
        return 0

    def _expression(self, rbp: int) -> Node:
        left = self._prefix(self._advance())
        while True:
            token = self._peek()
            if self._binding_power(token) <= rbp:
                return left
            self._advance()
            left = self._infix(token, left)

    def _prefix(self, token: _Token) -> Node:
        if token.kind == "number":
            value = _parse_number(token.text)
            return lambda window: value
        if token.kind == "name":
            if token.text not in WINDOW_NAMES:
                raise self._error(f"unknown name {token.text!r}", token)
            return lambda window: window
        if token.text == "(":
            inner = self._expression(0)
            self._expect(")")
            return inner
        if token.text in ("-", "+", "~", "!"):
            operand = self._expression(_UNARY_BP)
            if token.text == "-":
                return lambda window: -_number(operand(window))
            if token.text == "+":
                return lambda window: +_number(operand(window))
            if token.text == "~":
                return lambda window: ~_to_int(operand(window))
            return lambda window: not operand(window)
        found = token.text or "end of formula"
        raise self._error(f"unexpected {found!r}", token)

    def _infix(self, token: _Token, left: Node) -> Node:
        text = token.text
        if text == "[":
            index = self._expression(0)
            self._expect("]")
            return lambda window: _subscript(left(window), index(window))
        if text == ".":
            name = self._advance()
            if name.text != "length":
                raise self._error(f"unsupported attribute {name.text!r}", name)
            return lambda window: len(_sequence(left(window)))
        if text == "**":
            right = self._expression(_POWER_BP - 1)
            return lambda window: _power(_number(left(window)), _number(right(window)))
        if text == "&&":
            right = self._expression(_AND_BP)
            return lambda window: left(window) and right(window)
        if text == "||":
            right = self._expression(_OR_BP)
            return lambda window: left(window) or right(window)
        if text == "?":
            then = self._expression(0)
            self._expect(":")
            otherwise = self._expression(_TERNARY_BP - 1)
            return lambda window: then(window) if left(window) else otherwise(window)
        bp, func = _BINARY_OPS[text]
        right = self._expression(bp)
        return lambda window: func(_number(left(window)), _number(right(window)))


def _number(value: Any) -> Any:
    if isinstance(value, (int, float)):
        return value
    raise FormulaError(f"Operand {value!r} is not a number")


def _sequence(value: Any) -> Sequence[int]:
    if isinstance(value, (bytes, bytearray, memoryview, list, tuple)):
        return value
    raise FormulaError(f"Value {value!r} cannot be indexed")


def _subscript(target: Any, index: Any) -> int:
    sequence = _sequence(target)
    position = _number(index)
    if isinstance(position, float):
        if not position.is_integer():
            raise FormulaError(f"Index {position} is not an integer")
        position = int(position)
    if position < 0 or position >= len(sequence):
        raise FormulaError(f"Index {position} out of range for window of {len(sequence)} bytes")
    return sequence[position]


@dataclass(frozen=True)
class Expression:
    source: str
    _node: Node

    def evaluate(self, window: Sequence[int]) -> Number:
        try:
            result = self._node(window)
        except FormulaError:
            raise
        except (ArithmeticError, TypeError, ValueError) as exc:
            raise FormulaError(f"Failed to evaluate {self.source!r}: {exc}") from exc
        if isinstance(result, bool):
            return int(result)
        if not isinstance(result, (int, float)):
            raise FormulaError(f"Formula {self.source!r} does not evaluate to a number")
        return result


@lru_cache(maxsize=1024)
def compile_expression(source: str) -> Expression:
    """Parse *source* once; repeated calls return the cached Expression."""
    if not isinstance(source, str) or not source.strip():
        raise FormulaError(f"Formula must be a non-empty string, got {source!r}")
    return Expression(source, _Parser(source).parse())


def evaluate(source: str, window: Sequence[int]) -> Number:
    return compile_expression(source).evaluate(window)
