"""
Safe arithmetic expression parser and evaluator.

Formulas come from configuration written by game designers, so they are never
handed to ``eval``. They are tokenized, parsed into a small tree and evaluated
against a closed set of operators and math functions.

Grammar::

    expr   := term (('+' | '-') term)*
    term   := unary (('*' | '/') unary)*
    unary  := ('-' | '+') unary | power
    power  := atom ('**' unary)?
    atom   := NUMBER | DICE | '[' NAME ']' | FUNC '(' expr (',' expr)* ')' | '(' expr ')'
"""

from __future__ import annotations

import math
import random
import re
from dataclasses import dataclass
from typing import Callable

from ..base import ConversionError


class FormulaSyntaxError(ConversionError):
    """Raised when an expression cannot be tokenized or parsed."""


# =========================================================================
# Functions
# =========================================================================

def _round_half_away(x: float) -> float:
    return math.copysign(math.floor(abs(x) + 0.5), x)


def _clamp_unit(x: float) -> float:
    return max(-1.0, min(1.0, x))


def _pow(base: float, exponent: float) -> float:
    try:
        return math.pow(base, exponent)
    except (ValueError, OverflowError) as e:
        raise ConversionError(f"Invalid power {base} ** {exponent}: {e}") from None


FUNCTIONS: dict[str, tuple[int, Callable[..., float]]] = {
    "floor": (1, lambda x: float(math.floor(x))),
    "ceil": (1, lambda x: float(math.ceil(x))),
    "round": (1, _round_half_away),
    "sqrt": (1, lambda x: math.sqrt(x) if x >= 0 else 0.0),
    "abs": (1, abs),
    "sin": (1, math.sin),
    "cos": (1, math.cos),
    "tan": (1, math.tan),
    "asin": (1, lambda x: math.asin(_clamp_unit(x))),
    "acos": (1, lambda x: math.acos(_clamp_unit(x))),
    "atan": (1, math.atan),
    "min": (2, min),
    "max": (2, max),
    "pow": (2, _pow),
}

MAX_DICE = 1000
VARIABLE_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


# =========================================================================
# Tokenizer
# =========================================================================

@dataclass(frozen=True)
class Token:
    kind: str  # num, dice, var, ident, op, lparen, rparen, comma
    text: str
    pos: int


_TOKEN_PATTERNS = [
    ("dice", re.compile(r"(\d+)d(\d+)(?![\w.])")),
    ("num", re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")),
    ("var", re.compile(r"\[([^\[\]]*)\]")),
    ("ident", re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")),
    ("op", re.compile(r"\*\*|[+\-*/]")),
    ("lparen", re.compile(r"\(")),
    ("rparen", re.compile(r"\)")),
    ("comma", re.compile(r",")),
]


def tokenize(expression: str) -> tuple[list[Token], list[str]]:
    """Split an expression into tokens.

    Never raises: problems are returned as messages so that validation can
    report all of them at once.

    Returns:
        The recognised tokens and the list of tokenization errors
    """
    tokens: list[Token] = []
    errors: list[str] = []
    pos = 0
    length = len(expression)

    while pos < length:
        ch = expression[pos]
        if ch.isspace():
            pos += 1
            continue

        for kind, pattern in _TOKEN_PATTERNS:
            match = pattern.match(expression, pos)
            if not match:
                continue
            if kind == "var" and not VARIABLE_NAME.match(match.group(1)):
                errors.append(f"Invalid variable reference '{match.group(0)}' at position {pos}")
            tokens.append(Token(kind, match.group(0), pos))
            pos = match.end()
            break
        else:
            if ch == "[":
                errors.append(f"Unclosed variable reference at position {pos}")
            else:
                errors.append(f"Forbidden character '{ch}' at position {pos}")
            pos += 1

    return tokens, errors


# =========================================================================
# Syntax tree
# =========================================================================

class Node:
    def evaluate(self, variables: dict[str, float], rng: random.Random) -> float:
        raise NotImplementedError


@dataclass
class Number(Node):
    value: float

    def evaluate(self, variables, rng):
        return self.value


@dataclass
class Dice(Node):
    count: int
    sides: int

    def evaluate(self, variables, rng):
        if self.count <= 0 or self.sides <= 0:
            return 0.0
        return float(sum(rng.randint(1, self.sides) for _ in range(self.count)))


@dataclass
class Variable(Node):
    name: str

    def evaluate(self, variables, rng):
        value = variables.get(self.name)
        if value is None:
            return 0.0
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        except OverflowError:
            raise ConversionError(f"Variable [{self.name}] is too large: {value!r}") from None
        if not math.isfinite(number):
            raise ConversionError(f"Variable [{self.name}] is not a finite number: {value!r}")
        return number


@dataclass
class Unary(Node):
    op: str
    operand: Node

    def evaluate(self, variables, rng):
        value = self.operand.evaluate(variables, rng)
        return -value if self.op == "-" else value


@dataclass
class Binary(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, variables, rng):
        a = self.left.evaluate(variables, rng)
        b = self.right.evaluate(variables, rng)
        if self.op == "+":
            return a + b
        if self.op == "-":
            return a - b
        if self.op == "*":
            return a * b
        if self.op == "/":
            return a / b if b != 0 else 0.0
        return _pow(a, b)


@dataclass
class Call(Node):
    name: str
    args: list[Node]

    def evaluate(self, variables, rng):
        _, func = FUNCTIONS[self.name]
        values = [arg.evaluate(variables, rng) for arg in self.args]
        try:
            return float(func(*values))
        except (OverflowError, ValueError) as e:
            raise ConversionError(f"{self.name}() failed on {values}: {e}") from None


# =========================================================================
# Parser
# =========================================================================

class _Parser:
    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.index = 0

    def peek(self) -> Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def at_op(self, *ops: str) -> bool:
        token = self.peek()
        return token is not None and token.kind == "op" and token.text in ops

    def expect(self, kind: str) -> Token:
        token = self.peek()
        if token is None:
            raise FormulaSyntaxError(f"Unexpected end of expression, expected {kind}")
        if token.kind != kind:
            raise FormulaSyntaxError(f"Unexpected '{token.text}' at position {token.pos}, expected {kind}")
        return self.advance()

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaSyntaxError("Empty expression")
        node = self.expr()
        token = self.peek()
        if token is not None:
            raise FormulaSyntaxError(f"Unexpected '{token.text}' at position {token.pos}")
        return node

    def expr(self) -> Node:
        node = self.term()
        while self.at_op("+", "-"):
            op = self.advance().text
            node = Binary(op, node, self.term())
        return node

    def term(self) -> Node:
        node = self.unary()
        while self.at_op("*", "/"):
            op = self.advance().text
            node = Binary(op, node, self.unary())
        return node

    def unary(self) -> Node:
        if self.at_op("+", "-"):
            op = self.advance().text
            return Unary(op, self.unary())
        return self.power()

    def power(self) -> Node:
        node = self.atom()
        if self.at_op("**"):
            self.advance()
            node = Binary("**", node, self.unary())
        return node

    def atom(self) -> Node:
        token = self.peek()
        if token is None:
            raise FormulaSyntaxError("Unexpected end of expression")

        if token.kind == "num":
            self.advance()
            return Number(float(token.text))

        if token.kind == "dice":
            self.advance()
            count, sides = (int(part) for part in token.text.split("d"))
            if count > MAX_DICE:
                raise FormulaSyntaxError(f"Too many dice in '{token.text}' (max {MAX_DICE})")
            return Dice(count, sides)

        if token.kind == "var":
            self.advance()
            name = token.text[1:-1]
            if not VARIABLE_NAME.match(name):
                raise FormulaSyntaxError(f"Invalid variable reference '{token.text}' at position {token.pos}")
            return Variable(name)

        if token.kind == "ident":
            self.advance()
            name = token.text.lower()
            if name not in FUNCTIONS:
                raise FormulaSyntaxError(f"Unknown function '{token.text}' at position {token.pos}")
            arity, _ = FUNCTIONS[name]
            self.expect("lparen")
            args = [self.expr()]
            while self.peek() is not None and self.peek().kind == "comma":
                self.advance()
                args.append(self.expr())
            self.expect("rparen")
            if len(args) != arity:
                raise FormulaSyntaxError(f"Function '{name}' expects {arity} argument(s), got {len(args)}")
            return Call(name, args)

        if token.kind == "lparen":
            self.advance()
            node = self.expr()
            self.expect("rparen")
            return node

        raise FormulaSyntaxError(f"Unexpected '{token.text}' at position {token.pos}")


# =========================================================================
# Public API
# =========================================================================

class SafeExpression:
    """A parsed expression, reusable across evaluations."""

    def __init__(self, source: str, root: Node):
        self.source = source
        self.root = root

    def evaluate(self, variables: dict | None = None, rng: random.Random | None = None) -> float:
        result = self.root.evaluate(variables or {}, rng or random.Random())
        if math.isnan(result) or math.isinf(result):
            raise ConversionError(f"Expression '{self.source}' produced a non-finite result")
        return result


def parse(expression: str) -> SafeExpression:
    """Parse an expression.

    Raises:
        FormulaSyntaxError: On any forbidden character, malformed variable
            reference, unknown function or syntax error
    """
    tokens, errors = tokenize(expression)
    if errors:
        raise FormulaSyntaxError(errors[0])
    return SafeExpression(expression, _Parser(tokens).parse())


def validate(expression: str) -> list[str]:
    """Return every problem found in an expression without evaluating it."""
    tokens, errors = tokenize(expression)

    depth = 0
    for token in tokens:
        if token.kind == "lparen":
            depth += 1
        elif token.kind == "rparen":
            depth -= 1
            if depth < 0:
                errors.append(f"Unbalanced ')' at position {token.pos}")
                depth = 0
    if depth > 0:
        errors.append(f"{depth} unclosed parenthesis(es)")

    for token in tokens:
        if token.kind == "ident" and token.text.lower() not in FUNCTIONS:
            errors.append(f"Unknown function '{token.text}' at position {token.pos}")

    if errors:
        return errors

    try:
        _Parser(tokens).parse()
    except FormulaSyntaxError as e:
        errors.append(str(e))
    return errors
