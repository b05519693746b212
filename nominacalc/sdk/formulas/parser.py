"""Recursive-descent parser for the payroll formula language.

Grammar, lowest precedence first:

    expression  := logic_or ( "?" expression ":" expression )?
    logic_or    := logic_and ( "||" logic_and )*
    logic_and   := equality ( "&&" equality )*
    equality    := comparison ( ( "==" | "!=" ) comparison )*
    comparison  := additive ( ( "<" | "<=" | ">" | ">=" ) additive )*
    additive    := term ( ( "+" | "-" ) term )*
    term        := unary ( ( "*" | "/" | "%" ) unary )*
    unary       := ( "-" | "+" | "!" ) unary | primary
    primary     := NUMBER | IDENT | IDENT "(" args ")" | "(" expression ")"

Identifiers must be one of the formula variables; calls must name one of
``FUNCTIONS`` with a matching argument count. Nothing is evaluated here.
"""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import FrozenSet, List, Optional, Tuple, Union

from .context import VARIABLES
from .errors import FormulaValidationError
from .lexer import (
    COLON,
    COMMA,
    EOF,
    IDENT,
    LPAREN,
    NUMBER,
    OP,
    QUESTION,
    RPAREN,
    Token,
    tokenize,
)


MAX_DEPTH = 32

# name -> (min args, max args); None means unbounded
FUNCTIONS = {
    "min": (2, None),
    "max": (2, None),
    "round": (1, 2),
    "proportional": (3, 3),
    "abs": (1, 1),
    "floor": (1, 1),
    "ceil": (1, 1),
}

FUNCTIONS_HELP = {
    "min": "min(a, b, ...) - smallest argument",
    "max": "max(a, b, ...) - largest argument",
    "round": "round(value, precision=2) - company rounding method",
    "proportional": "proportional(amount, numerator, denominator) - amount * numerator / denominator",
    "abs": "abs(x) - absolute value",
    "floor": "floor(x) - round down to an integer",
    "ceil": "ceil(x) - round up to an integer",
}


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Conditional:
    test: "Node"
    then: "Node"
    otherwise: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]


Node = Union[Number, Variable, Unary, Binary, Conditional, Call]


@dataclass(frozen=True)
class ParsedFormula:
    """A validated expression ready for evaluation."""

    expression: str
    tree: Node
    variables: FrozenSet[str]
    functions: FrozenSet[str]


# =============================================================================
# Parser
# =============================================================================

class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens: List[Token] = tokenize(expression)
        self.index = 0
        self.depth = 0
        self.variables = set()
        self.functions = set()

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != EOF:
            self.index += 1
        return token

    def match_op(self, *ops: str) -> Optional[str]:
        token = self.current
        if token.kind == OP and token.value in ops:
            self.advance()
            return token.value
        return None

    def expect(self, kind: str, what: str) -> Token:
        token = self.current
        if token.kind != kind:
            found = token.value or "end of expression"
            raise FormulaValidationError([f"Expected {what} at position {token.pos}, found '{found}'"])
        return self.advance()

    def enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise FormulaValidationError([f"Expression is nested too deeply (max {MAX_DEPTH})"])

    def leave(self) -> None:
        self.depth -= 1

    def parse(self) -> ParsedFormula:
        tree = self.expression_()
        if self.current.kind != EOF:
            token = self.current
            raise FormulaValidationError([f"Unexpected '{token.value}' at position {token.pos}"])
        return ParsedFormula(
            expression=self.expression,
            tree=tree,
            variables=frozenset(self.variables),
            functions=frozenset(self.functions),
        )

    def expression_(self) -> Node:
        self.enter()
        try:
            test = self.logic_or()
            if self.current.kind == QUESTION:
                self.advance()
                then = self.expression_()
                self.expect(COLON, "':'")
                otherwise = self.expression_()
                return Conditional(test, then, otherwise)
            return test
        finally:
            self.leave()

    def _binary_level(self, operand, *ops: str) -> Node:
        left = operand()
        while True:
            op = self.match_op(*ops)
            if op is None:
                return left
            left = Binary(op, left, operand())

    def logic_or(self) -> Node:
        return self._binary_level(self.logic_and, "||")

    def logic_and(self) -> Node:
        return self._binary_level(self.equality, "&&")

    def equality(self) -> Node:
        return self._binary_level(self.comparison, "==", "!=")

    def comparison(self) -> Node:
        return self._binary_level(self.additive, "<", "<=", ">", ">=")

    def additive(self) -> Node:
        return self._binary_level(self.term, "+", "-")

    def term(self) -> Node:
        return self._binary_level(self.unary, "*", "/", "%")

    def unary(self) -> Node:
        op = self.match_op("-", "+", "!")
        if op is None:
            return self.primary()
        self.enter()
        try:
            return Unary(op, self.unary())
        finally:
            self.leave()

    def primary(self) -> Node:
        token = self.current

        if token.kind == NUMBER:
            self.advance()
            return Number(Decimal(token.value))

        if token.kind == IDENT:
            self.advance()
            if self.current.kind == LPAREN:
                return self.call(token)
            if token.value in FUNCTIONS:
                raise FormulaValidationError(
                    [f"Function '{token.value}' at position {token.pos} must be called with arguments"]
                )
            if token.value not in VARIABLES:
                raise FormulaValidationError([f"Unknown variable '{token.value}' at position {token.pos}"])
            self.variables.add(token.value)
            return Variable(token.value)

        if token.kind == LPAREN:
            self.advance()
            node = self.expression_()
            self.expect(RPAREN, "')'")
            return node

        found = token.value or "end of expression"
        raise FormulaValidationError([f"Unexpected '{found}' at position {token.pos}"])

    def call(self, name_token: Token) -> Node:
        name = name_token.value
        if name not in FUNCTIONS:
            raise FormulaValidationError([f"Unknown function '{name}' at position {name_token.pos}"])

        self.expect(LPAREN, "'('")
        args: List[Node] = []
        if self.current.kind != RPAREN:
            args.append(self.expression_())
            while self.current.kind == COMMA:
                self.advance()
                args.append(self.expression_())
        self.expect(RPAREN, "')'")

        min_args, max_args = FUNCTIONS[name]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            if max_args is None:
                expected = f"at least {min_args}"
            elif min_args == max_args:
                expected = str(min_args)
            else:
                expected = f"{min_args} to {max_args}"
            raise FormulaValidationError(
                [f"Function '{name}' takes {expected} argument(s), got {len(args)}"]
            )

        self.functions.add(name)
        return Call(name, tuple(args))


@lru_cache(maxsize=512)
def parse(expression: str) -> ParsedFormula:
    """Parse and validate an expression.

    Raises:
        FormulaValidationError: If the expression is malformed, too large,
            or names an unknown variable or function
    """
    return _Parser(expression).parse()
