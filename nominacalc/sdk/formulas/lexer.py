"""Tokenizer for the payroll formula language."""

from dataclasses import dataclass
from typing import List

from .errors import FormulaValidationError


MAX_EXPRESSION_LENGTH = 1000
MAX_TOKENS = 256

NUMBER = "NUMBER"
IDENT = "IDENT"
OP = "OP"
LPAREN = "LPAREN"
RPAREN = "RPAREN"
COMMA = "COMMA"
QUESTION = "QUESTION"
COLON = "COLON"
EOF = "EOF"

# Longest first so "<=" wins over "<"
_OPERATORS = ("&&", "||", "==", "!=", "<=", ">=", "<", ">", "+", "-", "*", "/", "%", "!")

_PUNCTUATION = {
    "(": LPAREN,
    ")": RPAREN,
    ",": COMMA,
    "?": QUESTION,
    ":": COLON,
}


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


def tokenize(expression: str) -> List[Token]:
    """Split an expression into tokens.

    Raises:
        FormulaValidationError: On empty or oversized input, an unexpected
            character, a malformed number, or too many tokens
    """
    if not isinstance(expression, str) or not expression.strip():
        raise FormulaValidationError(["Expression is empty"])
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise FormulaValidationError(
            [f"Expression is too long ({len(expression)} > {MAX_EXPRESSION_LENGTH} characters)"]
        )

    tokens: List[Token] = []
    i = 0
    length = len(expression)

    while i < length:
        ch = expression[i]

        if ch.isspace():
            i += 1
            continue

        if ch.isdigit() or (ch == "." and i + 1 < length and expression[i + 1].isdigit()):
            start = i
            seen_dot = False
            while i < length and (expression[i].isdigit() or expression[i] == "."):
                if expression[i] == ".":
                    if seen_dot:
                        raise FormulaValidationError([f"Malformed number at position {start}"])
                    seen_dot = True
                i += 1
            text = expression[start:i]
            if text.endswith("."):
                raise FormulaValidationError([f"Malformed number '{text}' at position {start}"])
            tokens.append(Token(NUMBER, text, start))

        elif ch.isalpha() or ch == "_":
            start = i
            while i < length and (expression[i].isalnum() or expression[i] == "_"):
                i += 1
            tokens.append(Token(IDENT, expression[start:i], start))

        elif ch in _PUNCTUATION:
            tokens.append(Token(_PUNCTUATION[ch], ch, i))
            i += 1

        else:
            for op in _OPERATORS:
                if expression.startswith(op, i):
                    tokens.append(Token(OP, op, i))
                    i += len(op)
                    break
            else:
                raise FormulaValidationError([f"Unexpected character '{ch}' at position {i}"])

        if len(tokens) > MAX_TOKENS:
            raise FormulaValidationError([f"Expression has too many tokens (max {MAX_TOKENS})"])

    tokens.append(Token(EOF, "", length))
    return tokens
