"""Formula errors."""

from typing import List, Optional


class FormulaError(Exception):
    """Base class for formula problems."""
    pass


class FormulaValidationError(FormulaError):
    """Raised when an expression does not parse or uses unknown names."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class FormulaEvaluationError(FormulaError):
    """Raised when a valid expression cannot produce a finite amount."""

    def __init__(self, message: str, expression: Optional[str] = None):
        self.expression = expression
        super().__init__(message)
