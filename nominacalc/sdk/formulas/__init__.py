"""Payroll formula language: tokenizer, parser and sandboxed evaluator."""

from .context import (
    FORMULA_TEMPLATES,
    SAMPLE_CONTEXT,
    VARIABLES,
    build_formula_context,
    completed_years,
    get_template,
    integration_factor,
    vacation_days_for_years,
)
from .errors import FormulaError, FormulaEvaluationError, FormulaValidationError
from .evaluator import FormulaEvaluator, FormulaResult
from .parser import FUNCTIONS, FUNCTIONS_HELP, ParsedFormula, parse

__all__ = [
    "FORMULA_TEMPLATES",
    "SAMPLE_CONTEXT",
    "VARIABLES",
    "build_formula_context",
    "completed_years",
    "get_template",
    "integration_factor",
    "vacation_days_for_years",
    "FormulaError",
    "FormulaEvaluationError",
    "FormulaValidationError",
    "FormulaEvaluator",
    "FormulaResult",
    "FUNCTIONS",
    "FUNCTIONS_HELP",
    "ParsedFormula",
    "parse",
]
