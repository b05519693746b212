"""Sandboxed evaluation of payroll formulas.

Expressions are parsed into a small AST (see ``parser``) and walked here.
Nothing reaches Python's ``eval``: the only names an expression can see are
the formula variables, and the only callables are the functions in
``parser.FUNCTIONS``. Arithmetic is Decimal throughout; comparisons and
logical operators yield 1 or 0.
"""

import decimal
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from ..rounding import (
    PRECISION,
    RoundingMethod,
    RoundingPolicy,
    round_value,
    to_decimal,
)
from ..schemas import FiscalValues
from .context import SAMPLE_CONTEXT, VARIABLES
from .errors import FormulaEvaluationError, FormulaValidationError
from .parser import (
    Binary,
    Call,
    Conditional,
    FUNCTIONS_HELP,
    Node,
    Number,
    ParsedFormula,
    Unary,
    Variable,
    parse,
)

logger = logging.getLogger(__name__)

_ONE = Decimal(1)
_ZERO = Decimal(0)

# Decimal context for evaluation: enough digits for money, traps on overflow
_EVAL_CONTEXT = decimal.Context(
    prec=34,
    rounding=decimal.ROUND_HALF_EVEN,
    traps=[decimal.InvalidOperation, decimal.DivisionByZero, decimal.Overflow],
)


@dataclass
class FormulaResult:
    """Outcome of evaluating a concept formula with its exemption rule."""

    value: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal
    expression: str
    variables: Dict[str, Optional[Decimal]] = field(default_factory=dict)
    exempt_limit_amount: Optional[Decimal] = None


def _truthy(value: Decimal) -> bool:
    return value != _ZERO


def _flag(condition: bool) -> Decimal:
    return _ONE if condition else _ZERO


class FormulaEvaluator:
    """Validates and evaluates concept formulas.

    The rounding policy drives the ``round()`` function inside formulas and
    the rounding of amounts returned by ``evaluate_with_exemption``.
    """

    def __init__(self, rounding: Optional[RoundingPolicy] = None):
        self.rounding = rounding or RoundingPolicy()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def validate(self, expression: str) -> ParsedFormula:
        """Parse an expression and check its names; does not execute it.

        Raises:
            FormulaValidationError: If the expression is not acceptable
        """
        return parse(expression)

    def test(self, expression: str, sample_context: Optional[Mapping[str, Any]] = None) -> Decimal:
        """Validate, then evaluate once against sample values.

        Values missing from ``sample_context`` come from ``SAMPLE_CONTEXT``.
        """
        context: Dict[str, Any] = dict(SAMPLE_CONTEXT)
        if sample_context:
            unknown = sorted(set(sample_context) - set(VARIABLES))
            if unknown:
                raise FormulaValidationError([f"Unknown variable '{name}'" for name in unknown])
            context.update(sample_context)
        return self.evaluate(expression, context)

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Decimal:
        """Evaluate an expression against a runtime context.

        Raises:
            FormulaValidationError: If the expression is not acceptable
            FormulaEvaluationError: If a referenced variable is not set, a
                division by zero occurs, or the result is not finite
        """
        parsed = self.validate(expression)
        values = self._resolve_variables(parsed, context)
        try:
            with decimal.localcontext(_EVAL_CONTEXT):
                result = self._eval(parsed.tree, values, expression)
        except decimal.DecimalException as e:
            raise FormulaEvaluationError(f"Arithmetic error: {e.__class__.__name__}", expression)

        if not result.is_finite():
            raise FormulaEvaluationError("Result is not a finite number", expression)
        return result

    def evaluate_with_exemption(
        self,
        expression: str,
        context: Mapping[str, Any],
        is_taxable: bool = True,
        exempt_limit: Optional[Union[Decimal, int, float, str]] = None,
        exempt_limit_type: Optional[str] = None,
        is_exempt: bool = False,
        fiscal_values: Optional[FiscalValues] = None,
    ) -> FormulaResult:
        """Evaluate a concept and split it into taxable and exempt parts.

        - Not taxable (or flagged exempt): the whole value is exempt.
        - Taxable with a positive limit: exempt = min(value, limit),
          taxable = max(0, value - exempt). The limit is exempt_limit times
          UMA daily, UMA monthly or SMG daily, or exempt_limit itself for
          FIXED. Reference values come from ``fiscal_values`` when given,
          else from the context.
        - Taxable without a limit: the whole value is taxable.
        """
        parsed = self.validate(expression)
        value = self._round(self.evaluate(expression, context), expression)
        used = {name: _optional_decimal(context.get(name)) for name in sorted(parsed.variables)}

        if not is_taxable or is_exempt:
            return FormulaResult(
                value=value,
                taxable_amount=self.rounding.apply(0),
                exempt_amount=value,
                expression=expression,
                variables=used,
            )

        limit = to_decimal(exempt_limit) if exempt_limit is not None else _ZERO
        if limit <= 0:
            return FormulaResult(
                value=value,
                taxable_amount=value,
                exempt_amount=self.rounding.apply(0),
                expression=expression,
                variables=used,
            )

        limit_amount = self._round(
            limit * self._limit_unit(exempt_limit_type, context, fiscal_values, expression), expression
        )
        with decimal.localcontext(_EVAL_CONTEXT):
            exempt = max(_ZERO, min(value, limit_amount))
            taxable = max(_ZERO, value - exempt)
        return FormulaResult(
            value=value,
            taxable_amount=self.rounding.apply(taxable),
            exempt_amount=self.rounding.apply(exempt),
            expression=expression,
            variables=used,
            exempt_limit_amount=limit_amount,
        )

    @staticmethod
    def available_variables() -> Dict[str, str]:
        return dict(VARIABLES)

    @staticmethod
    def available_functions() -> Dict[str, str]:
        return dict(FUNCTIONS_HELP)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _round(self, value: Decimal, expression: str) -> Decimal:
        try:
            return self.rounding.apply(value)
        except (ValueError, decimal.DecimalException) as e:
            raise FormulaEvaluationError(f"Cannot round {value}: {e}", expression)

    @staticmethod
    def _resolve_variables(parsed: ParsedFormula, context: Mapping[str, Any]) -> Dict[str, Decimal]:
        values = {}
        for name in parsed.variables:
            raw = context.get(name)
            if raw is None:
                raise FormulaEvaluationError(f"Variable '{name}' is not set", parsed.expression)
            try:
                values[name] = to_decimal(raw)
            except ValueError as e:
                raise FormulaEvaluationError(f"Variable '{name}': {e}", parsed.expression)
        return values

    @staticmethod
    def _limit_unit(
        limit_type: Optional[str],
        context: Mapping[str, Any],
        fiscal_values: Optional[FiscalValues],
        expression: str,
    ) -> Decimal:
        if limit_type == "FIXED":
            return _ONE

        if limit_type == "UMA":
            key, attr = "umaDaily", "uma_daily"
        elif limit_type == "UMA_MONTHLY":
            key, attr = "umaMonthly", "uma_monthly"
        elif limit_type == "SMG":
            key, attr = "smgDaily", "smg_daily"
        else:
            raise FormulaEvaluationError(f"Unknown exempt limit type: {limit_type!r}", expression)

        if fiscal_values is not None:
            return getattr(fiscal_values, attr)
        raw = context.get(key)
        if raw is None:
            raise FormulaEvaluationError(
                f"Exempt limit type {limit_type} needs '{key}' in the context", expression
            )
        return to_decimal(raw)

    def _eval(self, node: Node, values: Dict[str, Decimal], expression: str) -> Decimal:
        if isinstance(node, Number):
            return node.value

        if isinstance(node, Variable):
            return values[node.name]

        if isinstance(node, Unary):
            operand = self._eval(node.operand, values, expression)
            if node.op == "-":
                return -operand
            if node.op == "!":
                return _flag(not _truthy(operand))
            return operand

        if isinstance(node, Conditional):
            if _truthy(self._eval(node.test, values, expression)):
                return self._eval(node.then, values, expression)
            return self._eval(node.otherwise, values, expression)

        if isinstance(node, Binary):
            return self._binary(node, values, expression)

        if isinstance(node, Call):
            return self._call(node, values, expression)

        raise FormulaEvaluationError(f"Unsupported node {type(node).__name__}", expression)

    def _binary(self, node: Binary, values: Dict[str, Decimal], expression: str) -> Decimal:
        op = node.op
        left = self._eval(node.left, values, expression)

        # Short-circuit logic
        if op == "&&":
            return _flag(_truthy(left) and _truthy(self._eval(node.right, values, expression)))
        if op == "||":
            return _flag(_truthy(left) or _truthy(self._eval(node.right, values, expression)))

        right = self._eval(node.right, values, expression)

        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op in ("/", "%"):
            if right == _ZERO:
                raise FormulaEvaluationError("Division by zero", expression)
            return left / right if op == "/" else left % right
        if op == "==":
            return _flag(left == right)
        if op == "!=":
            return _flag(left != right)
        if op == "<":
            return _flag(left < right)
        if op == "<=":
            return _flag(left <= right)
        if op == ">":
            return _flag(left > right)
        if op == ">=":
            return _flag(left >= right)

        raise FormulaEvaluationError(f"Unsupported operator '{op}'", expression)

    def _call(self, node: Call, values: Dict[str, Decimal], expression: str) -> Decimal:
        args = [self._eval(arg, values, expression) for arg in node.args]
        name = node.name

        if name == "min":
            return min(args)
        if name == "max":
            return max(args)
        if name == "abs":
            return abs(args[0])
        if name == "floor":
            return round_value(args[0], 0, RoundingMethod.FLOOR)
        if name == "ceil":
            return round_value(args[0], 0, RoundingMethod.CEIL)
        if name == "round":
            precision = args[1] if len(args) > 1 else Decimal(PRECISION["CURRENCY"])
            if precision != precision.to_integral_value() or not 0 <= precision <= 10:
                raise FormulaEvaluationError(
                    f"round() precision must be an integer between 0 and 10, got {precision}", expression
                )
            return round_value(args[0], int(precision), self.rounding.method)
        if name == "proportional":
            amount, numerator, denominator = args
            if denominator == _ZERO:
                raise FormulaEvaluationError("proportional() denominator is zero", expression)
            return amount * numerator / denominator

        raise FormulaEvaluationError(f"Unsupported function '{name}'", expression)


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return to_decimal(value)
