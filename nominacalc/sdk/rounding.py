"""Centralized rounding policy for payroll amounts.

Every amount that leaves the engine passes through ``round_value`` so that the
same input always produces the same cents, regardless of which calculator
produced it. All arithmetic is done on ``Decimal``; floats are converted
through their string form so 0.1 stays 0.1.

Methods:
    ROUND      half away from zero (2.5 -> 3, -2.5 -> -3)
    FLOOR      toward negative infinity
    CEIL       toward positive infinity
    HALF_UP    half toward positive infinity (2.5 -> 3, -2.5 -> -2)
    HALF_EVEN  banker's rounding (2.5 -> 2, 3.5 -> 4)

The rounding policy of a company lives in profile.yaml and is read through a
``RoundingPolicyCache`` owned by whoever runs the calculation. There is no
module-level cache: invalidation is explicit.
"""

import logging
import threading
from dataclasses import dataclass
from decimal import (
    Decimal,
    InvalidOperation,
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_DOWN,
    ROUND_HALF_EVEN,
    ROUND_HALF_UP,
    localcontext,
)
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import get_company_config, load_settings

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, float, str]

MAX_PRECISION = 10


class RoundingMethod(str, Enum):
    ROUND = "ROUND"
    FLOOR = "FLOOR"
    CEIL = "CEIL"
    HALF_UP = "HALF_UP"
    HALF_EVEN = "HALF_EVEN"


# Standard precisions by kind of quantity
PRECISION = {
    "CURRENCY": 2,
    "PERCENTAGE": 4,
    "DAYS": 2,
    "HOURS": 2,
    "SALARY_DAILY": 4,
    "UMA": 4,
}

_DECIMAL_MODES = {
    RoundingMethod.ROUND: ROUND_HALF_UP,
    RoundingMethod.FLOOR: ROUND_FLOOR,
    RoundingMethod.CEIL: ROUND_CEILING,
    RoundingMethod.HALF_EVEN: ROUND_HALF_EVEN,
}


def to_decimal(value: Number) -> Decimal:
    """Convert a number to a finite Decimal.

    Raises:
        ValueError: If the value is not a number or is NaN/infinite
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Not a number: {value!r}")
    else:
        raise ValueError(f"Not a number: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Non-finite value: {value!r}")
    return result


def _check_precision(precision: int) -> None:
    if not isinstance(precision, int) or isinstance(precision, bool):
        raise ValueError(f"Precision must be an integer, got {precision!r}")
    if precision < 0 or precision > MAX_PRECISION:
        raise ValueError(f"Precision must be between 0 and {MAX_PRECISION}, got {precision}")


def round_value(
    value: Number,
    precision: int = PRECISION["CURRENCY"],
    method: Union[RoundingMethod, str] = RoundingMethod.ROUND,
) -> Decimal:
    """Round a value to ``precision`` decimal places using ``method``.

    Idempotent: rounding an already-rounded value returns it unchanged.

    Args:
        value: Amount to round
        precision: Number of decimal places (0-10)
        method: Rounding method (enum member or its name)

    Returns:
        Rounded Decimal with exactly ``precision`` decimal places
    """
    _check_precision(precision)
    method = RoundingMethod(method)
    amount = to_decimal(value)
    quantum = Decimal(1).scaleb(-precision)

    with localcontext() as ctx:
        # quantize needs a digit for every integer place plus the decimals
        ctx.prec = max(ctx.prec, amount.adjusted() + precision + 2)
        if method == RoundingMethod.HALF_UP:
            # Ties go toward +infinity, so negative ties round toward zero
            if amount >= 0:
                return amount.quantize(quantum, rounding=ROUND_HALF_UP)
            return -((-amount).quantize(quantum, rounding=ROUND_HALF_DOWN))

        return amount.quantize(quantum, rounding=_DECIMAL_MODES[method])


@dataclass
class RoundingTrace:
    """A rounded value together with what rounding did to it."""

    value: Decimal
    original_value: Decimal
    precision: int
    method: RoundingMethod

    @property
    def adjustment(self) -> Decimal:
        return self.value - self.original_value


def round_with_trace(
    value: Number,
    precision: int = PRECISION["CURRENCY"],
    method: Union[RoundingMethod, str] = RoundingMethod.ROUND,
) -> RoundingTrace:
    """Round a value and keep the original for audit output."""
    original = to_decimal(value)
    return RoundingTrace(
        value=round_value(original, precision, method),
        original_value=original,
        precision=precision,
        method=RoundingMethod(method),
    )


def sum_and_round(
    values: Iterable[Number],
    precision: int = PRECISION["CURRENCY"],
    method: Union[RoundingMethod, str] = RoundingMethod.ROUND,
) -> Decimal:
    """Sum values exactly, then round once."""
    total = sum((to_decimal(v) for v in values), Decimal(0))
    return round_value(total, precision, method)


def distribute(
    total: Number,
    parts: int,
    precision: int = PRECISION["CURRENCY"],
    method: Union[RoundingMethod, str] = RoundingMethod.ROUND,
) -> List[Decimal]:
    """Split ``total`` into ``parts`` rounded shares that sum exactly to it.

    Every share is ``round(total / parts)`` except the last, which absorbs
    whatever remainder is left.

    Example:
        distribute(100, 3, 2, "ROUND") -> [33.33, 33.33, 33.34]

    Raises:
        ValueError: If parts is less than 1
    """
    if not isinstance(parts, int) or isinstance(parts, bool) or parts < 1:
        raise ValueError(f"parts must be a positive integer, got {parts!r}")

    rounded_total = round_value(total, precision, method)
    share = round_value(rounded_total / parts, precision, method)
    shares = [share] * (parts - 1)
    shares.append(rounded_total - share * (parts - 1))
    return shares


def calculate_percentage(
    amount: Number,
    percent: Number,
    precision: int = PRECISION["CURRENCY"],
    method: Union[RoundingMethod, str] = RoundingMethod.ROUND,
) -> Decimal:
    """Return ``percent`` percent of ``amount``, rounded."""
    return round_value(to_decimal(amount) * to_decimal(percent) / 100, precision, method)


def validate_precision(value: Number, precision: int = PRECISION["CURRENCY"]) -> bool:
    """True if ``value`` has no more than ``precision`` significant decimals."""
    _check_precision(precision)
    amount = to_decimal(value)
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, amount.adjusted() + precision + 2)
        return amount == amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_EVEN)


# =============================================================================
# Company rounding policy
# =============================================================================

class RoundingPolicy(BaseModel):
    """How a company rounds its payroll amounts."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: RoundingMethod = Field(default=RoundingMethod.ROUND, description="Rounding method")
    precision: int = Field(
        default=PRECISION["CURRENCY"], ge=0, le=MAX_PRECISION,
        description="Decimal places for currency amounts",
    )

    def apply(self, value: Number) -> Decimal:
        return round_value(value, self.precision, self.method)


def load_company_rounding_policy(company_id: str) -> RoundingPolicy:
    """Read a company's rounding policy from configuration.

    profile.yaml ``companies.<id>.rounding_method`` / ``rounding_precision``
    win; settings.json ``default_rounding_method`` /
    ``default_rounding_precision`` are the fallback; ROUND to 2 places
    otherwise.
    """
    company = get_company_config(company_id)
    settings = load_settings()

    method = company.get("rounding_method") or settings.get("default_rounding_method") or "ROUND"
    precision = company.get("rounding_precision")
    if precision is None:
        precision = settings.get("default_rounding_precision", PRECISION["CURRENCY"])

    return RoundingPolicy(method=str(method).upper(), precision=int(precision))


class RoundingPolicyCache:
    """Per-company rounding policies, loaded on first use.

    Entries never expire on their own; call ``invalidate`` after changing a
    company's configuration, or ``clear`` to drop everything.
    """

    def __init__(self, loader: Optional[Callable[[str], RoundingPolicy]] = None):
        self._loader = loader or load_company_rounding_policy
        self._policies: Dict[str, RoundingPolicy] = {}
        self._lock = threading.Lock()

    def get(self, company_id: str) -> RoundingPolicy:
        with self._lock:
            policy = self._policies.get(company_id)
            if policy is None:
                policy = self._loader(company_id)
                self._policies[company_id] = policy
                logger.debug(f"Loaded rounding policy for {company_id}: {policy.method.value}/{policy.precision}")
            return policy

    def set(self, company_id: str, policy: RoundingPolicy) -> None:
        with self._lock:
            self._policies[company_id] = policy

    def invalidate(self, company_id: str) -> None:
        with self._lock:
            self._policies.pop(company_id, None)

    def clear(self) -> None:
        with self._lock:
            self._policies.clear()

    def __contains__(self, company_id: str) -> bool:
        with self._lock:
            return company_id in self._policies
