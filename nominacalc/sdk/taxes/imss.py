"""IMSS worker-employer quotas (LSS Art. 25, 106, 107, 147, 168, 211).

Each branch is a rate pair applied to a daily base times contribution days:

- SBC: salario base de cotizacion, capped at ``sbc_cap_uma`` UMA
- UMA: the UMA daily value (cuota fija of enfermedad-maternidad)
- EXCESS_3UMA: the part of the capped SBC above 3 UMA

Riesgo de trabajo is employer-only and uses the rate of the employer's risk
class instead of a table rate.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Union

from ..rounding import RoundingPolicy, to_decimal
from ..schemas import FiscalValues, ImssRate

logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, float, str]

IMSS_EMPLOYEE_RULE = "IMSS_LSS_ART_15"
IMSS_EMPLOYER_RULE = "IMSS_LSS_ART_15_PATRON"
INFONAVIT_RULE = "INFONAVIT_LEY_ART_29"

RISK_CONCEPT = "riesgo_trabajo"
INFONAVIT_CONCEPT = "infonavit"
EXCESS_THRESHOLD_UMA = 3


class ImssRateError(Exception):
    """Raised when a quota cannot be computed from the configured rates."""
    pass


@dataclass
class ImssConceptQuota:
    concept: str
    base_type: str
    daily_base: Decimal
    days: int
    employer_rate: Decimal
    employee_rate: Decimal
    employer_amount: Decimal
    employee_amount: Decimal


@dataclass
class ImssResult:
    sbc: Decimal
    capped_sbc: Decimal
    days: int
    risk_class: Optional[str]
    concepts: List[ImssConceptQuota] = field(default_factory=list)

    @property
    def employee_total(self) -> Decimal:
        return sum((c.employee_amount for c in self.concepts), Decimal(0))

    @property
    def employer_total(self) -> Decimal:
        """Employer IMSS quotas, INFONAVIT excluded."""
        return sum(
            (c.employer_amount for c in self.concepts if c.concept != INFONAVIT_CONCEPT),
            Decimal(0),
        )

    @property
    def infonavit(self) -> Decimal:
        return sum(
            (c.employer_amount for c in self.concepts if c.concept == INFONAVIT_CONCEPT),
            Decimal(0),
        )

    def concept(self, name: str) -> Optional[ImssConceptQuota]:
        for quota in self.concepts:
            if quota.concept == name:
                return quota
        return None


def _daily_base(base_type: str, capped_sbc: Decimal, uma_daily: Decimal) -> Decimal:
    if base_type == "SBC":
        return capped_sbc
    if base_type == "UMA":
        return uma_daily
    if base_type == "EXCESS_3UMA":
        return max(Decimal(0), capped_sbc - uma_daily * EXCESS_THRESHOLD_UMA)
    raise ImssRateError(f"Unknown IMSS base type: {base_type}")


def calculate_imss(
    sbc: Amount,
    days: int,
    rates: Sequence[ImssRate],
    fiscal_values: FiscalValues,
    risk_class: Optional[str] = None,
    risk_classes: Optional[Dict[str, Decimal]] = None,
    rounding: Optional[RoundingPolicy] = None,
) -> ImssResult:
    """Compute employer and employee IMSS quotas for a period.

    Args:
        sbc: Daily salario base de cotizacion
        days: Contribution days in the period
        rates: Rate pairs for the fiscal year
        fiscal_values: UMA values and SBC cap for the year
        risk_class: Employer risk class; adds riesgo de trabajo when set
        risk_classes: Risk class -> employer rate
        rounding: Rounding policy for each amount

    Raises:
        ImssRateError: If the risk class has no configured rate
        ValueError: If sbc or days is negative
    """
    rounding = rounding or RoundingPolicy()
    sbc = to_decimal(sbc)
    if sbc < 0:
        raise ValueError(f"SBC cannot be negative: {sbc}")
    if days < 0:
        raise ValueError(f"Contribution days cannot be negative: {days}")

    cap = fiscal_values.uma_daily * fiscal_values.sbc_cap_uma
    capped = min(sbc, cap)
    if capped < sbc:
        logger.debug(f"SBC {sbc} capped at {cap} ({fiscal_values.sbc_cap_uma} UMA)")

    result = ImssResult(sbc=sbc, capped_sbc=capped, days=days, risk_class=risk_class)

    for rate in rates:
        if rate.concept == RISK_CONCEPT:
            continue
        daily = _daily_base(rate.base, capped, fiscal_values.uma_daily)
        result.concepts.append(ImssConceptQuota(
            concept=rate.concept,
            base_type=rate.base,
            daily_base=daily,
            days=days,
            employer_rate=rate.employer_rate,
            employee_rate=rate.employee_rate,
            employer_amount=rounding.apply(daily * days * rate.employer_rate),
            employee_amount=rounding.apply(daily * days * rate.employee_rate),
        ))

    if risk_class:
        classes = risk_classes or {}
        if risk_class not in classes:
            raise ImssRateError(f"No riesgo de trabajo rate configured for {risk_class}")
        risk_rate = to_decimal(classes[risk_class])
        result.concepts.append(ImssConceptQuota(
            concept=RISK_CONCEPT,
            base_type="SBC",
            daily_base=capped,
            days=days,
            employer_rate=risk_rate,
            employee_rate=Decimal(0),
            employer_amount=rounding.apply(capped * days * risk_rate),
            employee_amount=rounding.apply(0),
        ))

    return result
