"""ISR withholding and Subsidio al Empleo.

ISR (LISR Art. 96):

    isr = cuota_fija + (base - limite_inferior) * tasa

Subsidio al Empleo is a flat amount looked up on its own table and credited
against ISR; the employee never owes less than zero.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from ..rounding import RoundingPolicy, to_decimal
from ..schemas import IsrBracket, SubsidyBracket
from .brackets import BracketTable

Amount = Union[Decimal, int, float, str]

ISR_RULE = "ISR_LISR_ART_96"
SUBSIDY_RULE = "SUBSIDIO_EMPLEO_LISR"


@dataclass
class IsrResult:
    base: Decimal
    limit_inferior: Decimal
    limit_superior: Optional[Decimal]
    excedente: Decimal
    tasa: Decimal
    impuesto_marginal: Decimal
    cuota_fija: Decimal
    isr: Decimal
    table_used: str
    row_index: int


@dataclass
class SubsidyResult:
    base: Decimal
    limit_inferior: Decimal
    limit_superior: Optional[Decimal]
    subsidy: Decimal
    table_used: str
    row_index: int


@dataclass
class NetIsrResult:
    """ISR after crediting Subsidio al Empleo."""

    isr: IsrResult
    subsidy: Optional[SubsidyResult]
    subsidy_applied: Decimal
    net_isr: Decimal


def calculate_isr(
    base: Amount,
    table: BracketTable[IsrBracket],
    rounding: Optional[RoundingPolicy] = None,
) -> IsrResult:
    """Compute ISR for a taxable base against one ISR table.

    Args:
        base: Taxable income for the period
        table: ISR table for the period type and year
        rounding: Rounding policy for the amounts (defaults to ROUND/2)

    Raises:
        ValueError: If base is negative
    """
    rounding = rounding or RoundingPolicy()
    match = table.find(base)
    row = match.row
    excess = match.excess
    marginal = excess * row.rate_on_excess

    return IsrResult(
        base=match.base,
        limit_inferior=row.lower_limit,
        limit_superior=row.upper_limit,
        excedente=excess,
        tasa=row.rate_on_excess,
        impuesto_marginal=rounding.apply(marginal),
        cuota_fija=row.fixed_fee,
        isr=rounding.apply(row.fixed_fee + marginal),
        table_used=table.name,
        row_index=match.index,
    )


def calculate_subsidy(
    base: Amount,
    table: BracketTable[SubsidyBracket],
    rounding: Optional[RoundingPolicy] = None,
) -> SubsidyResult:
    """Look up the Subsidio al Empleo for a taxable base."""
    rounding = rounding or RoundingPolicy()
    match = table.find(base)
    return SubsidyResult(
        base=match.base,
        limit_inferior=match.row.lower_limit,
        limit_superior=match.row.upper_limit,
        subsidy=rounding.apply(match.row.subsidy_amount),
        table_used=table.name,
        row_index=match.index,
    )


def net_isr(isr: Amount, subsidy: Amount, rounding: Optional[RoundingPolicy] = None) -> Decimal:
    """max(0, isr - subsidy)"""
    rounding = rounding or RoundingPolicy()
    return rounding.apply(max(Decimal(0), to_decimal(isr) - to_decimal(subsidy)))


def calculate_isr_with_subsidy(
    base: Amount,
    isr_table: BracketTable[IsrBracket],
    subsidy_table: Optional[BracketTable[SubsidyBracket]] = None,
    rounding: Optional[RoundingPolicy] = None,
) -> NetIsrResult:
    """Compute ISR, credit the subsidy and return the amount to withhold.

    Without a subsidy table the subsidy is zero.
    """
    rounding = rounding or RoundingPolicy()
    isr = calculate_isr(base, isr_table, rounding)

    subsidy = None
    subsidy_amount = Decimal(0)
    if subsidy_table is not None:
        subsidy = calculate_subsidy(base, subsidy_table, rounding)
        subsidy_amount = subsidy.subsidy

    return NetIsrResult(
        isr=isr,
        subsidy=subsidy,
        subsidy_applied=rounding.apply(min(isr.isr, subsidy_amount)),
        net_isr=net_isr(isr.isr, subsidy_amount, rounding),
    )


@dataclass
class ProgressionIssue:
    row_index: int
    expected_fixed_fee: Decimal
    fixed_fee: Decimal

    @property
    def difference(self) -> Decimal:
        return self.fixed_fee - self.expected_fixed_fee


def check_progression(
    table: BracketTable[IsrBracket],
    tolerance: Amount = Decimal("0.25"),
) -> list:
    """List rows whose cuota fija does not continue the previous row.

    Row n+1 should start where row n ends:
    fixed_fee[n+1] == fixed_fee[n] + (lower[n+1] - lower[n]) * rate[n].
    Published tables carry cent-level rounding, hence the tolerance.
    Rates must also never decrease.

    Returns:
        List of ProgressionIssue (empty if the table is continuous)
    """
    tolerance = to_decimal(tolerance)
    issues = []
    for i, (row, nxt) in enumerate(zip(table.rows, table.rows[1:])):
        expected = row.fixed_fee + (nxt.lower_limit - row.lower_limit) * row.rate_on_excess
        if abs(nxt.fixed_fee - expected) > tolerance or nxt.rate_on_excess < row.rate_on_excess:
            issues.append(ProgressionIssue(row_index=i + 1, expected_fixed_fee=expected, fixed_fee=nxt.fixed_fee))
    return issues
