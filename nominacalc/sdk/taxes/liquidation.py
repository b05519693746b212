"""Severance settlement: finiquito and liquidacion.

Every settlement pays what the employee already earned (LFT Arts. 76, 80, 87):

    pending salary       daily salary * pending days (default: day of month)
    aguinaldo            daily salary * aguinaldo days * worked days / 365
    vacation             daily salary * vacation days * worked days / 365
    vacation premium     vacation * vacation premium percent

Depending on the type of separation it adds:

    indemnity (90 days)  integrated salary * 90                  LIQUIDACION
    indemnity (20 days)  integrated salary * 20 * years          LIQUIDACION
    seniority premium    12 days * years, capped at 2 x SMG      LIQUIDACION, RESCISION,
                                                                 FINIQUITO after 15 years

ISR (LISR Arts. 93, 95, 96):
- aguinaldo is exempt up to 30 UMA, vacation premium up to 15 UMA, and the
  separation payments up to 90 UMA per year of service (a fraction over six
  months counts as a year)
- ordinary taxable income is taxed on the monthly table as one payment
- taxable separation income up to the last monthly salary joins the
  ordinary income; above it, it is taxed at the effective rate of the last
  monthly salary (ISR of that salary / that salary)
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Union

from ..formulas.context import completed_years, integration_factor, vacation_days_for_years
from ..rounding import PRECISION, RoundingPolicy, round_value, to_decimal
from ..schemas import EmployeeSnapshot, LiquidationType
from .isr import IsrResult, calculate_isr
from .tables import FiscalTables

logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, float, str]

LIQUIDATION_TYPES = ("FINIQUITO", "LIQUIDACION", "RESCISION")

INDEMNITY_DAYS = 90
INDEMNITY_DAYS_PER_YEAR = 20
SENIORITY_PREMIUM_DAYS_PER_YEAR = 12
SENIORITY_PREMIUM_CAP_SMG = 2
VOLUNTARY_SENIORITY_MIN_YEARS = 15

AGUINALDO_EXEMPT_UMA = 30
VACATION_PREMIUM_EXEMPT_UMA = 15
SEPARATION_EXEMPT_UMA_PER_YEAR = 90

_ZERO = Decimal(0)
_DAYS_IN_YEAR = Decimal(365)


@dataclass
class LiquidationResult:
    """Breakdown of a settlement, its exemptions and its ISR."""

    liquidation_type: str
    employee_id: str
    hire_date: date
    termination_date: date
    days_of_service: int
    years_of_service: int
    exempt_service_years: int
    daily_salary: Decimal
    integrated_salary: Decimal
    worked_days_this_year: int

    pending_salary_days: Decimal
    pending_salary: Decimal
    aguinaldo_days: Decimal
    proportional_aguinaldo: Decimal
    vacation_days: Decimal
    proportional_vacation: Decimal
    vacation_premium: Decimal

    indemnity_90_days: Decimal
    indemnity_20_days: Decimal
    seniority_premium_days: int
    seniority_premium: Decimal

    aguinaldo_exempt: Decimal
    vacation_premium_exempt: Decimal
    separation_exempt: Decimal
    ordinary_taxable: Decimal
    separation_taxable: Decimal
    separation_as_ordinary: bool
    ordinary_isr: IsrResult
    separation_rate: Decimal
    separation_isr: Decimal
    other_deductions: Decimal

    @property
    def separation_total(self) -> Decimal:
        return self.indemnity_90_days + self.indemnity_20_days + self.seniority_premium

    @property
    def gross_total(self) -> Decimal:
        return (
            self.pending_salary
            + self.proportional_aguinaldo
            + self.proportional_vacation
            + self.vacation_premium
            + self.separation_total
        )

    @property
    def isr_total(self) -> Decimal:
        return self.ordinary_isr.isr + self.separation_isr

    @property
    def total_deductions(self) -> Decimal:
        return self.isr_total + self.other_deductions

    @property
    def net_total(self) -> Decimal:
        return self.gross_total - self.total_deductions


def _add_years(start: date, years: int) -> date:
    try:
        return start.replace(year=start.year + years)
    except ValueError:
        # Feb 29 anniversary in a non-leap year
        return start.replace(year=start.year + years, day=28)


def exempt_service_years(hire_date: date, termination_date: date) -> int:
    """Years of service for the separation exemption; a fraction over six months counts as one."""
    years = completed_years(hire_date, termination_date)
    remainder = (termination_date - _add_years(hire_date, years)).days
    return years + 1 if remainder > 182 else years


def _exempt_part(amount: Decimal, limit: Decimal) -> Decimal:
    return max(_ZERO, min(amount, limit))


def calculate_liquidation(
    employee: EmployeeSnapshot,
    termination_date: date,
    liquidation_type: LiquidationType,
    tables: FiscalTables,
    rounding: Optional[RoundingPolicy] = None,
    pending_salary_days: Optional[Amount] = None,
    pending_vacation_days: Optional[Amount] = None,
    other_deductions: Amount = 0,
) -> LiquidationResult:
    """Compute a finiquito or liquidacion for an employee.

    Args:
        employee: Employee data as of the termination date
        termination_date: Last day of the labor relationship
        liquidation_type: FINIQUITO (resignation), LIQUIDACION (unjustified
            dismissal) or RESCISION (justified dismissal)
        tables: Fiscal tables of the termination year
        rounding: Rounding policy for currency amounts
        pending_salary_days: Days worked and not yet paid (default: the
            termination day of month)
        pending_vacation_days: Vacation days earned and not taken (default:
            the yearly entitlement prorated by days worked this year)
        other_deductions: Loans, INFONAVIT balance and other amounts withheld

    Raises:
        ValueError: If the type is unknown, the termination date is not after
            the hire date, or an amount is negative
    """
    if liquidation_type not in LIQUIDATION_TYPES:
        raise ValueError(f"Unknown liquidation type {liquidation_type!r}; expected one of {', '.join(LIQUIDATION_TYPES)}")
    if termination_date <= employee.hire_date:
        raise ValueError(f"Termination date {termination_date} must be after hire date {employee.hire_date}")

    rounding = rounding or RoundingPolicy()
    fiscal = tables.fiscal_values
    days_precision = PRECISION["DAYS"]

    daily_salary = employee.daily_salary
    if daily_salary is None:
        daily_salary = round_value(employee.base_salary / Decimal(30), PRECISION["SALARY_DAILY"])

    days_of_service = (termination_date - employee.hire_date).days
    years = completed_years(employee.hire_date, termination_date)
    entitlement = vacation_days_for_years(years)

    integrated = employee.sbc
    if integrated is None:
        integrated = round_value(
            daily_salary * integration_factor(fiscal, entitlement), PRECISION["SALARY_DAILY"]
        )

    year_start = max(date(termination_date.year, 1, 1), employee.hire_date)
    worked_this_year = (termination_date - year_start).days + 1
    year_fraction = Decimal(worked_this_year) / _DAYS_IN_YEAR

    # Earned amounts
    pending_days = to_decimal(termination_date.day if pending_salary_days is None else pending_salary_days)
    aguinaldo_days = round_value(year_fraction * fiscal.aguinaldo_days, days_precision)
    if pending_vacation_days is None:
        vacation_days = round_value(year_fraction * entitlement, days_precision)
    else:
        vacation_days = to_decimal(pending_vacation_days)
    deductions = to_decimal(other_deductions)
    if pending_days < 0 or vacation_days < 0 or deductions < 0:
        raise ValueError("Pending days and deductions cannot be negative")

    pending_salary = rounding.apply(daily_salary * pending_days)
    aguinaldo = rounding.apply(daily_salary * aguinaldo_days)
    vacation = rounding.apply(daily_salary * vacation_days)
    premium = rounding.apply(vacation * fiscal.vacation_premium_percent)

    # Separation payments
    indemnity_90 = indemnity_20 = _ZERO
    if liquidation_type == "LIQUIDACION":
        indemnity_90 = rounding.apply(integrated * INDEMNITY_DAYS)
        indemnity_20 = rounding.apply(integrated * INDEMNITY_DAYS_PER_YEAR * years)

    seniority_days = 0
    seniority_premium = _ZERO
    if liquidation_type != "FINIQUITO" or years >= VOLUNTARY_SENIORITY_MIN_YEARS:
        seniority_days = SENIORITY_PREMIUM_DAYS_PER_YEAR * years
        capped_daily = min(daily_salary, fiscal.smg_daily * SENIORITY_PREMIUM_CAP_SMG)
        seniority_premium = rounding.apply(capped_daily * seniority_days)

    # Exemptions
    uma = fiscal.uma_daily
    service_years = exempt_service_years(employee.hire_date, termination_date)
    aguinaldo_exempt = rounding.apply(_exempt_part(aguinaldo, uma * AGUINALDO_EXEMPT_UMA))
    premium_exempt = rounding.apply(_exempt_part(premium, uma * VACATION_PREMIUM_EXEMPT_UMA))
    separation = indemnity_90 + indemnity_20 + seniority_premium
    separation_exempt = rounding.apply(
        _exempt_part(separation, uma * SEPARATION_EXEMPT_UMA_PER_YEAR * service_years)
    )
    separation_taxable = separation - separation_exempt

    ordinary_taxable = pending_salary + vacation + (aguinaldo - aguinaldo_exempt) + (premium - premium_exempt)

    # ISR
    monthly_table = tables.isr_table("MONTHLY")
    last_monthly_salary = employee.base_salary
    separation_as_ordinary = _ZERO < separation_taxable <= last_monthly_salary
    if separation_as_ordinary:
        ordinary_taxable += separation_taxable

    ordinary_isr = calculate_isr(ordinary_taxable, monthly_table, rounding)

    separation_rate = _ZERO
    separation_isr = _ZERO
    if separation_taxable > 0 and not separation_as_ordinary and last_monthly_salary > 0:
        salary_isr = calculate_isr(last_monthly_salary, monthly_table, rounding).isr
        separation_rate = round_value(salary_isr / last_monthly_salary, PRECISION["PERCENTAGE"])
        separation_isr = rounding.apply(separation_taxable * separation_rate)

    result = LiquidationResult(
        liquidation_type=liquidation_type,
        employee_id=employee.id,
        hire_date=employee.hire_date,
        termination_date=termination_date,
        days_of_service=days_of_service,
        years_of_service=years,
        exempt_service_years=service_years,
        daily_salary=daily_salary,
        integrated_salary=integrated,
        worked_days_this_year=worked_this_year,
        pending_salary_days=pending_days,
        pending_salary=pending_salary,
        aguinaldo_days=aguinaldo_days,
        proportional_aguinaldo=aguinaldo,
        vacation_days=vacation_days,
        proportional_vacation=vacation,
        vacation_premium=premium,
        indemnity_90_days=indemnity_90,
        indemnity_20_days=indemnity_20,
        seniority_premium_days=seniority_days,
        seniority_premium=seniority_premium,
        aguinaldo_exempt=aguinaldo_exempt,
        vacation_premium_exempt=premium_exempt,
        separation_exempt=separation_exempt,
        ordinary_taxable=rounding.apply(ordinary_taxable),
        separation_taxable=rounding.apply(separation_taxable),
        separation_as_ordinary=separation_as_ordinary,
        ordinary_isr=ordinary_isr,
        separation_rate=separation_rate,
        separation_isr=separation_isr,
        other_deductions=rounding.apply(deductions),
    )
    logger.debug(
        f"{liquidation_type} for {employee.id}: gross {result.gross_total}, "
        f"ISR {result.isr_total}, net {result.net_total}"
    )
    return result
