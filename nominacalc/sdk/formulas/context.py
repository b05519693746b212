"""Variable vocabulary and context building for payroll formulas.

A formula can only read the variables listed in ``VARIABLES``. The runtime
values come from ``build_formula_context``, which derives them from an
employee snapshot, a period snapshot and the fiscal values of the year.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from ..rounding import PRECISION, round_value, to_decimal
from ..schemas import EmployeeSnapshot, FiscalValues, PeriodSnapshot


VARIABLES: Dict[str, str] = {
    "baseSalary": "Monthly base salary",
    "dailySalary": "Daily salary",
    "hourlyRate": "Hourly rate (daily salary / 8)",
    "integratedSalary": "Salario diario integrado (SBC)",
    "workedDays": "Days worked in the period",
    "periodDays": "Days in the period",
    "absenceDays": "Unexcused absences in the period",
    "overtimeHours": "Overtime hours",
    "doubleOvertimeHours": "Overtime hours paid double",
    "tripleOvertimeHours": "Overtime hours paid triple",
    "seniority": "Completed years of service",
    "seniorityDays": "Days of service",
    "vacationDays": "Vacation days for current seniority",
    "umaDaily": "UMA daily value",
    "umaMonthly": "UMA monthly value",
    "smgDaily": "Salario minimo general, daily",
    "totalPerceptions": "Total perceptions in the period",
    "taxableIncome": "Taxable income in the period",
    "totalDeductions": "Total deductions in the period",
    "custom1": "Custom value 1",
    "custom2": "Custom value 2",
    "custom3": "Custom value 3",
    "custom4": "Custom value 4",
    "custom5": "Custom value 5",
}

# Values used by FormulaEvaluator.test when the caller does not supply one
SAMPLE_CONTEXT: Dict[str, Decimal] = {
    "baseSalary": Decimal("15000"),
    "dailySalary": Decimal("500"),
    "hourlyRate": Decimal("62.5"),
    "integratedSalary": Decimal("520"),
    "workedDays": Decimal("15"),
    "periodDays": Decimal("15"),
    "absenceDays": Decimal("0"),
    "overtimeHours": Decimal("0"),
    "doubleOvertimeHours": Decimal("0"),
    "tripleOvertimeHours": Decimal("0"),
    "seniority": Decimal("2"),
    "seniorityDays": Decimal("730"),
    "vacationDays": Decimal("14"),
    "umaDaily": Decimal("113.14"),
    "umaMonthly": Decimal("3439.46"),
    "smgDaily": Decimal("278.80"),
    "totalPerceptions": Decimal("7500"),
    "taxableIncome": Decimal("7000"),
    "totalDeductions": Decimal("1500"),
    "custom1": Decimal("0"),
    "custom2": Decimal("0"),
    "custom3": Decimal("0"),
    "custom4": Decimal("0"),
    "custom5": Decimal("0"),
}

# LFT Art. 76 (2023 reform): completed years -> vacation days
_VACATION_DAYS = [
    (30, 32),
    (25, 30),
    (20, 28),
    (15, 26),
    (10, 24),
    (6, 22),
    (5, 20),
    (4, 18),
    (3, 16),
    (2, 14),
    (1, 12),
]

HOURS_PER_DAY = 8


def vacation_days_for_years(years: int) -> int:
    """Vacation days for a given number of completed years of service.

    Employees in their first year accrue the first-year entitlement.
    """
    for min_years, days in _VACATION_DAYS:
        if years >= min_years:
            return days
    return 12


def completed_years(start: date, as_of: date) -> int:
    years = as_of.year - start.year
    if (as_of.month, as_of.day) < (start.month, start.day):
        years -= 1
    return max(0, years)


def integration_factor(fiscal_values: FiscalValues, vacation_days: int) -> Decimal:
    """Factor that turns daily salary into salario diario integrado.

    1 + aguinaldo days / 365 + vacation days * vacation premium / 365
    """
    factor = (
        Decimal(1)
        + Decimal(fiscal_values.aguinaldo_days) / Decimal(365)
        + Decimal(vacation_days) * fiscal_values.vacation_premium_percent / Decimal(365)
    )
    return round_value(factor, PRECISION["PERCENTAGE"])


def build_formula_context(
    employee: EmployeeSnapshot,
    period: PeriodSnapshot,
    fiscal_values: FiscalValues,
    **extra: Any,
) -> Dict[str, Optional[Decimal]]:
    """Derive the formula variables for one employee in one period.

    Seniority is measured at the period end date so that recomputing a past
    period yields the same values. Keyword arguments override derived values
    (e.g. workedDays=13, overtimeHours=4, custom1=250); unknown names raise.

    Raises:
        ValueError: If an override names a variable outside the vocabulary
    """
    period_days = period.days
    daily_salary = employee.daily_salary
    if daily_salary is None:
        daily_salary = round_value(employee.base_salary / Decimal(30), PRECISION["SALARY_DAILY"])

    seniority_days = max(0, (period.end_date - employee.hire_date).days)
    seniority = completed_years(employee.hire_date, period.end_date)
    vacation_days = vacation_days_for_years(seniority)

    integrated = employee.sbc
    if integrated is None:
        integrated = round_value(
            daily_salary * integration_factor(fiscal_values, vacation_days),
            PRECISION["SALARY_DAILY"],
        )

    context: Dict[str, Optional[Decimal]] = {
        "baseSalary": employee.base_salary,
        "dailySalary": daily_salary,
        "hourlyRate": round_value(daily_salary / HOURS_PER_DAY, PRECISION["SALARY_DAILY"]),
        "integratedSalary": integrated,
        "workedDays": Decimal(period_days),
        "periodDays": Decimal(period_days),
        "absenceDays": Decimal(0),
        "overtimeHours": Decimal(0),
        "doubleOvertimeHours": Decimal(0),
        "tripleOvertimeHours": Decimal(0),
        "seniority": Decimal(seniority),
        "seniorityDays": Decimal(seniority_days),
        "vacationDays": Decimal(vacation_days),
        "umaDaily": fiscal_values.uma_daily,
        "umaMonthly": fiscal_values.uma_monthly,
        "smgDaily": fiscal_values.smg_daily,
        "totalPerceptions": None,
        "taxableIncome": None,
        "totalDeductions": None,
        "custom1": None,
        "custom2": None,
        "custom3": None,
        "custom4": None,
        "custom5": None,
    }

    unknown = sorted(set(extra) - set(VARIABLES))
    if unknown:
        raise ValueError(f"Unknown formula variables: {', '.join(unknown)}")

    for name, value in extra.items():
        context[name] = None if value is None else to_decimal(value)

    if "absenceDays" in extra and "workedDays" not in extra:
        context["workedDays"] = max(Decimal(0), Decimal(period_days) - context["absenceDays"])

    return context


# =============================================================================
# Formula templates
# =============================================================================

FORMULA_TEMPLATES = [
    {
        "concept_code": "P001",
        "concept_type": "PERCEPTION",
        "name": "Sueldo",
        "expression": "dailySalary * workedDays",
        "is_taxable": True,
        "sat_concept_key": "001",
    },
    {
        "concept_code": "P002",
        "concept_type": "PERCEPTION",
        "name": "Aguinaldo",
        "expression": "dailySalary * 15",
        "is_taxable": True,
        "exempt_limit": 30,
        "exempt_limit_type": "UMA",
        "sat_concept_key": "002",
    },
    {
        "concept_code": "P003",
        "concept_type": "PERCEPTION",
        "name": "Prima vacacional",
        "expression": "dailySalary * vacationDays * 0.25",
        "is_taxable": True,
        "exempt_limit": 15,
        "exempt_limit_type": "UMA",
        "sat_concept_key": "021",
    },
    {
        "concept_code": "P004",
        "concept_type": "PERCEPTION",
        "name": "Horas extra dobles",
        "expression": "hourlyRate * 2 * doubleOvertimeHours",
        "is_taxable": True,
        "exempt_limit": 5,
        "exempt_limit_type": "UMA",
        "sat_concept_key": "019",
    },
    {
        "concept_code": "P005",
        "concept_type": "PERCEPTION",
        "name": "Vales de despensa",
        "expression": "min(baseSalary * 0.10, umaMonthly * 0.40)",
        "is_taxable": True,
        "exempt_limit": "0.40",
        "exempt_limit_type": "UMA_MONTHLY",
        "sat_concept_key": "029",
    },
    {
        "concept_code": "P006",
        "concept_type": "PERCEPTION",
        "name": "Fondo de ahorro (aportacion patronal)",
        "expression": "min(baseSalary * 0.13, umaMonthly * 1.3) * periodDays / 30",
        "is_taxable": False,
        "sat_concept_key": "005",
    },
    {
        "concept_code": "D003",
        "concept_type": "DEDUCTION",
        "name": "Fondo de ahorro (aportacion empleado)",
        "expression": "min(baseSalary * 0.13, umaMonthly * 1.3) * periodDays / 30",
        "is_taxable": False,
        "sat_concept_key": "004",
    },
    {
        "concept_code": "D004",
        "concept_type": "DEDUCTION",
        "name": "Faltas",
        "expression": "dailySalary * absenceDays",
        "is_taxable": False,
        "sat_concept_key": "020",
    },
]


def get_template(concept_code: str) -> Optional[Dict[str, Any]]:
    for template in FORMULA_TEMPLATES:
        if template["concept_code"] == concept_code:
            return dict(template)
    return None
