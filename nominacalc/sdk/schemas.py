"""Pydantic schemas for nomina-calc data validation.

All schemas use extra='forbid' to reject unknown fields, so a typo in a
fiscal table or a stored formula row is a clear error rather than a silently
ignored value. Money, rates and quantities are Decimal.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


ConceptType = Literal["PERCEPTION", "DEDUCTION"]
ExemptLimitType = Literal["UMA", "UMA_MONTHLY", "SMG", "FIXED"]
PeriodType = Literal["WEEKLY", "BIWEEKLY", "MONTHLY"]
RiskClass = Literal["CLASE_I", "CLASE_II", "CLASE_III", "CLASE_IV", "CLASE_V"]
LiquidationType = Literal["FINIQUITO", "LIQUIDACION", "RESCISION"]
FiscalConceptType = Literal[
    "ISR",
    "ISR_SUBSIDIO",
    "IMSS_EMPLOYEE",
    "IMSS_EMPLOYER",
    "INFONAVIT",
    "FORMULA",
]

PERIOD_DAYS = {
    "WEEKLY": 7,
    "BIWEEKLY": 15,
    "MONTHLY": 30,
}


# =============================================================================
# Formula versions
# =============================================================================


class CalculationFormula(BaseModel):
    """One version of the expression that computes a payroll concept.

    Rows are scoped by (company_id, concept_code). A row applies either to a
    whole fiscal year or to a half-open date window [valid_from, valid_to).
    Once superseded (is_active False) a row is never changed again.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., description="Row identifier")
    company_id: str = Field(..., min_length=1)
    concept_code: str = Field(..., min_length=1, description="Payroll concept code, e.g. P001")
    concept_type: ConceptType = Field(..., description="PERCEPTION or DEDUCTION")
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    expression: str = Field(..., min_length=1, description="Formula in the sandboxed expression language")
    is_taxable: bool = Field(default=True, description="Subject to ISR")
    is_exempt: bool = Field(default=False, description="Fully exempt regardless of limit")
    exempt_limit: Optional[Decimal] = Field(default=None, ge=0, description="Exempt limit multiplier or amount")
    exempt_limit_type: Optional[ExemptLimitType] = None
    sat_concept_key: Optional[str] = Field(default=None, description="SAT catalog key for the concept")
    fiscal_year: Optional[int] = Field(default=None, ge=2000, le=2100)
    valid_from: Optional[date] = Field(default=None, description="Inclusive start date")
    valid_to: Optional[date] = Field(default=None, description="Exclusive end date (None = open)")
    version: int = Field(default=1, ge=1)
    is_active: bool = True
    created_at: datetime
    created_by: Optional[str] = None
    superseded_at: Optional[datetime] = None
    superseded_by: Optional[str] = Field(default=None, description="Id of the row that replaced this one")

    @model_validator(mode="after")
    def check_window(self) -> "CalculationFormula":
        if self.valid_to and not self.valid_from:
            raise ValueError("valid_to requires valid_from; a row without valid_from never expires")
        if self.valid_from and self.valid_to and self.valid_to <= self.valid_from:
            raise ValueError(
                f"valid_to ({self.valid_to}) must be after valid_from ({self.valid_from})"
            )
        if self.exempt_limit is not None and self.exempt_limit > 0 and self.exempt_limit_type is None:
            raise ValueError("exempt_limit_type is required when exempt_limit is set")
        return self


# =============================================================================
# Fiscal tables
# =============================================================================


class IsrBracket(BaseModel):
    """Single row of an ISR withholding table (LISR Art. 96)."""

    model_config = ConfigDict(extra="forbid")

    lower_limit: Decimal = Field(..., ge=0, description="Limite inferior")
    upper_limit: Optional[Decimal] = Field(default=None, description="Limite superior (None = en adelante)")
    fixed_fee: Decimal = Field(..., ge=0, description="Cuota fija")
    rate_on_excess: Decimal = Field(..., ge=0, le=1, description="Porcentaje sobre excedente, as decimal")

    @model_validator(mode="after")
    def check_limits(self) -> "IsrBracket":
        if self.upper_limit is not None and self.upper_limit < self.lower_limit:
            raise ValueError(f"upper_limit {self.upper_limit} < lower_limit {self.lower_limit}")
        return self


class SubsidyBracket(BaseModel):
    """Single row of a Subsidio al Empleo table."""

    model_config = ConfigDict(extra="forbid")

    lower_limit: Decimal = Field(..., ge=0)
    upper_limit: Optional[Decimal] = None
    subsidy_amount: Decimal = Field(..., ge=0, description="Flat subsidy for the row")

    @model_validator(mode="after")
    def check_limits(self) -> "SubsidyBracket":
        if self.upper_limit is not None and self.upper_limit < self.lower_limit:
            raise ValueError(f"upper_limit {self.upper_limit} < lower_limit {self.lower_limit}")
        return self


class ImssRate(BaseModel):
    """Employer/employee rate pair for one IMSS branch."""

    model_config = ConfigDict(extra="forbid")

    concept: str = Field(..., description="Branch identifier, e.g. invalidez_vida")
    employer_rate: Decimal = Field(default=Decimal("0"), ge=0, le=1)
    employee_rate: Decimal = Field(default=Decimal("0"), ge=0, le=1)
    base: Literal["SBC", "UMA", "EXCESS_3UMA"] = Field(
        default="SBC",
        description="SBC, UMA (fixed quota) or the SBC excess over 3 UMA",
    )


class FiscalValues(BaseModel):
    """Reference values published for a fiscal year."""

    model_config = ConfigDict(extra="forbid")

    year: int
    uma_daily: Decimal = Field(..., gt=0)
    uma_monthly: Decimal = Field(..., gt=0)
    uma_yearly: Decimal = Field(..., gt=0)
    smg_daily: Decimal = Field(..., gt=0, description="Salario minimo general")
    smg_zfn_daily: Optional[Decimal] = Field(default=None, gt=0, description="Salario minimo zona libre frontera norte")
    aguinaldo_days: int = Field(default=15, ge=15)
    vacation_premium_percent: Decimal = Field(default=Decimal("0.25"), ge=Decimal("0.25"), le=1)
    sbc_cap_uma: int = Field(default=25, gt=0, description="SBC cap in UMA days")


class FiscalTableSet(BaseModel):
    """Everything loaded from one fiscal-tables/YYYY.yaml file."""

    model_config = ConfigDict(extra="forbid")

    year: int
    fiscal_values: FiscalValues
    isr: Dict[PeriodType, List[IsrBracket]]
    subsidy: Dict[PeriodType, List[SubsidyBracket]] = Field(default_factory=dict)
    imss: List[ImssRate]
    risk_classes: Dict[RiskClass, Decimal] = Field(default_factory=dict)


# =============================================================================
# Payroll inputs
# =============================================================================


class EmployeeSnapshot(BaseModel):
    """The employee data a calculation reads."""

    model_config = ConfigDict(extra="forbid")

    id: str
    employee_number: Optional[str] = None
    rfc: Optional[str] = None
    base_salary: Decimal = Field(..., ge=0, description="Monthly base salary")
    daily_salary: Optional[Decimal] = Field(default=None, ge=0)
    sbc: Optional[Decimal] = Field(default=None, ge=0, description="Salario base de cotizacion")
    hire_date: date
    risk_class: Optional[RiskClass] = None


class PeriodSnapshot(BaseModel):
    """The payroll period a calculation runs for."""

    model_config = ConfigDict(extra="forbid")

    id: str
    period_type: PeriodType
    year: int
    start_date: date
    end_date: date
    payment_date: Optional[date] = None

    @model_validator(mode="after")
    def check_dates(self) -> "PeriodSnapshot":
        if self.end_date < self.start_date:
            raise ValueError(f"end_date {self.end_date} is before start_date {self.start_date}")
        return self

    @property
    def days(self) -> int:
        return PERIOD_DAYS[self.period_type]


# =============================================================================
# Audit
# =============================================================================


class FiscalAuditEntry(BaseModel):
    """Immutable record of one fiscal calculation.

    Carries the inputs, the rule identity and the intermediate values used,
    so the amount can be recomputed later from the entry alone.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    payroll_detail_id: str = Field(..., description="Employee line within a payroll run")
    calculation_id: Optional[str] = Field(
        default=None, description="Shared by the entries written by one calculation of the detail"
    )
    period_id: Optional[str] = None
    concept_type: FiscalConceptType
    concept_code: str
    input_values: Dict[str, Any] = Field(default_factory=dict)
    calculation_base: Decimal
    limit_inferior: Optional[Decimal] = None
    excedente: Optional[Decimal] = None
    impuesto_marginal: Optional[Decimal] = None
    cuota_fija: Optional[Decimal] = None
    result_amount: Decimal
    rule_applied: str = Field(..., description="Legal rule or formula id applied")
    rule_version: str
    table_used: Optional[str] = None
    fiscal_year: int
    period_type: PeriodType
    calculated_at: datetime
    calculated_by: Optional[str] = None
    input_snapshot: Optional[Dict[str, Any]] = None
    output_snapshot: Optional[Dict[str, Any]] = None
    applied_rules_snapshot: Optional[Dict[str, Any]] = None
    snapshot_hash: Optional[str] = None


# =============================================================================
# Payroll run input
# =============================================================================


class PayrollRunEmployee(EmployeeSnapshot):
    """An employee line of a payroll run file."""

    variables: Dict[str, Any] = Field(
        default_factory=dict, description="Formula variable overrides, e.g. workedDays, custom1"
    )

    def snapshot(self) -> EmployeeSnapshot:
        return EmployeeSnapshot.model_validate(self.model_dump(exclude={"variables"}))


class PayrollRunFile(BaseModel):
    """YAML input of ``nomina-calc payroll run``."""

    model_config = ConfigDict(extra="forbid")

    period: PeriodSnapshot
    employees: List[PayrollRunEmployee] = Field(..., min_length=1)
