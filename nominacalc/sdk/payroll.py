"""Payroll run: resolve, evaluate, tax and audit every employee of a period.

For one employee:
1. Resolve each concept's formula in effect on the payment date.
2. Evaluate perceptions, then deductions (deductions can read the
   perception totals). A concept that fails is logged and skipped.
3. ISR on the taxable total, credited with Subsidio al Empleo.
4. IMSS worker and employer quotas on the SBC.
5. Every amount above is recorded as an audit entry with its snapshot,
   only once all of them were computed. Entries of one call share a
   calculation_id; re-running a detail supersedes its earlier entries in
   period summaries.

A period run does this for each employee in a bounded thread pool. Period
totals are read back from the persisted audit entries once all employees
are done, never accumulated across threads.
"""

import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from .audit import (
    AuditRecorder,
    PeriodSummary,
    bracket_rules_snapshot,
    build_input_snapshot,
    build_output_snapshot,
    formula_rules_snapshot,
    imss_rules_snapshot,
    to_json_data,
)
from .config import get_company_config
from .formulas import FormulaError, FormulaEvaluator, build_formula_context
from .rounding import RoundingPolicyCache
from .schemas import CalculationFormula, EmployeeSnapshot, PeriodSnapshot
from .taxes import (
    IMSS_EMPLOYEE_RULE,
    IMSS_EMPLOYER_RULE,
    INFONAVIT_RULE,
    ISR_RULE,
    SUBSIDY_RULE,
    FiscalTableProvider,
    FiscalTables,
    ImssResult,
    NetIsrResult,
    calculate_imss,
    calculate_isr_with_subsidy,
)
from .versions import FormulaStore

# Configure logging based on LOG_LEVEL environment variable
_log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, _log_level, logging.INFO),
    format="%(asctime)s.%(msecs)03d %(levelname)s: %(message)s",
    datefmt="%H:%M:%S"
)
logger = logging.getLogger(__name__)

ISR_CONCEPT_CODE = "D002"
IMSS_CONCEPT_CODE = "D001"
SUBSIDY_CONCEPT_CODE = "P048"
IMSS_EMPLOYER_CONCEPT_CODE = "IMSS_PATRON"
INFONAVIT_CONCEPT_CODE = "INFONAVIT"

DEFAULT_MAX_WORKERS = 4


@dataclass
class ConceptAmount:
    concept_code: str
    concept_type: str
    name: str
    formula_id: str
    formula_version: int
    value: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal
    variables: Dict[str, Optional[Decimal]] = field(default_factory=dict)


@dataclass
class SkippedConcept:
    concept_code: str
    reason: str


@dataclass
class EmployeeCalculation:
    """Everything computed for one employee in one period."""

    employee_id: str
    payroll_detail_id: str
    calculation_id: Optional[str] = None
    perceptions: List[ConceptAmount] = field(default_factory=list)
    deductions: List[ConceptAmount] = field(default_factory=list)
    skipped: List[SkippedConcept] = field(default_factory=list)
    isr: Optional[NetIsrResult] = None
    imss: Optional[ImssResult] = None
    audit_entry_ids: List[str] = field(default_factory=list)

    @property
    def total_perceptions(self) -> Decimal:
        return sum((c.value for c in self.perceptions), Decimal(0))

    @property
    def taxable_income(self) -> Decimal:
        return sum((c.taxable_amount for c in self.perceptions), Decimal(0))

    @property
    def total_deductions(self) -> Decimal:
        total = sum((c.value for c in self.deductions), Decimal(0))
        if self.isr:
            total += self.isr.net_isr
        if self.imss:
            total += self.imss.employee_total
        return total

    @property
    def net_pay(self) -> Decimal:
        return self.total_perceptions - self.total_deductions


@dataclass
class PeriodRunResult:
    period_id: str
    calculations: List[EmployeeCalculation]
    failures: Dict[str, str]
    summary: PeriodSummary


class PayrollEngine:
    """Runs payroll calculations for a company against stored formulas.

    Collaborators default to file-backed instances under ``data_dir``. The
    rounding cache and table provider are owned by the engine; call
    ``invalidate_company`` after changing a company's configuration.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        store: Optional[FormulaStore] = None,
        recorder: Optional[AuditRecorder] = None,
        tables: Optional[FiscalTableProvider] = None,
        rounding_cache: Optional[RoundingPolicyCache] = None,
        calculated_by: Optional[str] = None,
    ):
        self.recorder = recorder or AuditRecorder(data_dir)
        self.store = store or FormulaStore(data_dir, is_referenced=self.recorder.is_rule_referenced)
        self.tables = tables or FiscalTableProvider()
        self.rounding_cache = rounding_cache or RoundingPolicyCache()
        self.calculated_by = calculated_by

    def invalidate_company(self, company_id: str) -> None:
        self.rounding_cache.invalidate(company_id)

    # -------------------------------------------------------------------------
    # One employee
    # -------------------------------------------------------------------------

    def calculate_employee(
        self,
        company_id: str,
        employee: EmployeeSnapshot,
        period: PeriodSnapshot,
        variables: Optional[Dict[str, Any]] = None,
        payroll_detail_id: Optional[str] = None,
    ) -> EmployeeCalculation:
        """Compute and audit all concepts and taxes for one employee.

        Args:
            company_id: Company whose formulas and rounding policy apply
            employee: Employee data as of the period
            period: Payroll period
            variables: Formula variable overrides (workedDays, custom1, ...)
            payroll_detail_id: Id of the employee line (default: <period>-<employee>)

        Raises:
            FiscalTableNotFoundError: If no fiscal tables cover the period year
            ValueError: If ``variables`` names an unknown formula variable
        """
        detail_id = payroll_detail_id or f"{period.id}-{employee.id}"
        policy = self.rounding_cache.get(company_id)
        evaluator = FormulaEvaluator(policy)
        tables = self.tables.get(period.year)
        overrides = dict(variables or {})
        context = build_formula_context(employee, period, tables.fiscal_values, **overrides)
        target_date = period.payment_date or period.end_date

        result = EmployeeCalculation(
            employee_id=employee.id,
            payroll_detail_id=detail_id,
            calculation_id=uuid.uuid4().hex,
        )

        formulas = []
        for concept_code in self.store.list_concepts(company_id):
            resolved = self.store.resolve_formula_for_date(company_id, concept_code, target_date)
            if resolved is not None:
                formulas.append(resolved.formula)

        for formula in (f for f in formulas if f.concept_type == "PERCEPTION"):
            amount = self._evaluate_concept(formula, evaluator, context, tables, result)
            if amount:
                result.perceptions.append(amount)

        if "totalPerceptions" not in overrides:
            context["totalPerceptions"] = result.total_perceptions
        if "taxableIncome" not in overrides:
            context["taxableIncome"] = result.taxable_income

        for formula in (f for f in formulas if f.concept_type == "DEDUCTION"):
            amount = self._evaluate_concept(formula, evaluator, context, tables, result)
            if amount:
                result.deductions.append(amount)

        result.isr = calculate_isr_with_subsidy(
            result.taxable_income,
            tables.isr_table(period.period_type),
            tables.subsidy_table(period.period_type),
            policy,
        )

        risk_class = employee.risk_class or get_company_config(company_id).get("risk_class")
        sbc = employee.sbc if employee.sbc is not None else context["integratedSalary"]
        days = int(context["workedDays"].to_integral_value())
        result.imss = calculate_imss(
            sbc,
            days,
            tables.imss_rates,
            tables.fiscal_values,
            risk_class=risk_class,
            risk_classes=tables.risk_classes,
            rounding=policy,
        )

        # Nothing is recorded until every amount has been computed
        now = datetime.now(timezone.utc)
        for amount, formula in self._paired(result, formulas):
            self._record_formula(result, employee, period, tables, policy, formula, amount, context, now)
        self._record_isr(result, employee, period, tables, policy, now)
        self._record_imss(result, employee, period, tables, policy, sbc, days, risk_class, now)

        logger.info(
            f"{detail_id}: perceptions {result.total_perceptions}, "
            f"ISR {result.isr.net_isr}, IMSS {result.imss.employee_total}, net {result.net_pay}"
        )
        return result

    def _evaluate_concept(
        self,
        formula: CalculationFormula,
        evaluator: FormulaEvaluator,
        context: Dict[str, Any],
        tables: FiscalTables,
        result: EmployeeCalculation,
    ) -> Optional[ConceptAmount]:
        try:
            outcome = evaluator.evaluate_with_exemption(
                formula.expression,
                context,
                is_taxable=formula.is_taxable,
                exempt_limit=formula.exempt_limit,
                exempt_limit_type=formula.exempt_limit_type,
                is_exempt=formula.is_exempt,
                fiscal_values=tables.fiscal_values,
            )
        except FormulaError as e:
            logger.warning(
                f"Skipping concept {formula.concept_code} for {result.payroll_detail_id}: {e}"
            )
            result.skipped.append(SkippedConcept(formula.concept_code, str(e)))
            return None

        return ConceptAmount(
            concept_code=formula.concept_code,
            concept_type=formula.concept_type,
            name=formula.name,
            formula_id=formula.id,
            formula_version=formula.version,
            value=outcome.value,
            taxable_amount=outcome.taxable_amount,
            exempt_amount=outcome.exempt_amount,
            variables=outcome.variables,
        )

    @staticmethod
    def _paired(result: EmployeeCalculation, formulas: List[CalculationFormula]):
        by_id = {f.id: f for f in formulas}
        for amount in result.perceptions + result.deductions:
            yield amount, by_id[amount.formula_id]

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def _record(self, result: EmployeeCalculation, period: PeriodSnapshot, input_snapshot, output_snapshot,
                rules_snapshot, **fields) -> None:
        entry = self.recorder.new_entry(
            payroll_detail_id=result.payroll_detail_id,
            calculation_id=result.calculation_id,
            period_id=period.id,
            fiscal_year=period.year,
            period_type=period.period_type,
            calculated_by=self.calculated_by,
            **fields,
        )
        entry = self.recorder.record_with_snapshot(entry, input_snapshot, output_snapshot, rules_snapshot)
        result.audit_entry_ids.append(entry.id)

    def _record_formula(self, result, employee, period, tables, policy, formula, amount, context, now) -> None:
        variables = to_json_data(amount.variables)
        self._record(
            result,
            period,
            build_input_snapshot(employee, period, tables.fiscal_values, {"variables": variables}, now),
            build_output_snapshot(amount.value, {
                "taxable_amount": amount.taxable_amount,
                "exempt_amount": amount.exempt_amount,
            }),
            formula_rules_snapshot(formula, policy),
            concept_type="FORMULA",
            concept_code=formula.concept_code,
            input_values=variables,
            calculation_base=amount.value,
            result_amount=amount.value,
            rule_applied=formula.id,
            rule_version=str(formula.version),
        )

    def _record_isr(self, result, employee, period, tables, policy, now) -> None:
        net = result.isr
        isr = net.isr
        calculation = {"base": isr.base}
        self._record(
            result,
            period,
            build_input_snapshot(employee, period, tables.fiscal_values, calculation, now),
            build_output_snapshot(isr.isr, {
                "limite_inferior": isr.limit_inferior,
                "excedente": isr.excedente,
                "tasa": isr.tasa,
                "impuesto_marginal": isr.impuesto_marginal,
                "cuota_fija": isr.cuota_fija,
                "subsidio_aplicado": net.subsidy_applied,
                "isr_neto": net.net_isr,
            }),
            bracket_rules_snapshot(ISR_RULE, tables.isr_table(period.period_type), policy),
            concept_type="ISR",
            concept_code=ISR_CONCEPT_CODE,
            input_values=to_json_data({"taxable_income": isr.base}),
            calculation_base=isr.base,
            limit_inferior=isr.limit_inferior,
            excedente=isr.excedente,
            impuesto_marginal=isr.impuesto_marginal,
            cuota_fija=isr.cuota_fija,
            result_amount=isr.isr,
            rule_applied=ISR_RULE,
            rule_version=str(tables.year),
            table_used=isr.table_used,
        )

        if net.subsidy is not None:
            subsidy = net.subsidy
            self._record(
                result,
                period,
                build_input_snapshot(employee, period, tables.fiscal_values, calculation, now),
                build_output_snapshot(subsidy.subsidy, {"subsidio_aplicado": net.subsidy_applied}),
                bracket_rules_snapshot(SUBSIDY_RULE, tables.subsidy_table(period.period_type), policy),
                concept_type="ISR_SUBSIDIO",
                concept_code=SUBSIDY_CONCEPT_CODE,
                input_values=to_json_data({"taxable_income": subsidy.base}),
                calculation_base=subsidy.base,
                limit_inferior=subsidy.limit_inferior,
                result_amount=subsidy.subsidy,
                rule_applied=SUBSIDY_RULE,
                rule_version=str(tables.year),
                table_used=subsidy.table_used,
            )

    def _record_imss(self, result, employee, period, tables, policy, sbc, days, risk_class, now) -> None:
        imss = result.imss
        calculation = {"sbc": sbc, "days": days, "risk_class": risk_class}
        input_snapshot = build_input_snapshot(employee, period, tables.fiscal_values, calculation, now)
        breakdown = {
            quota.concept: {
                "daily_base": quota.daily_base,
                "employer": quota.employer_amount,
                "employee": quota.employee_amount,
            }
            for quota in imss.concepts
        }
        table_used = f"IMSS_{tables.year}"

        parts = [
            ("IMSS_EMPLOYEE", IMSS_CONCEPT_CODE, IMSS_EMPLOYEE_RULE, imss.employee_total),
            ("IMSS_EMPLOYER", IMSS_EMPLOYER_CONCEPT_CODE, IMSS_EMPLOYER_RULE, imss.employer_total),
        ]
        if imss.concept("infonavit") is not None:
            parts.append(("INFONAVIT", INFONAVIT_CONCEPT_CODE, INFONAVIT_RULE, imss.infonavit))

        for concept_type, concept_code, rule, amount in parts:
            self._record(
                result,
                period,
                input_snapshot,
                build_output_snapshot(amount, breakdown),
                imss_rules_snapshot(rule, tables, policy),
                concept_type=concept_type,
                concept_code=concept_code,
                input_values=to_json_data(calculation),
                calculation_base=imss.capped_sbc,
                result_amount=amount,
                rule_applied=rule,
                rule_version=str(tables.year),
                table_used=table_used,
            )

    # -------------------------------------------------------------------------
    # Whole period
    # -------------------------------------------------------------------------

    def run_period(
        self,
        company_id: str,
        employees: List[EmployeeSnapshot],
        period: PeriodSnapshot,
        variables_by_employee: Optional[Dict[str, Dict[str, Any]]] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> PeriodRunResult:
        """Calculate every employee of a period.

        An employee whose calculation fails is logged and listed in
        ``failures``; the others are unaffected. Totals come from the audit
        entries persisted for the period.
        """
        variables_by_employee = variables_by_employee or {}
        max_workers = max(1, min(max_workers, len(employees) or 1))

        # Warm shared caches before fanning out
        self.rounding_cache.get(company_id)
        self.tables.get(period.year)

        failures: Dict[str, str] = {}
        calculations: List[EmployeeCalculation] = []

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = [
                (
                    employee,
                    pool.submit(
                        self.calculate_employee,
                        company_id,
                        employee,
                        period,
                        variables_by_employee.get(employee.id),
                    ),
                )
                for employee in employees
            ]
            for employee, future in futures:
                try:
                    calculations.append(future.result())
                except Exception as e:
                    logger.exception(f"Payroll calculation failed for employee {employee.id}")
                    failures[employee.id] = str(e)

        summary = self.recorder.summarize_period(period.id)
        logger.info(
            f"Period {period.id}: {len(calculations)} calculated, {len(failures)} failed, "
            f"{summary.entries} audit entries"
        )
        return PeriodRunResult(
            period_id=period.id,
            calculations=calculations,
            failures=failures,
            summary=summary,
        )

