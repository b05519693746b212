"""Tests for the formula language: parsing, evaluation and exemptions."""

from datetime import date
from decimal import Decimal

import pytest

from nominacalc.sdk.formulas import (
    FORMULA_TEMPLATES,
    SAMPLE_CONTEXT,
    VARIABLES,
    FormulaEvaluationError,
    FormulaEvaluator,
    FormulaValidationError,
    build_formula_context,
    completed_years,
    vacation_days_for_years,
)
from nominacalc.sdk.rounding import RoundingPolicy
from nominacalc.sdk.schemas import EmployeeSnapshot, FiscalValues, PeriodSnapshot
from nominacalc.sdk.taxes import load_fiscal_tables


@pytest.fixture
def evaluator():
    return FormulaEvaluator()


class TestValidate:
    """Tests for validate (parse-time checks only)."""

    def test_reports_variables_and_functions(self, evaluator):
        parsed = evaluator.validate("min(baseSalary * 0.10, umaMonthly * 0.40)")
        assert parsed.variables == {"baseSalary", "umaMonthly"}
        assert parsed.functions == {"min"}

    @pytest.mark.parametrize("expression", [
        "salary * 2",
        "dailySalary * unknownThing",
    ])
    def test_unknown_variable(self, evaluator, expression):
        with pytest.raises(FormulaValidationError) as exc:
            evaluator.validate(expression)
        assert "Unknown variable" in exc.value.errors[0]

    @pytest.mark.parametrize("expression", [
        "__import__('os')",
        "eval(dailySalary)",
        "dailySalary.__class__",
        "open(1)",
    ])
    def test_rejects_host_language_constructs(self, evaluator, expression):
        with pytest.raises(FormulaValidationError):
            evaluator.validate(expression)

    @pytest.mark.parametrize("expression", [
        "",
        "   ",
        "dailySalary *",
        "(dailySalary * 2",
        "dailySalary 2",
        "1..2",
        "round()",
        "proportional(1, 2)",
        "min(1)",
        "min",
        "seniority > 5 ? 1",
    ])
    def test_malformed(self, evaluator, expression):
        with pytest.raises(FormulaValidationError):
            evaluator.validate(expression)

    def test_too_long(self, evaluator):
        with pytest.raises(FormulaValidationError):
            evaluator.validate("1 + " * 300 + "1")

    def test_too_deep(self, evaluator):
        with pytest.raises(FormulaValidationError):
            evaluator.validate("(" * 40 + "1" + ")" * 40)

    def test_validate_never_evaluates(self, evaluator):
        """A division by zero is a runtime problem, not a validation one."""
        evaluator.validate("dailySalary / 0")


class TestEvaluate:
    """Tests for evaluate."""

    def test_arithmetic_precedence(self, evaluator):
        assert evaluator.evaluate("2 + 3 * 4", {}) == Decimal("14")
        assert evaluator.evaluate("(2 + 3) * 4", {}) == Decimal("20")
        assert evaluator.evaluate("-2 * 3", {}) == Decimal("-6")
        assert evaluator.evaluate("10 % 4", {}) == Decimal("2")

    def test_variables(self, evaluator):
        result = evaluator.evaluate("dailySalary * workedDays", {"dailySalary": 500, "workedDays": 15})
        assert result == Decimal("7500")

    def test_decimal_exactness(self, evaluator):
        assert evaluator.evaluate("0.1 + 0.2", {}) == Decimal("0.3")

    def test_conditional_and_logic(self, evaluator):
        expr = "seniority >= 5 && absenceDays == 0 ? 100 : 50"
        assert evaluator.evaluate(expr, {"seniority": 6, "absenceDays": 0}) == Decimal("100")
        assert evaluator.evaluate(expr, {"seniority": 6, "absenceDays": 1}) == Decimal("50")
        assert evaluator.evaluate("!(seniority > 1)", {"seniority": 0}) == Decimal("1")

    def test_short_circuit_skips_division(self, evaluator):
        expr = "absenceDays > 0 && dailySalary / absenceDays > 1"
        assert evaluator.evaluate(expr, {"absenceDays": 0, "dailySalary": 500}) == Decimal("0")

    def test_functions(self, evaluator):
        assert evaluator.evaluate("min(3, 1, 2)", {}) == Decimal("1")
        assert evaluator.evaluate("max(3, 1, 2)", {}) == Decimal("3")
        assert evaluator.evaluate("abs(-4.5)", {}) == Decimal("4.5")
        assert evaluator.evaluate("floor(2.7)", {}) == Decimal("2")
        assert evaluator.evaluate("ceil(2.1)", {}) == Decimal("3")
        assert evaluator.evaluate("round(2.345)", {}) == Decimal("2.35")
        assert evaluator.evaluate("round(2.345, 1)", {}) == Decimal("2.3")
        assert evaluator.evaluate("proportional(3000, 10, 30)", {}) == Decimal("1000")

    def test_round_uses_company_method(self):
        evaluator = FormulaEvaluator(RoundingPolicy(method="FLOOR"))
        assert evaluator.evaluate("round(2.349)", {}) == Decimal("2.34")

    def test_missing_variable(self, evaluator):
        with pytest.raises(FormulaEvaluationError, match="custom1"):
            evaluator.evaluate("custom1 * 2", {})

    def test_unset_total_is_an_error(self, evaluator):
        with pytest.raises(FormulaEvaluationError):
            evaluator.evaluate("totalPerceptions * 0.01", {"totalPerceptions": None})

    def test_division_by_zero(self, evaluator):
        with pytest.raises(FormulaEvaluationError):
            evaluator.evaluate("dailySalary / absenceDays", {"dailySalary": 500, "absenceDays": 0})
        with pytest.raises(FormulaEvaluationError):
            evaluator.evaluate("proportional(100, 1, periodDays)", {"periodDays": 0})

    def test_bad_round_precision(self, evaluator):
        with pytest.raises(FormulaEvaluationError):
            evaluator.evaluate("round(1.5, 0.5)", {})

    def test_deterministic(self, evaluator):
        context = dict(SAMPLE_CONTEXT)
        expr = "min(baseSalary * 0.13, umaMonthly * 1.3) * periodDays / 30"
        assert evaluator.evaluate(expr, context) == evaluator.evaluate(expr, context)


class TestTest:
    """Tests for FormulaEvaluator.test with sample values."""

    def test_uses_sample_context(self, evaluator):
        assert evaluator.test("dailySalary * workedDays") == Decimal("7500")

    def test_overrides(self, evaluator):
        assert evaluator.test("dailySalary * workedDays", {"workedDays": "13"}) == Decimal("6500")

    def test_unknown_override(self, evaluator):
        with pytest.raises(FormulaValidationError):
            evaluator.test("dailySalary", {"bogus": 1})


class TestExemption:
    """Tests for evaluate_with_exemption."""

    def test_aguinaldo_with_uma_limit(self, evaluator):
        result = evaluator.evaluate_with_exemption(
            "dailySalary * 15",
            {"dailySalary": 500, "umaDaily": "108.57"},
            is_taxable=True,
            exempt_limit=30,
            exempt_limit_type="UMA",
        )
        assert result.value == Decimal("7500.00")
        assert result.exempt_amount == Decimal("3257.10")
        assert result.taxable_amount == Decimal("4242.90")
        assert result.exempt_limit_amount == Decimal("3257.10")
        assert result.exempt_amount + result.taxable_amount == result.value

    def test_value_below_limit_is_fully_exempt(self, evaluator):
        result = evaluator.evaluate_with_exemption(
            "dailySalary * 2", {"dailySalary": 500, "umaDaily": "108.57"},
            exempt_limit=30, exempt_limit_type="UMA",
        )
        assert result.exempt_amount == Decimal("1000.00")
        assert result.taxable_amount == Decimal("0.00")

    def test_not_taxable(self, evaluator):
        result = evaluator.evaluate_with_exemption("dailySalary", {"dailySalary": 500}, is_taxable=False)
        assert result.exempt_amount == Decimal("500.00")
        assert result.taxable_amount == Decimal("0.00")

    def test_flagged_exempt(self, evaluator):
        result = evaluator.evaluate_with_exemption("dailySalary", {"dailySalary": 500}, is_exempt=True)
        assert result.exempt_amount == Decimal("500.00")

    def test_no_limit_is_fully_taxable(self, evaluator):
        result = evaluator.evaluate_with_exemption("dailySalary", {"dailySalary": 500})
        assert result.taxable_amount == Decimal("500.00")
        assert result.exempt_amount == Decimal("0.00")

    def test_fixed_and_smg_limits(self, evaluator):
        fixed = evaluator.evaluate_with_exemption(
            "1000", {}, exempt_limit=250, exempt_limit_type="FIXED",
        )
        assert fixed.exempt_amount == Decimal("250.00")
        assert fixed.taxable_amount == Decimal("750.00")

        smg = evaluator.evaluate_with_exemption(
            "1000", {"smgDaily": "278.80"}, exempt_limit=2, exempt_limit_type="SMG",
        )
        assert smg.exempt_amount == Decimal("557.60")

    def test_fiscal_values_win_over_context(self, evaluator):
        fiscal_values = load_fiscal_tables(2025).fiscal_values
        result = evaluator.evaluate_with_exemption(
            "dailySalary * 15", {"dailySalary": 500, "umaDaily": 1},
            exempt_limit=30, exempt_limit_type="UMA", fiscal_values=fiscal_values,
        )
        assert result.exempt_amount == Decimal("3394.20")

    def test_limit_unit_missing(self, evaluator):
        with pytest.raises(FormulaEvaluationError):
            evaluator.evaluate_with_exemption(
                "100", {}, exempt_limit=1, exempt_limit_type="UMA",
            )

    def test_reports_variables_used(self, evaluator):
        result = evaluator.evaluate_with_exemption("dailySalary * 15", {"dailySalary": 500, "seniority": 3})
        assert result.variables == {"dailySalary": Decimal("500")}

    def test_amounts_wider_than_default_context(self, evaluator):
        result = evaluator.evaluate_with_exemption(
            "baseSalary * 1000000000000000000000000000", {"baseSalary": 15000},
            exempt_limit=30, exempt_limit_type="FIXED",
        )
        assert result.value == Decimal("1.5E+31")
        assert result.value.as_tuple().exponent == -2
        assert result.exempt_amount == Decimal("30.00")
        assert result.taxable_amount == Decimal("14999999999999999999999999999970.00")


class TestContext:
    """Tests for building the runtime formula context."""

    @pytest.fixture
    def fiscal_values(self):
        return FiscalValues(
            year=2025,
            uma_daily="113.14",
            uma_monthly="3439.46",
            uma_yearly="41273.52",
            smg_daily="278.80",
        )

    @pytest.fixture
    def period(self):
        return PeriodSnapshot(
            id="2025-06-B1",
            period_type="BIWEEKLY",
            year=2025,
            start_date=date(2025, 6, 1),
            end_date=date(2025, 6, 15),
        )

    def test_derived_values(self, fiscal_values, period):
        employee = EmployeeSnapshot(id="E1", base_salary="15000", hire_date=date(2020, 6, 16))
        context = build_formula_context(employee, period, fiscal_values)

        assert context["dailySalary"] == Decimal("500.0000")
        assert context["hourlyRate"] == Decimal("62.5000")
        assert context["workedDays"] == Decimal(15)
        assert context["periodDays"] == Decimal(15)
        # 2020-06-16 to 2025-06-15 is four completed years
        assert context["seniority"] == Decimal(4)
        assert context["vacationDays"] == Decimal(18)
        assert context["umaDaily"] == Decimal("113.14")
        assert context["totalPerceptions"] is None
        assert set(context) == set(VARIABLES)

    def test_integrated_salary_from_factor(self, fiscal_values, period):
        employee = EmployeeSnapshot(id="E1", base_salary="15000", hire_date=date(2024, 1, 1))
        context = build_formula_context(employee, period, fiscal_values)
        # 1 + 15/365 + 12 * 0.25 / 365 = 1.0493
        assert context["integratedSalary"] == Decimal("524.6500")

    def test_explicit_sbc_wins(self, fiscal_values, period):
        employee = EmployeeSnapshot(id="E1", base_salary="15000", sbc="600", hire_date=date(2024, 1, 1))
        context = build_formula_context(employee, period, fiscal_values)
        assert context["integratedSalary"] == Decimal("600")

    def test_absences_reduce_worked_days(self, fiscal_values, period):
        employee = EmployeeSnapshot(id="E1", base_salary="15000", hire_date=date(2024, 1, 1))
        context = build_formula_context(employee, period, fiscal_values, absenceDays=2)
        assert context["workedDays"] == Decimal(13)

    def test_unknown_override(self, fiscal_values, period):
        employee = EmployeeSnapshot(id="E1", base_salary="15000", hire_date=date(2024, 1, 1))
        with pytest.raises(ValueError):
            build_formula_context(employee, period, fiscal_values, bonus=100)

    def test_vacation_table(self):
        assert vacation_days_for_years(0) == 12
        assert vacation_days_for_years(1) == 12
        assert vacation_days_for_years(5) == 20
        assert vacation_days_for_years(7) == 22
        assert vacation_days_for_years(40) == 32

    def test_completed_years(self):
        assert completed_years(date(2020, 3, 1), date(2025, 2, 28)) == 4
        assert completed_years(date(2020, 3, 1), date(2025, 3, 1)) == 5

    def test_templates_validate(self, evaluator):
        for template in FORMULA_TEMPLATES:
            evaluator.validate(template["expression"])
