"""Tests for the fiscal audit trail and snapshot verification."""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import yaml

from nominacalc.sdk.audit import (
    AuditEntryExistsError,
    AuditEntryNotFoundError,
    AuditRecorder,
    bracket_rules_snapshot,
    build_input_snapshot,
    build_output_snapshot,
    canonical_hash,
    formula_rules_snapshot,
    imss_rules_snapshot,
)
from nominacalc.sdk.formulas import FormulaEvaluator
from nominacalc.sdk.rounding import RoundingPolicy
from nominacalc.sdk.schemas import CalculationFormula
from nominacalc.sdk.taxes import (
    IMSS_EMPLOYEE_RULE,
    ISR_RULE,
    FiscalTableProvider,
    calculate_imss,
    calculate_isr,
)


@pytest.fixture(scope="module")
def tables():
    return FiscalTableProvider().get(2025)


@pytest.fixture
def recorder(isolated_env, ticking_clock):
    return AuditRecorder(isolated_env["data_dir"], clock=ticking_clock)


def record_isr(recorder, tables, employee, period, base, detail_id="2025-01-B1-E001"):
    policy = RoundingPolicy()
    table = tables.isr_table(period.period_type)
    isr = calculate_isr(base, table, policy)
    entry = recorder.new_entry(
        payroll_detail_id=detail_id,
        period_id=period.id,
        concept_type="ISR",
        concept_code="D002",
        input_values={"taxable_income": str(isr.base)},
        calculation_base=isr.base,
        limit_inferior=isr.limit_inferior,
        excedente=isr.excedente,
        impuesto_marginal=isr.impuesto_marginal,
        cuota_fija=isr.cuota_fija,
        result_amount=isr.isr,
        rule_applied=ISR_RULE,
        rule_version="2025",
        table_used=isr.table_used,
        fiscal_year=period.year,
        period_type=period.period_type,
    )
    return recorder.record_with_snapshot(
        entry,
        build_input_snapshot(employee, period, tables.fiscal_values, {"base": isr.base}),
        build_output_snapshot(isr.isr),
        bracket_rules_snapshot(ISR_RULE, table, policy),
    )


def entry_path(isolated_env, entry):
    return isolated_env["data_dir"] / "audit" / entry.payroll_detail_id / f"{entry.id}.json"


def record_imss(recorder, tables, employee, period, risk_class="CLASE_I"):
    policy = RoundingPolicy()
    calculation = {"sbc": Decimal("520"), "days": 15, "risk_class": risk_class}
    imss = calculate_imss(
        "520", 15, tables.imss_rates, tables.fiscal_values,
        risk_class=risk_class, risk_classes=tables.risk_classes, rounding=policy,
    )
    entry = recorder.new_entry(
        payroll_detail_id="2025-01-B1-E001",
        period_id=period.id,
        concept_type="IMSS_EMPLOYEE",
        concept_code="D001",
        calculation_base=imss.capped_sbc,
        result_amount=imss.employee_total,
        rule_applied=IMSS_EMPLOYEE_RULE,
        rule_version="2025",
        table_used="IMSS_2025",
        fiscal_year=2025,
        period_type=period.period_type,
    )
    return recorder.record_with_snapshot(
        entry,
        build_input_snapshot(employee, period, tables.fiscal_values, calculation),
        build_output_snapshot(imss.employee_total),
        imss_rules_snapshot(IMSS_EMPLOYEE_RULE, tables, policy),
    )


def record_formula(recorder, tables, employee, period, expression="dailySalary * workedDays"):
    policy = RoundingPolicy()
    formula = CalculationFormula(
        id="f-p001",
        company_id="acme",
        concept_code="P001",
        concept_type="PERCEPTION",
        name="Sueldo",
        expression=expression,
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    variables = {"dailySalary": "500", "workedDays": "15"}
    amount = FormulaEvaluator(policy).evaluate_with_exemption(expression, variables)
    entry = recorder.new_entry(
        payroll_detail_id="2025-01-B1-E001",
        period_id=period.id,
        concept_type="FORMULA",
        concept_code=formula.concept_code,
        input_values=variables,
        calculation_base=amount.value,
        result_amount=amount.value,
        rule_applied=formula.id,
        rule_version=str(formula.version),
        fiscal_year=2025,
        period_type=period.period_type,
    )
    return recorder.record_with_snapshot(
        entry,
        build_input_snapshot(employee, period, tables.fiscal_values, {"variables": variables}),
        build_output_snapshot(amount.value),
        formula_rules_snapshot(formula, policy),
    )


def tamper(isolated_env, entry, change):
    path = entry_path(isolated_env, entry)
    data = json.loads(path.read_text())
    change(data)
    path.write_text(json.dumps(data, indent=2))


class TestRecording:
    """Tests for recording and reading entries."""

    def test_record_and_get(self, recorder, tables, employee, biweekly_period, isolated_env):
        entry = record_isr(recorder, tables, employee, biweekly_period, "7500")

        assert entry_path(isolated_env, entry).exists()
        loaded = recorder.get_entry(entry.id)
        assert loaded.result_amount == entry.result_amount
        assert loaded.snapshot_hash == entry.snapshot_hash
        assert loaded.input_snapshot["employee"]["id"] == "E001"
        assert loaded.input_snapshot["fiscal_parameters"]["uma_daily"] == "113.14"
        assert loaded.applied_rules_snapshot["rounding"] == {"method": "ROUND", "precision": 2}

    def test_entries_are_never_overwritten(self, recorder, tables, employee, biweekly_period):
        entry = record_isr(recorder, tables, employee, biweekly_period, "7500")
        with pytest.raises(AuditEntryExistsError):
            recorder.record(entry.model_copy(update={"result_amount": Decimal("1.00")}))
        assert recorder.get_entry(entry.id).result_amount == entry.result_amount

    def test_unknown_entry(self, recorder):
        with pytest.raises(AuditEntryNotFoundError):
            recorder.get_entry("missing")

    def test_list_filters(self, recorder, tables, employee, biweekly_period):
        first = record_isr(recorder, tables, employee, biweekly_period, "7500")
        second = record_isr(recorder, tables, employee, biweekly_period, "9000", detail_id="2025-01-B1-E002")

        assert [e.id for e in recorder.list_entries(period_id="2025-01-B1")] == [first.id, second.id]
        assert [e.id for e in recorder.list_entries(payroll_detail_id="2025-01-B1-E002")] == [second.id]
        assert recorder.list_entries(concept_type="IMSS_EMPLOYEE") == []
        assert recorder.list_entries(period_id="other") == []

    def test_rule_references(self, recorder, tables, employee, biweekly_period):
        assert not recorder.is_rule_referenced(ISR_RULE)
        record_isr(recorder, tables, employee, biweekly_period, "7500")
        assert recorder.is_rule_referenced(ISR_RULE)
        assert not recorder.is_rule_referenced("some-formula-id")

    def test_canonical_hash_ignores_key_order(self):
        assert canonical_hash({"a": Decimal("1.50"), "b": 2}) == canonical_hash({"b": 2, "a": "1.50"})


class TestVerification:
    """Tests for recomputing entries from their snapshots."""

    def test_isr_entry_verifies(self, recorder, tables, employee, biweekly_period):
        entry = record_isr(recorder, tables, employee, biweekly_period, "7500")
        check = recorder.verify_snapshot_integrity(entry.id)

        assert check.valid
        assert check.recomputed == entry.result_amount
        assert check.details == []

    def test_verification_ignores_live_tables(self, recorder, tables, employee, biweekly_period, isolated_env):
        """Changing the tables after the fact does not change a verified entry."""
        entry = record_isr(recorder, tables, employee, biweekly_period, "7500")

        override_dir = isolated_env["config_dir"] / "fiscal-tables"
        override_dir.mkdir()
        data = tables.table_set.model_dump(mode="json")
        for row in data["isr"]["BIWEEKLY"]:
            row["rate_on_excess"] = "0.5"
        (override_dir / "2025.yaml").write_text(yaml.safe_dump(data))

        assert recorder.verify_snapshot_integrity(entry.id).valid

    def test_imss_entry_verifies(self, recorder, tables, employee, biweekly_period):
        entry = record_imss(recorder, tables, employee, biweekly_period)

        check = recorder.verify_snapshot_integrity(entry.id)
        assert check.valid
        assert check.recomputed == Decimal("196.08")

    def test_formula_entry_verifies(self, recorder, tables, employee, biweekly_period):
        entry = record_formula(recorder, tables, employee, biweekly_period)

        check = recorder.verify_snapshot_integrity(entry.id)
        assert check.valid
        assert check.recomputed == Decimal("7500.00")

    def test_tampered_expression_is_reported(self, recorder, tables, employee, biweekly_period, isolated_env):
        entry = record_formula(recorder, tables, employee, biweekly_period)
        tamper(isolated_env, entry, lambda d: d["applied_rules_snapshot"]["formula"].update(
            expression="dailySalary *"
        ))

        check = recorder.verify_snapshot_integrity(entry.id)
        assert not check.valid
        assert check.recomputed is None
        assert any("cannot be replayed" in d for d in check.details)

    def test_tampered_bracket_rows_are_reported(self, recorder, tables, employee, biweekly_period, isolated_env):
        entry = record_isr(recorder, tables, employee, biweekly_period, "7500")
        tamper(isolated_env, entry, lambda d: d["applied_rules_snapshot"]["table"]["rows"][-1].update(
            upper_limit="999999999.99"
        ))

        check = recorder.verify_snapshot_integrity(entry.id)
        assert not check.valid
        assert any("cannot be replayed" in d for d in check.details)

    def test_tampered_risk_classes_are_reported(self, recorder, tables, employee, biweekly_period, isolated_env):
        entry = record_imss(recorder, tables, employee, biweekly_period)
        tamper(isolated_env, entry, lambda d: d["applied_rules_snapshot"]["risk_classes"].pop("CLASE_I"))

        check = recorder.verify_snapshot_integrity(entry.id)
        assert not check.valid
        assert any("CLASE_I" in d for d in check.details)

    def test_period_verification_continues_past_unreplayable_entries(
        self, recorder, tables, employee, biweekly_period, isolated_env
    ):
        broken = record_formula(recorder, tables, employee, biweekly_period)
        record_isr(recorder, tables, employee, biweekly_period, "7500", detail_id="2025-01-B1-E002")
        tamper(isolated_env, broken, lambda d: d["applied_rules_snapshot"]["formula"].update(
            expression="bogus * 2"
        ))

        checks = recorder.verify_period(biweekly_period.id)
        assert [c.valid for c in checks] == [False, True]

    def test_tampered_amount_is_reported_not_fixed(self, recorder, tables, employee, biweekly_period, isolated_env):
        entry = record_isr(recorder, tables, employee, biweekly_period, "7500")
        path = entry_path(isolated_env, entry)
        data = json.loads(path.read_text())
        data["result_amount"] = "999.99"
        path.write_text(json.dumps(data, indent=2))
        tampered = path.read_text()

        check = recorder.verify_snapshot_integrity(entry.id)

        assert not check.valid
        assert not check.hash_valid
        assert check.stored == Decimal("999.99")
        assert check.recomputed == entry.result_amount
        assert path.read_text() == tampered

    def test_tampered_rules_fail_checksum(self, recorder, tables, employee, biweekly_period, isolated_env):
        entry = record_isr(recorder, tables, employee, biweekly_period, "7500")
        path = entry_path(isolated_env, entry)
        data = json.loads(path.read_text())
        data["applied_rules_snapshot"]["table"]["rows"][0]["fixed_fee"] = "1.00"
        path.write_text(json.dumps(data))

        check = recorder.verify_snapshot_integrity(entry.id)
        assert not check.valid
        assert not check.checksum_valid

    def test_entry_without_snapshot(self, recorder, biweekly_period):
        entry = recorder.record(recorder.new_entry(
            payroll_detail_id="2025-01-B1-E001",
            period_id=biweekly_period.id,
            concept_type="ISR",
            concept_code="D002",
            calculation_base="100",
            result_amount="1.00",
            rule_applied=ISR_RULE,
            rule_version="2025",
            fiscal_year=2025,
            period_type="BIWEEKLY",
        ))
        check = recorder.verify_snapshot_integrity(entry.id)
        assert not check.valid
        assert check.recomputed is None

    def test_verify_period(self, recorder, tables, employee, biweekly_period):
        record_isr(recorder, tables, employee, biweekly_period, "7500")
        record_isr(recorder, tables, employee, biweekly_period, "20000", detail_id="2025-01-B1-E002")
        checks = recorder.verify_period(biweekly_period.id)
        assert len(checks) == 2
        assert all(c.valid for c in checks)


class TestSummary:
    """Tests for period summaries."""

    def test_totals_by_concept(self, recorder, tables, employee, biweekly_period):
        first = record_isr(recorder, tables, employee, biweekly_period, "7500")
        second = record_isr(recorder, tables, employee, biweekly_period, "9000", detail_id="2025-01-B1-E002")

        summary = recorder.summarize_period(biweekly_period.id)

        assert summary.entries == 2
        assert summary.payroll_details == 2
        isr = summary.by_concept["ISR"]
        assert isr.entries == 2
        assert isr.total_base == Decimal("16500")
        assert isr.total_result == first.result_amount + second.result_amount
        assert isr.tables_used == [first.table_used]
        assert summary.total("ISR") == isr.total_result
        assert summary.total("IMSS_EMPLOYER") == Decimal(0)

    def test_empty_period(self, recorder):
        summary = recorder.summarize_period("nothing")
        assert summary.entries == 0
        assert summary.by_concept == {}
