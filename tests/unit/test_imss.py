"""Tests for IMSS worker-employer quotas."""

from decimal import Decimal

import pytest

from nominacalc.sdk.schemas import FiscalValues, ImssRate
from nominacalc.sdk.taxes import FiscalTableProvider, ImssRateError, calculate_imss


@pytest.fixture(scope="module")
def tables():
    return FiscalTableProvider().get(2025)


def imss_for(tables, sbc, days=15, risk_class=None):
    return calculate_imss(
        sbc,
        days,
        tables.imss_rates,
        tables.fiscal_values,
        risk_class=risk_class,
        risk_classes=tables.risk_classes,
    )


class TestCalculateImss:
    """Tests for calculate_imss with the 2025 rates."""

    def test_biweekly_quotas(self, tables):
        result = imss_for(tables, "520")

        assert result.concept("em_cuota_fija").employer_amount == Decimal("346.21")
        # (520 - 3 * 113.14) * 15 = 2708.70
        assert result.concept("em_excedente").employer_amount == Decimal("29.80")
        assert result.concept("em_excedente").employee_amount == Decimal("10.83")
        assert result.concept("em_prestaciones_dinero").employee_amount == Decimal("19.50")
        assert result.concept("em_gastos_medicos").employee_amount == Decimal("29.25")
        assert result.concept("invalidez_vida").employee_amount == Decimal("48.75")
        assert result.concept("cesantia_vejez").employee_amount == Decimal("87.75")
        assert result.concept("retiro").employee_amount == Decimal("0.00")

        assert result.employee_total == Decimal("196.08")
        assert result.infonavit == Decimal("390.00")

    def test_employer_total_excludes_infonavit(self, tables):
        result = imss_for(tables, "520")
        everything = sum((c.employer_amount for c in result.concepts), Decimal(0))
        assert result.employer_total == everything - result.infonavit

    def test_low_salary_has_no_excess_quota(self, tables):
        result = imss_for(tables, "300")
        assert result.concept("em_excedente").daily_base == Decimal(0)
        assert result.concept("em_excedente").employee_amount == Decimal("0.00")

    def test_sbc_is_capped_at_25_uma(self, tables):
        result = imss_for(tables, "5000")
        assert result.capped_sbc == Decimal("2828.50")
        assert result.sbc == Decimal("5000")
        assert result.concept("retiro").daily_base == Decimal("2828.50")

    def test_risk_class_adds_employer_quota(self, tables):
        without = imss_for(tables, "520")
        with_risk = imss_for(tables, "520", risk_class="CLASE_I")

        quota = with_risk.concept("riesgo_trabajo")
        assert quota is not None
        # 520 * 15 * 0.0054355 = 42.3969
        assert quota.employer_amount == Decimal("42.40")
        assert quota.employee_amount == Decimal("0.00")
        assert without.concept("riesgo_trabajo") is None
        assert with_risk.employee_total == without.employee_total

    def test_unknown_risk_class(self, tables):
        with pytest.raises(ImssRateError):
            calculate_imss("520", 15, tables.imss_rates, tables.fiscal_values, risk_class="CLASE_I")

    def test_zero_days(self, tables):
        result = imss_for(tables, "520", days=0)
        assert result.employee_total == Decimal(0)
        assert result.employer_total == Decimal(0)

    def test_negative_inputs(self, tables):
        with pytest.raises(ValueError):
            imss_for(tables, "-1")
        with pytest.raises(ValueError):
            imss_for(tables, "520", days=-1)

    def test_custom_rates(self):
        fiscal_values = FiscalValues(
            year=2025, uma_daily="100", uma_monthly="3040", uma_yearly="36500", smg_daily="250",
        )
        rates = [ImssRate(concept="unico", employer_rate="0.10", employee_rate="0.05")]
        result = calculate_imss("200", 10, rates, fiscal_values)
        assert result.employer_total == Decimal("200.00")
        assert result.employee_total == Decimal("100.00")
