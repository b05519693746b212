"""Tax command group: ISR, IMSS and severance against the yearly fiscal tables."""

import json
from dataclasses import asdict
from datetime import date
from decimal import Decimal
from typing import get_args

import click

from nominacalc.sdk import (
    FiscalTableProvider,
    FiscalTableNotFoundError,
    RoundingPolicy,
    calculate_imss,
    calculate_isr_with_subsidy,
    calculate_liquidation,
    LIQUIDATION_TYPES,
    load_company_rounding_policy,
)
from nominacalc.sdk.audit import to_json_data
from nominacalc.sdk.schemas import EmployeeSnapshot, PeriodType, RiskClass
from nominacalc.sdk.taxes import ImssRateError


def _tables(year: int):
    try:
        return FiscalTableProvider().get(year)
    except FiscalTableNotFoundError as e:
        raise click.ClickException(str(e))


def _policy(company_id) -> RoundingPolicy:
    return load_company_rounding_policy(company_id) if company_id else RoundingPolicy()


def _money(value: Decimal) -> str:
    return f"{value:>14,.2f}"


@click.group()
def tax():
    """ISR, IMSS and severance calculations."""
    pass


@tax.command("isr")
@click.argument("base", type=click.FLOAT)
@click.option("--period-type", "-p", type=click.Choice(get_args(PeriodType), case_sensitive=False),
              default="MONTHLY", show_default=True)
@click.option("--year", "-y", type=int, default=lambda: date.today().year, help="Fiscal year (default: current).")
@click.option("--no-subsidy", is_flag=True, help="Do not credit Subsidio al Empleo.")
@click.option("--company", "company_id", help="Use the rounding policy of this company.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def tax_isr(base, period_type, year, no_subsidy, company_id, as_json):
    """Compute ISR withholding for a taxable BASE.

    \b
    Examples:
      nomina-calc tax isr 15000
      nomina-calc tax isr 7000 --period-type BIWEEKLY --year 2024
    """
    if base < 0:
        raise click.BadParameter("BASE cannot be negative")

    tables = _tables(year)
    period_type = period_type.upper()
    result = calculate_isr_with_subsidy(
        Decimal(str(base)),
        tables.isr_table(period_type),
        None if no_subsidy else tables.subsidy_table(period_type),
        _policy(company_id),
    )
    isr = result.isr

    if as_json:
        click.echo(json.dumps(to_json_data({
            "base": isr.base,
            "table_used": isr.table_used,
            "limite_inferior": isr.limit_inferior,
            "excedente": isr.excedente,
            "tasa": isr.tasa,
            "impuesto_marginal": isr.impuesto_marginal,
            "cuota_fija": isr.cuota_fija,
            "isr": isr.isr,
            "subsidio": result.subsidy.subsidy if result.subsidy else None,
            "subsidio_aplicado": result.subsidy_applied,
            "isr_neto": result.net_isr,
        }), indent=2))
        return

    click.echo(f"ISR {period_type} {tables.year} ({isr.table_used}, row {isr.row_index + 1})")
    click.echo(f"  Base gravable        {_money(isr.base)}")
    click.echo(f"  Limite inferior      {_money(isr.limit_inferior)}")
    click.echo(f"  Excedente            {_money(isr.excedente)}")
    click.echo(f"  Tasa                 {isr.tasa * 100:>13.2f}%")
    click.echo(f"  Impuesto marginal    {_money(isr.impuesto_marginal)}")
    click.echo(f"  Cuota fija           {_money(isr.cuota_fija)}")
    click.echo(f"  ISR                  {_money(isr.isr)}")
    if result.subsidy is not None:
        click.echo(f"  Subsidio al empleo   {_money(result.subsidy.subsidy)}")
    click.echo(f"  ISR a retener        {_money(result.net_isr)}")


@tax.command("imss")
@click.argument("sbc", type=click.FLOAT)
@click.option("--days", "-d", type=click.IntRange(min=0), default=15, show_default=True,
              help="Contribution days.")
@click.option("--year", "-y", type=int, default=lambda: date.today().year, help="Fiscal year (default: current).")
@click.option("--risk-class", type=click.Choice(get_args(RiskClass), case_sensitive=False),
              help="Employer risk class (adds riesgo de trabajo).")
@click.option("--company", "company_id", help="Use the rounding policy of this company.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def tax_imss(sbc, days, year, risk_class, company_id, as_json):
    """Compute IMSS quotas for a daily SBC.

    \b
    Examples:
      nomina-calc tax imss 520 --days 15
      nomina-calc tax imss 2500 --days 30 --risk-class CLASE_II
    """
    if sbc < 0:
        raise click.BadParameter("SBC cannot be negative")

    tables = _tables(year)
    try:
        result = calculate_imss(
            Decimal(str(sbc)),
            days,
            tables.imss_rates,
            tables.fiscal_values,
            risk_class=risk_class.upper() if risk_class else None,
            risk_classes=tables.risk_classes,
            rounding=_policy(company_id),
        )
    except ImssRateError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(to_json_data({
            "sbc": result.sbc,
            "capped_sbc": result.capped_sbc,
            "days": result.days,
            "risk_class": result.risk_class,
            "concepts": [
                {
                    "concept": c.concept,
                    "base": c.base_type,
                    "daily_base": c.daily_base,
                    "employer": c.employer_amount,
                    "employee": c.employee_amount,
                }
                for c in result.concepts
            ],
            "employee_total": result.employee_total,
            "employer_total": result.employer_total,
            "infonavit": result.infonavit,
        }), indent=2))
        return

    click.echo(f"IMSS {tables.year}: SBC {result.sbc} x {days} days")
    if result.capped_sbc < result.sbc:
        click.secho(f"  SBC capped at {result.capped_sbc}", fg="yellow")
    click.echo(f"  {'Concept':<22} {'Employer':>14} {'Employee':>14}")
    for c in result.concepts:
        click.echo(f"  {c.concept:<22} {_money(c.employer_amount)} {_money(c.employee_amount)}")
    click.echo(f"  {'IMSS total':<22} {_money(result.employer_total)} {_money(result.employee_total)}")
    if result.concept("infonavit") is not None:
        click.echo(f"  {'INFONAVIT':<22} {_money(result.infonavit)}")


@tax.command("liquidation")
@click.argument("base_salary", type=click.FloatRange(min=0))
@click.option("--type", "liquidation_type", type=click.Choice(LIQUIDATION_TYPES, case_sensitive=False),
              default="FINIQUITO", show_default=True,
              help="FINIQUITO (resignation), LIQUIDACION (unjustified dismissal), RESCISION (justified dismissal).")
@click.option("--hire-date", type=click.DateTime(formats=["%Y-%m-%d"]), required=True)
@click.option("--termination-date", type=click.DateTime(formats=["%Y-%m-%d"]), required=True)
@click.option("--daily-salary", type=click.FloatRange(min=0), help="Daily salary (default: BASE_SALARY / 30).")
@click.option("--sbc", type=click.FloatRange(min=0), help="Integrated daily salary (default: daily salary x integration factor).")
@click.option("--pending-days", type=click.FloatRange(min=0), help="Unpaid days worked (default: day of month).")
@click.option("--vacation-days", type=click.FloatRange(min=0), help="Vacation days not taken (default: prorated).")
@click.option("--deductions", type=click.FloatRange(min=0), default=0, help="Other amounts withheld.")
@click.option("--employee", "employee_id", default="EMPLOYEE", show_default=True)
@click.option("--company", "company_id", help="Use the rounding policy of this company.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def tax_liquidation(base_salary, liquidation_type, hire_date, termination_date, daily_salary, sbc,
                    pending_days, vacation_days, deductions, employee_id, company_id, as_json):
    """Compute a finiquito or liquidacion for a monthly BASE_SALARY.

    Fiscal tables are those of the termination year.

    \b
    Examples:
      nomina-calc tax liquidation 15000 --hire-date 2022-03-01 --termination-date 2025-06-15
      nomina-calc tax liquidation 15000 --type LIQUIDACION --sbc 520 \\
          --hire-date 2022-03-01 --termination-date 2025-06-15
    """
    def _decimal(value):
        return None if value is None else Decimal(str(value))

    employee = EmployeeSnapshot(
        id=employee_id,
        base_salary=Decimal(str(base_salary)),
        daily_salary=_decimal(daily_salary),
        sbc=_decimal(sbc),
        hire_date=hire_date.date(),
    )
    termination = termination_date.date()
    tables = _tables(termination.year)
    try:
        result = calculate_liquidation(
            employee,
            termination,
            liquidation_type.upper(),
            tables,
            rounding=_policy(company_id),
            pending_salary_days=_decimal(pending_days),
            pending_vacation_days=_decimal(vacation_days),
            other_deductions=Decimal(str(deductions)),
        )
    except ValueError as e:
        raise click.ClickException(str(e))

    if as_json:
        data = asdict(result)
        data.update({
            "separation_total": result.separation_total,
            "gross_total": result.gross_total,
            "isr_total": result.isr_total,
            "total_deductions": result.total_deductions,
            "net_total": result.net_total,
        })
        click.echo(json.dumps(to_json_data(data), indent=2))
        return

    click.echo(
        f"{result.liquidation_type} {employee_id}: {result.hire_date} to {result.termination_date} "
        f"({result.years_of_service} years, {result.days_of_service} days)"
    )
    click.echo(f"  Daily salary {result.daily_salary}, integrated {result.integrated_salary}")
    click.echo()
    click.echo(f"  Pending salary ({result.pending_salary_days} days)   {_money(result.pending_salary)}")
    click.echo(f"  Aguinaldo ({result.aguinaldo_days} days)         {_money(result.proportional_aguinaldo)}")
    click.echo(f"  Vacation ({result.vacation_days} days)          {_money(result.proportional_vacation)}")
    click.echo(f"  Vacation premium               {_money(result.vacation_premium)}")
    if result.indemnity_90_days:
        click.echo(f"  Indemnity 90 days              {_money(result.indemnity_90_days)}")
    if result.indemnity_20_days:
        click.echo(f"  Indemnity 20 days per year     {_money(result.indemnity_20_days)}")
    if result.seniority_premium:
        click.echo(f"  Seniority premium ({result.seniority_premium_days} days) {_money(result.seniority_premium)}")
    click.echo(f"  Gross total                    {_money(result.gross_total)}")
    click.echo()
    click.echo(f"  Exempt separation              {_money(result.separation_exempt)}")
    click.echo(f"  ISR ordinary                   {_money(result.ordinary_isr.isr)}")
    if result.separation_isr:
        click.echo(
            f"  ISR separation ({result.separation_rate * 100:.2f}%)    {_money(result.separation_isr)}"
        )
    if result.other_deductions:
        click.echo(f"  Other deductions               {_money(result.other_deductions)}")
    click.echo(f"  Net total                      {_money(result.net_total)}")
