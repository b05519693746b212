"""Payroll command group: run a period from a YAML file."""

import json
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from nominacalc.sdk import FiscalTableNotFoundError, PayrollEngine
from nominacalc.sdk.audit import to_json_data
from nominacalc.sdk.schemas import PayrollRunFile


def load_run_file(path: Path) -> PayrollRunFile:
    """Load and validate a payroll run file.

    Raises:
        click.ClickException: If the file is not valid YAML or does not match
            the run file schema
    """
    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise click.ClickException(f"Invalid YAML in {path}: {e}")

    try:
        return PayrollRunFile.model_validate(data or {})
    except ValidationError as e:
        errors = []
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            errors.append(f"{loc}: {err['msg']}")
        raise click.ClickException(f"Invalid run file {path}:\n  " + "\n  ".join(errors))


@click.group()
def payroll():
    """Run payroll periods.

    \b
    A run file names the period and its employees:

    \b
      period:
        id: 2025-01-B1
        period_type: BIWEEKLY
        year: 2025
        start_date: 2025-01-01
        end_date: 2025-01-15
      employees:
        - id: E001
          base_salary: 15000
          hire_date: 2022-03-01
          variables:
            doubleOvertimeHours: 4
    """
    pass


@payroll.command("run")
@click.argument("company_id")
@click.argument("run_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--workers", "-w", type=click.IntRange(min=1), default=4, show_default=True,
              help="Employees calculated in parallel.")
@click.option("--user", "calculated_by", help="User recorded on the audit entries.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def payroll_run(company_id, run_file, workers, calculated_by, as_json):
    """Calculate a period for every employee in RUN_FILE.

    Formulas are resolved for the period's payment date (or end date). Every
    amount is written to the audit trail.
    """
    run = load_run_file(run_file)
    engine = PayrollEngine(calculated_by=calculated_by)

    try:
        result = engine.run_period(
            company_id,
            [e.snapshot() for e in run.employees],
            run.period,
            variables_by_employee={e.id: e.variables for e in run.employees if e.variables},
            max_workers=workers,
        )
    except (FiscalTableNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(to_json_data({
            "period_id": result.period_id,
            "employees": [
                {
                    "employee_id": c.employee_id,
                    "payroll_detail_id": c.payroll_detail_id,
                    "total_perceptions": c.total_perceptions,
                    "taxable_income": c.taxable_income,
                    "isr": c.isr.net_isr,
                    "imss": c.imss.employee_total,
                    "total_deductions": c.total_deductions,
                    "net_pay": c.net_pay,
                    "skipped": [s.concept_code for s in c.skipped],
                    "audit_entries": len(c.audit_entry_ids),
                }
                for c in result.calculations
            ],
            "failures": result.failures,
            "totals": {
                concept_type: s.total_result
                for concept_type, s in result.summary.by_concept.items()
            },
        }), indent=2))
    else:
        click.echo(f"Period {result.period_id} ({run.period.period_type} {run.period.start_date} - {run.period.end_date})")
        click.echo()
        click.echo(f"  {'Employee':<12} {'Perceptions':>14} {'ISR':>12} {'IMSS':>12} {'Net pay':>14}")
        for c in sorted(result.calculations, key=lambda c: c.employee_id):
            click.echo(
                f"  {c.employee_id:<12} {c.total_perceptions:>14,.2f} {c.isr.net_isr:>12,.2f} "
                f"{c.imss.employee_total:>12,.2f} {c.net_pay:>14,.2f}"
            )
            for skipped in c.skipped:
                click.secho(f"    skipped {skipped.concept_code}: {skipped.reason}", fg="yellow")
        click.echo()
        click.echo(f"  {result.summary.entries} audit entries recorded")
        for employee_id, error in sorted(result.failures.items()):
            click.echo(click.style(f"  ✗ {employee_id}: {error}", fg="red"))

    if result.failures:
        raise click.ClickException(f"{len(result.failures)} employee(s) failed")
