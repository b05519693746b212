"""Formula command group: validate, test and version concept formulas."""

import json
from typing import Dict, Tuple

import click

from nominacalc.sdk import (
    AuditRecorder,
    FormulaEvaluator,
    FormulaError,
    FormulaValidationError,
    FormulaStore,
    FormulaNotFoundError,
    FormulaImmutableError,
    VersionConflictError,
    FORMULA_TEMPLATES,
)
from nominacalc.sdk.formulas import get_template
from nominacalc.sdk.schemas import CalculationFormula

DATE = click.DateTime(formats=["%Y-%m-%d"])
LIMIT_TYPES = ["UMA", "UMA_MONTHLY", "SMG", "FIXED"]


def _store() -> FormulaStore:
    return FormulaStore(is_referenced=AuditRecorder().is_rule_referenced)


def parse_assignments(pairs: Tuple[str, ...]) -> Dict[str, str]:
    """Parse repeated NAME=VALUE options into a dict."""
    values = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"Expected NAME=VALUE, got '{pair}'")
        values[name.strip()] = value.strip()
    return values


def _raise_formula_error(e: Exception):
    if isinstance(e, FormulaValidationError):
        raise click.ClickException("Invalid formula:\n  " + "\n  ".join(e.errors))
    raise click.ClickException(str(e))


def _format_scope(row: CalculationFormula) -> str:
    if row.fiscal_year is not None:
        return f"fiscal year {row.fiscal_year}"
    if row.valid_from is not None:
        return f"{row.valid_from} -> {row.valid_to or 'open'}"
    return "default"


def _echo_row(row: CalculationFormula) -> None:
    status = click.style("active", fg="green") if row.is_active else click.style("superseded", fg="yellow")
    click.echo(f"{row.concept_code} v{row.version} [{status}] {row.id}")
    click.echo(f"  {row.name} ({row.concept_type}, {_format_scope(row)})")
    click.echo(f"  = {row.expression}")
    if row.exempt_limit:
        click.echo(f"  exempt up to {row.exempt_limit} {row.exempt_limit_type}")
    if row.superseded_by:
        click.echo(f"  superseded by {row.superseded_by} at {row.superseded_at}")


@click.group()
def formula():
    """Concept formulas and their versions.

    Formulas are expressions over payroll variables, e.g.

    \b
      dailySalary * workedDays
      min(baseSalary * 0.10, umaMonthly * 0.40)
      seniority >= 5 ? dailySalary * 20 : dailySalary * 15

    Run 'nomina-calc formula variables' for the full vocabulary.
    """
    pass


@formula.command("validate")
@click.argument("expression")
def formula_validate(expression):
    """Check an expression without evaluating it."""
    try:
        parsed = FormulaEvaluator().validate(expression)
    except FormulaError as e:
        _raise_formula_error(e)

    click.echo(click.style("Valid formula", fg="green"))
    if parsed.variables:
        click.echo(f"  Variables: {', '.join(sorted(parsed.variables))}")
    if parsed.functions:
        click.echo(f"  Functions: {', '.join(sorted(parsed.functions))}")


@formula.command("test")
@click.argument("expression")
@click.option("--var", "-v", "assignments", multiple=True, metavar="NAME=VALUE",
              help="Override a sample value (repeatable).")
def formula_test(expression, assignments):
    """Evaluate an expression against sample values.

    \b
    Examples:
      nomina-calc formula test "dailySalary * workedDays"
      nomina-calc formula test "dailySalary * workedDays" -v workedDays=13
    """
    overrides = parse_assignments(assignments)
    try:
        result = FormulaEvaluator().test(expression, overrides)
    except FormulaError as e:
        _raise_formula_error(e)
    click.echo(str(result))


@formula.command("variables")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def formula_variables(as_json):
    """List the variables and functions formulas can use."""
    variables = FormulaEvaluator.available_variables()
    functions = FormulaEvaluator.available_functions()

    if as_json:
        click.echo(json.dumps({"variables": variables, "functions": functions}, indent=2))
        return

    click.echo("Variables:")
    for name, description in variables.items():
        click.echo(f"  {name:<22} {description}")
    click.echo()
    click.echo("Functions:")
    for name, description in functions.items():
        click.echo(f"  {name:<22} {description}")


@formula.command("templates")
def formula_templates():
    """List the built-in concept templates."""
    for template in FORMULA_TEMPLATES:
        click.echo(f"{template['concept_code']}  {template['name']} ({template['concept_type']})")
        click.echo(f"      = {template['expression']}")


@formula.command("create")
@click.argument("company_id")
@click.argument("concept_code")
@click.option("--template", "-t", "use_template", is_flag=True,
              help="Start from the built-in template with the same concept code.")
@click.option("--type", "concept_type", type=click.Choice(["PERCEPTION", "DEDUCTION"], case_sensitive=False))
@click.option("--name", help="Concept name.")
@click.option("--expression", "-e", help="Formula expression.")
@click.option("--fiscal-year", type=int, help="Apply to a whole fiscal year.")
@click.option("--valid-from", type=DATE, help="First day the formula applies (YYYY-MM-DD).")
@click.option("--valid-to", type=DATE, help="First day it no longer applies (YYYY-MM-DD).")
@click.option("--taxable/--not-taxable", default=None, help="Subject to ISR.")
@click.option("--exempt-limit", help="Exempt limit multiplier (or amount for FIXED).")
@click.option("--exempt-limit-type", type=click.Choice(LIMIT_TYPES, case_sensitive=False))
@click.option("--sat-key", help="SAT catalog key.")
@click.option("--created-by", help="User recorded as author.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def formula_create(company_id, concept_code, use_template, concept_type, name, expression,
                   fiscal_year, valid_from, valid_to, taxable, exempt_limit, exempt_limit_type,
                   sat_key, created_by, as_json):
    """Create the first version of a concept formula.

    \b
    Examples:
      nomina-calc formula create acme P001 --template --fiscal-year 2025
      nomina-calc formula create acme P010 --type PERCEPTION --name "Bono" \\
          -e "baseSalary * 0.05" --valid-from 2025-01-01
    """
    fields = {}
    if use_template:
        fields = get_template(concept_code)
        if fields is None:
            raise click.BadParameter(f"No template for concept code {concept_code}")
        fields.pop("concept_code")

    overrides = {
        "concept_type": concept_type.upper() if concept_type else None,
        "name": name,
        "expression": expression,
        "fiscal_year": fiscal_year,
        "valid_from": valid_from.date() if valid_from else None,
        "valid_to": valid_to.date() if valid_to else None,
        "is_taxable": taxable,
        "exempt_limit": exempt_limit,
        "exempt_limit_type": exempt_limit_type.upper() if exempt_limit_type else None,
        "sat_concept_key": sat_key,
    }
    fields.update({k: v for k, v in overrides.items() if v is not None})

    missing = [opt for opt, key in (("--type", "concept_type"), ("--name", "name"), ("--expression", "expression"))
               if key not in fields]
    if missing:
        raise click.UsageError(f"Missing {', '.join(missing)} (or use --template)")

    try:
        row = _store().create_formula(
            company_id,
            concept_code,
            fields.pop("concept_type"),
            fields.pop("name"),
            fields.pop("expression"),
            created_by=created_by,
            **fields,
        )
    except (FormulaError, VersionConflictError, ValueError) as e:
        _raise_formula_error(e)

    if as_json:
        click.echo(json.dumps(row.model_dump(mode="json"), indent=2))
        return
    click.echo(click.style("Created formula", fg="green"))
    _echo_row(row)


@formula.command("new-version")
@click.argument("formula_id")
@click.option("--name", help="Concept name.")
@click.option("--expression", "-e", help="Formula expression.")
@click.option("--fiscal-year", type=int, help="Apply to a whole fiscal year.")
@click.option("--valid-from", type=DATE, help="First day the formula applies (YYYY-MM-DD).")
@click.option("--valid-to", type=DATE, help="First day it no longer applies (YYYY-MM-DD).")
@click.option("--taxable/--not-taxable", default=None, help="Subject to ISR.")
@click.option("--exempt-limit", help="Exempt limit multiplier (or amount for FIXED).")
@click.option("--exempt-limit-type", type=click.Choice(LIMIT_TYPES, case_sensitive=False))
@click.option("--created-by", help="User recorded as author.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def formula_new_version(formula_id, name, expression, fiscal_year, valid_from, valid_to,
                        taxable, exempt_limit, exempt_limit_type, created_by, as_json):
    """Supersede FORMULA_ID with a new version.

    Fields not given are inherited from the current version.
    """
    changes = {
        "name": name,
        "expression": expression,
        "fiscal_year": fiscal_year,
        "valid_from": valid_from.date() if valid_from else None,
        "valid_to": valid_to.date() if valid_to else None,
        "is_taxable": taxable,
        "exempt_limit": exempt_limit,
        "exempt_limit_type": exempt_limit_type.upper() if exempt_limit_type else None,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        raise click.UsageError("Nothing to change")

    try:
        row = _store().create_new_version(formula_id, changes, created_by=created_by)
    except (FormulaError, FormulaNotFoundError, VersionConflictError, ValueError) as e:
        _raise_formula_error(e)

    if as_json:
        click.echo(json.dumps(row.model_dump(mode="json"), indent=2))
        return
    click.echo(click.style(f"Created version {row.version}", fg="green"))
    _echo_row(row)


@formula.command("resolve")
@click.argument("company_id")
@click.argument("concept_code")
@click.argument("target_date", type=DATE)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def formula_resolve(company_id, concept_code, target_date, as_json):
    """Show the formula in effect for a concept on TARGET_DATE."""
    try:
        resolved = _store().resolve_formula_for_date(company_id, concept_code, target_date.date())
    except ValueError as e:
        raise click.ClickException(str(e))

    if resolved is None:
        raise click.ClickException(f"No active formula for {company_id}/{concept_code}")

    if as_json:
        data = resolved.formula.model_dump(mode="json")
        data["resolved_by"] = resolved.resolved_by
        click.echo(json.dumps(data, indent=2))
        return
    click.echo(f"Resolved by {resolved.resolved_by}:")
    _echo_row(resolved.formula)


@formula.command("history")
@click.argument("company_id")
@click.argument("concept_code")
def formula_history(company_id, concept_code):
    """Show every version of a concept formula, newest first."""
    try:
        rows = _store().version_history(company_id, concept_code)
    except ValueError as e:
        raise click.ClickException(str(e))

    if not rows:
        click.echo(f"No formulas for {company_id}/{concept_code}")
        return
    for row in rows:
        _echo_row(row)
        click.echo()


@formula.command("list")
@click.argument("company_id")
@click.option("--all", "show_all", is_flag=True, help="Include superseded versions.")
def formula_list(company_id, show_all):
    """List the formulas of a company."""
    try:
        rows = _store().list_formulas(company_id, active_only=not show_all)
    except ValueError as e:
        raise click.ClickException(str(e))

    if not rows:
        click.echo(f"No formulas for {company_id}")
        return
    for row in rows:
        marker = "" if row.is_active else " (superseded)"
        click.echo(f"  {row.concept_code:<8} v{row.version:<3} {_format_scope(row):<28} {row.name}{marker}")


@formula.command("delete")
@click.argument("formula_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation.")
def formula_delete(formula_id, force):
    """Delete a formula that no history depends on."""
    if not force:
        click.confirm(f"Delete formula {formula_id}?", abort=True)
    try:
        _store().delete_formula(formula_id)
    except (FormulaNotFoundError, FormulaImmutableError) as e:
        raise click.ClickException(str(e))
    click.echo(click.style(f"Deleted formula {formula_id}", fg="green"))
