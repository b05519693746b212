"""Config CLI commands for Nomina Calc.

Machine settings live in settings.json; per-company rounding and IMSS risk
class live under ``companies.<id>`` in profile.yaml.
"""

import json
import os
from typing import get_args

import click
import yaml

from nominacalc.sdk import (
    get_config_dir,
    get_settings_path,
    load_settings,
    get_setting,
    set_setting,
    get_profile_path,
    load_profile,
    get_profile_value,
    set_profile_value,
    get_company_config,
    get_data_path,
    get_user_fiscal_tables_dir,
    available_years,
    load_company_rounding_policy,
    RoundingMethod,
)
from nominacalc.sdk.rounding import MAX_PRECISION
from nominacalc.sdk.schemas import RiskClass

SETTING_KEYS = ("data_dir", "default_rounding_method", "default_rounding_precision")


@click.group()
def config():
    """Show and change configuration.

    \b
    settings.json: data_dir, default_rounding_method, default_rounding_precision
    profile.yaml:  companies.<id>.rounding_method / rounding_precision / risk_class
    """
    pass


@config.command("path")
def config_path():
    """Show configuration and data paths."""
    env_path = os.environ.get("NOMINA_CALC_CONFIG_PATH")
    config_dir = get_config_dir()

    click.echo("Configuration paths:")
    click.echo()
    click.echo(f"  Config directory: {config_dir}")
    click.echo("    (from NOMINA_CALC_CONFIG_PATH)" if env_path else "    (XDG default)")

    settings_path = get_settings_path()
    status = "exists" if settings_path.exists() else "not found"
    click.echo(f"  Settings file:    {settings_path} [{status}]")

    profile_path = get_profile_path()
    status = "exists" if profile_path.exists() else "not found"
    click.echo(f"  Profile file:     {profile_path} [{status}]")

    click.echo(f"  Fiscal tables:    {get_user_fiscal_tables_dir()} (overrides)")
    click.echo(f"  Data directory:   {get_data_path()}")


@config.command("show")
@click.option("--company", "company_id", help="Show the effective settings of one company.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def config_show(company_id, as_json):
    """Show settings, company configuration and available fiscal years."""
    if company_id:
        policy = load_company_rounding_policy(company_id)
        data = {
            "company_id": company_id,
            "config": get_company_config(company_id),
            "effective_rounding": policy.model_dump(mode="json"),
        }
        if as_json:
            click.echo(json.dumps(data, indent=2))
            return
        click.echo(f"Company: {company_id}")
        click.echo(f"  Rounding: {policy.method.value} to {policy.precision} places")
        risk_class = data["config"].get("risk_class")
        click.echo(f"  Risk class: {risk_class or '(not set)'}")
        return

    data = {
        "settings": load_settings(),
        "profile": load_profile(),
        "fiscal_years": available_years(),
    }
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Settings ({get_settings_path()}):")
    if data["settings"]:
        for key, value in data["settings"].items():
            click.echo(f"  {key}: {value}")
    else:
        click.echo("  (defaults)")

    click.echo()
    click.echo(f"Profile ({get_profile_path()}):")
    if data["profile"]:
        for line in yaml.dump(data["profile"], default_flow_style=False, sort_keys=False).splitlines():
            click.echo(f"  {line}")
    else:
        click.echo("  (empty)")

    click.echo()
    years = ", ".join(str(y) for y in data["fiscal_years"]) or "none"
    click.echo(f"Fiscal tables available for: {years}")


@config.command("set-rounding")
@click.argument("company_id")
@click.option(
    "--method", "-m",
    type=click.Choice([m.value for m in RoundingMethod], case_sensitive=False),
    help="Rounding method.",
)
@click.option(
    "--precision", "-p",
    type=click.IntRange(0, MAX_PRECISION),
    help="Decimal places for currency amounts.",
)
def config_set_rounding(company_id, method, precision):
    """Set the rounding policy of a company.

    \b
    Examples:
      nomina-calc config set-rounding acme --method HALF_EVEN
      nomina-calc config set-rounding acme --precision 2
    """
    if method is None and precision is None:
        raise click.UsageError("Give --method, --precision or both")

    if method is not None:
        set_profile_value(f"companies.{company_id}.rounding_method", method.upper())
    if precision is not None:
        set_profile_value(f"companies.{company_id}.rounding_precision", precision)

    policy = load_company_rounding_policy(company_id)
    click.echo(f"Rounding for {company_id}: {policy.method.value} to {policy.precision} places")
    click.echo(f"Saved to: {get_profile_path()}")


@config.command("set-risk-class")
@click.argument("company_id")
@click.argument("risk_class", type=click.Choice(get_args(RiskClass), case_sensitive=False))
def config_set_risk_class(company_id, risk_class):
    """Set the IMSS work-risk class of a company (CLASE_I..CLASE_V)."""
    path = set_profile_value(f"companies.{company_id}.risk_class", risk_class.upper())
    click.echo(f"Risk class for {company_id}: {risk_class.upper()}")
    click.echo(f"Saved to: {path}")


@config.command("get")
@click.argument("key")
def config_get(key):
    """Get a settings.json value, or a profile value by dot-notation KEY.

    \b
    Examples:
      nomina-calc config get default_rounding_method
      nomina-calc config get companies.acme.risk_class
    """
    value = get_profile_value(key) if "." in key else get_setting(key)
    if value is None:
        raise click.ClickException(f"'{key}' is not set")

    if isinstance(value, (dict, list)):
        click.echo(yaml.dump(value, default_flow_style=False).rstrip())
    else:
        click.echo(value)


@config.command("set")
@click.argument("key", type=click.Choice(SETTING_KEYS))
@click.argument("value")
def config_set(key, value):
    """Set a machine setting in settings.json.

    The default rounding applies to companies without their own policy.
    """
    if key == "default_rounding_method":
        try:
            value = RoundingMethod(value.upper()).value
        except ValueError:
            raise click.BadParameter(f"Unknown rounding method {value}", param_hint="VALUE")
    elif key == "default_rounding_precision":
        if not value.isdigit() or int(value) > MAX_PRECISION:
            raise click.BadParameter(f"Precision must be 0-{MAX_PRECISION}", param_hint="VALUE")
        value = int(value)

    path = set_setting(key, value)
    click.echo(f"{key}: {value}")
    click.echo(f"Saved to: {path}")
