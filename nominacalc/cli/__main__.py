"""Nomina Calc CLI - Payroll formulas, fiscal tables and audit trail."""

import click

from nominacalc import __version__

from .config_commands import config as config_group
from .formula_commands import formula as formula_group
from .tax_commands import tax as tax_group
from .audit_commands import audit as audit_group
from .payroll_commands import payroll as payroll_group


@click.group()
@click.version_option(version=__version__, prog_name="nomina-calc")
def cli():
    """Nomina Calc - Mexican payroll formula and fiscal rule engine.

    Commands for writing and versioning concept formulas, computing ISR and
    IMSS against the yearly fiscal tables, running a payroll period and
    verifying the audit trail it leaves.

    Configuration is loaded from (in order):

    \b
    1. NOMINA_CALC_CONFIG_PATH environment variable
    2. ~/.config/nomina-calc/ (XDG default)

    Run 'nomina-calc config path' to see where files are read from.
    """
    pass


cli.add_command(config_group)
cli.add_command(formula_group)
cli.add_command(tax_group)
cli.add_command(audit_group)
cli.add_command(payroll_group)


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
