"""Audit command group: inspect and verify the fiscal audit trail."""

import json

import click

from nominacalc.sdk import AuditRecorder, AuditEntryNotFoundError


@click.group()
def audit():
    """Inspect and verify fiscal audit entries.

    Every ISR, subsidy, IMSS and formula amount computed by a payroll run is
    stored with a snapshot of its inputs and rules. 'verify' recomputes the
    amount from that snapshot alone.
    """
    pass


@audit.command("list")
@click.option("--period", "period_id", help="Only entries of this period.")
@click.option("--detail", "payroll_detail_id", help="Only entries of this payroll detail.")
@click.option("--type", "concept_type", help="Only this concept type (ISR, IMSS_EMPLOYEE, FORMULA, ...).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def audit_list(period_id, payroll_detail_id, concept_type, as_json):
    """List audit entries, oldest first."""
    try:
        entries = AuditRecorder().list_entries(
            period_id=period_id,
            payroll_detail_id=payroll_detail_id,
            concept_type=concept_type.upper() if concept_type else None,
        )
    except ValueError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No audit entries found.")
        return

    for entry in entries:
        click.echo(
            f"{entry.id}  {entry.payroll_detail_id:<20} {entry.concept_type:<14} "
            f"{entry.concept_code:<12} {entry.result_amount:>12}  {entry.rule_applied}"
        )
    click.echo(f"\n{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")


@audit.command("show")
@click.argument("entry_id")
def audit_show(entry_id):
    """Show one audit entry with its snapshots."""
    try:
        entry = AuditRecorder().get_entry(entry_id)
    except (AuditEntryNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(entry.model_dump(mode="json"), indent=2))


@audit.command("verify")
@click.argument("entry_id", required=False)
@click.option("--period", "period_id", help="Verify every entry of a period.")
def audit_verify(entry_id, period_id):
    """Recompute entries from their snapshots and compare.

    Exits with an error if any entry does not reproduce its stored amount.
    """
    if bool(entry_id) == bool(period_id):
        raise click.UsageError("Give an ENTRY_ID or --period")

    recorder = AuditRecorder()
    try:
        if entry_id:
            results = [recorder.verify_snapshot_integrity(entry_id)]
        else:
            results = recorder.verify_period(period_id)
    except (AuditEntryNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))

    failed = 0
    for result in results:
        if result.valid:
            click.echo(f"{click.style('OK', fg='green')}      {result.entry_id}  {result.stored}")
        else:
            failed += 1
            click.echo(f"{click.style('FAILED', fg='red')}  {result.entry_id}  {result.stored}")
            for detail in result.details:
                click.echo(f"          {detail}")

    click.echo(f"\n{len(results) - failed} of {len(results)} entries verified")
    if failed:
        raise click.ClickException(f"{failed} audit entr{'y' if failed == 1 else 'ies'} failed verification")


@audit.command("summary")
@click.argument("period_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def audit_summary(period_id, as_json):
    """Totals of a period's audit entries by concept type."""
    try:
        summary = AuditRecorder().summarize_period(period_id)
    except ValueError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps({
            "period_id": summary.period_id,
            "entries": summary.entries,
            "payroll_details": summary.payroll_details,
            "superseded_entries": summary.superseded_entries,
            "by_concept": {
                concept_type: {
                    "entries": s.entries,
                    "total_base": str(s.total_base),
                    "total_result": str(s.total_result),
                    "tables_used": s.tables_used,
                }
                for concept_type, s in summary.by_concept.items()
            },
        }, indent=2))
        return

    if not summary.entries:
        click.echo(f"No audit entries for period {period_id}")
        return

    click.echo(f"Period {period_id}: {summary.entries} entries, {summary.payroll_details} payroll details")
    if summary.superseded_entries:
        click.echo(f"  ({summary.superseded_entries} entries from earlier runs not counted)")
    click.echo()
    click.echo(f"  {'Concept':<14} {'Entries':>8} {'Base':>16} {'Result':>14}")
    for concept_type in sorted(summary.by_concept):
        s = summary.by_concept[concept_type]
        click.echo(f"  {concept_type:<14} {s.entries:>8} {s.total_base:>16,.2f} {s.total_result:>14,.2f}")
