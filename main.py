#!/usr/bin/env python3
"""
Procurement ledger: CLI entry point.

Usage examples:
  python main.py reconcile                          # Backfill the ledger from existing orders
  python main.py transition <order-id> Approved --code 123456
  python main.py transition <order-id> "Partially Received" -l item-1=4 -l item-2=0

  python main.py item-prices <item-id>              # Price history, metrics, supplier comparison
  python main.py variations --from 2024-01-01 --min-impact 50
  python main.py project <project-id> --json        # Consumption report
  python main.py projects                           # Ranking by projected cost

  python main.py audit                              # Ledger / spend integrity checks
  python main.py backup
"""
import json
import logging
import sys
from pathlib import Path

import click
from pydantic import BaseModel

from config import Config
from models.purchase_order import OrderStatus
from procurement.analytics import PriceIntelligence, ProjectCostTracker
from procurement.auditor import LedgerAuditor
from procurement.backup import BackupService
from procurement.errors import ValidationFailure
from procurement.reconciler import LedgerReconciler
from procurement.store import DocumentStore
from procurement.workflow import OrderStateMachine


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s - %(message)s",
        datefmt="%H:%M:%S",
    )


def _echo_json(model: BaseModel | list) -> None:
    if isinstance(model, list):
        payload = [m.model_dump(mode="json") for m in model]
    else:
        payload = model.model_dump(mode="json")
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _parse_lines(values: tuple[str, ...]) -> list[dict] | None:
    """Turn ("item-1=4", "item-2=0.5") into received-line dicts."""
    if not values:
        return None
    lines = []
    for value in values:
        item_id, sep, quantity = value.partition("=")
        if not sep:
            raise click.BadParameter(f"expected ITEM_ID=QUANTITY, got {value!r}", param_hint="--line")
        try:
            lines.append({"item_id": item_id.strip(), "quantity": float(quantity)})
        except ValueError:
            raise click.BadParameter(f"quantity must be a number in {value!r}", param_hint="--line")
    return lines


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--db", default=None, type=click.Path(dir_okay=False), help="Path to the ledger database")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, db: str | None) -> None:
    """Procurement ledger: order workflow, ledger reconciliation and cost reports."""
    ctx.ensure_object(dict)
    _setup_logging(verbose)
    config = Config()
    if db:
        config.db_path = Path(db)
    ctx.obj["config"] = config
    ctx.obj["store"] = DocumentStore.from_config(config)


# --------------------------------------------------------------------
# reconcile command
# --------------------------------------------------------------------

@cli.command()
@click.option(
    "--strategy", type=click.Choice(["preload", "point_lookup"]), default=None,
    help="How existing ledger keys are checked (default: LEDGER_KEY_STRATEGY or preload)",
)
@click.option("--batch-size", type=int, default=None, help="Entries per committed chunk")
@click.pass_context
def reconcile(ctx: click.Context, strategy: str | None, batch_size: int | None) -> None:
    """Create missing ledger entries for every received or in-transit order."""
    config: Config = ctx.obj["config"]
    if strategy:
        config.ledger_key_strategy = strategy
    if batch_size:
        config.ledger_batch_size = min(batch_size, config.max_batch_operations)

    summary = LedgerReconciler(ctx.obj["store"], config).reconcile_all()

    click.echo()
    click.echo(f"  Orders processed:  {summary.orders_processed}")
    click.echo(f"  Entries created:   {summary.entries_created}")
    click.echo(f"  Already present:   {summary.skipped}")
    for error in summary.errors:
        click.echo(f"  ⚠  {error}")
    click.echo()
    if not summary.success:
        click.echo(f"✗ {summary.message}", err=True)
        sys.exit(1)
    click.echo(f"✓ {summary.message}")


# --------------------------------------------------------------------
# transition command
# --------------------------------------------------------------------

@cli.command()
@click.argument("order_id")
@click.argument("status", type=click.Choice([s.value for s in OrderStatus]))
@click.option("--code", default=None, help="Approval code (required to approve)")
@click.option("--comment", "-c", default=None, help="History comment / rejection reason / reception notes")
@click.option("--line", "-l", "lines", multiple=True, help="Received quantity as ITEM_ID=QUANTITY (repeatable)")
@click.option("--location", default=None, help="Receiving location id")
@click.pass_context
def transition(
    ctx: click.Context,
    order_id: str,
    status: str,
    code: str | None,
    comment: str | None,
    lines: tuple[str, ...],
    location: str | None,
) -> None:
    """Move ORDER_ID to STATUS."""
    machine = OrderStateMachine(ctx.obj["store"], ctx.obj["config"])
    result = machine.request_transition(
        order_id,
        status,
        approval_token=code,
        comment=comment,
        received_lines=_parse_lines(lines),
        location_id=location,
    )
    if not result.success:
        click.echo(f"✗ [{result.error}] {result.message}", err=True)
        sys.exit(1)
    click.echo(f"✓ {result.message}")
    if result.ledger_entries_created:
        click.echo(f"  Ledger entries created: {result.ledger_entries_created}")


# --------------------------------------------------------------------
# report commands
# --------------------------------------------------------------------

@cli.command("item-prices")
@click.argument("item_id")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.pass_context
def item_prices(ctx: click.Context, item_id: str, as_json: bool) -> None:
    """Price history and per-supplier comparison for ITEM_ID."""
    intel = PriceIntelligence(ctx.obj["store"], ctx.obj["config"])
    history = intel.get_item_price_metrics(item_id)
    comparison = intel.get_supplier_comparison(item_id)
    if as_json:
        click.echo(json.dumps({
            "history": history.model_dump(mode="json"),
            "suppliers": [c.model_dump(mode="json") for c in comparison],
        }, indent=2, ensure_ascii=False))
        return

    name = history.item.name if history.item else item_id
    click.echo(f"\n  {name}")
    if history.metrics is None:
        click.echo("  No purchases recorded.\n")
        return
    m = history.metrics
    click.echo(f"  Purchases:      {m.total_purchases}  ({m.total_quantity:g} units, {m.total_spent:.2f} spent)")
    click.echo(f"  Price range:    {m.min_price:.2f} - {m.max_price:.2f}  (avg {m.avg_price:.2f}, variation {m.price_variation:.1f}%)")
    click.echo(f"  Last price:     {m.last_price:.2f} on {m.last_purchase_date:%Y-%m-%d}")
    click.echo("\n  By supplier (cheapest first):")
    for c in comparison:
        click.echo(
            f"    {c.supplier_name or '(unknown)':<30} avg {c.avg_price:>9.2f}  "
            f"last {c.last_price:>9.2f}  ({c.purchase_count} purchases)"
        )
    click.echo()


@cli.command()
@click.option("--from", "start", default=None, help="Window start (ISO date)")
@click.option("--to", "end", default=None, help="Window end (ISO date)")
@click.option("--min-variation", default=0.0, type=float, help="Minimum variation percent")
@click.option("--min-impact", default=0.0, type=float, help="Minimum impact amount")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.pass_context
def variations(
    ctx: click.Context,
    start: str | None,
    end: str | None,
    min_variation: float,
    min_impact: float,
    as_json: bool,
) -> None:
    """Items bought at more than one price, ranked by overspend."""
    try:
        report = PriceIntelligence(ctx.obj["store"], ctx.obj["config"]).get_price_variation_report(
            start, end, min_variation, min_impact,
        )
    except ValidationFailure as exc:
        raise click.BadParameter(str(exc), param_hint="--from/--to")
    if as_json:
        _echo_json(report)
        return
    click.echo(f"\n  {report.total_items} items, total impact {report.total_impact:.2f}, "
               f"average variation {report.avg_variation:.1f}%\n")
    for item in report.items:
        click.echo(
            f"  {item.item_sku or item.item_id:<14} {item.item_name[:36]:<36} "
            f"{item.min_price:>9.2f} - {item.max_price:<9.2f} "
            f"{item.variation_percent:>6.1f}%  impact {item.impact:>10.2f}"
        )
    click.echo()


@cli.command()
@click.argument("project_id")
@click.option("--from", "start", default=None, help="Window start (ISO date)")
@click.option("--to", "end", default=None, help="Window end (ISO date)")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.pass_context
def project(ctx: click.Context, project_id: str, start: str | None, end: str | None, as_json: bool) -> None:
    """Spent, committed and projected cost of PROJECT_ID."""
    try:
        report = ProjectCostTracker(ctx.obj["store"], ctx.obj["config"]).get_project_consumption(
            project_id, start, end,
        )
    except ValidationFailure as exc:
        raise click.BadParameter(str(exc), param_hint="--from/--to")
    if report is None:
        click.echo(f"✗ Project not found: {project_id}", err=True)
        sys.exit(1)
    if as_json:
        _echo_json(report)
        return
    s = report.summary
    click.echo(f"\n  {report.project.name}  ({report.project.client or 'no client'})")
    click.echo(f"  Materials received:   {s.materials_received:>12.2f}")
    click.echo(f"  Materials committed:  {s.materials_committed:>12.2f}")
    click.echo(f"  Travel approved:      {s.travel_approved:>12.2f}")
    click.echo(f"  Travel pending:       {s.travel_pending:>12.2f}")
    click.echo(f"  Total projected:      {s.total_projected:>12.2f}")
    if s.budget_used_percent is not None:
        click.echo(f"  Budget used:          {s.budget_used_percent:>11.1f}%")
    if report.top_by_amount:
        click.echo("\n  Top materials by amount:")
        for m in report.top_by_amount:
            click.echo(f"    {m.item_name[:40]:<40} {m.total_quantity:>8g}  {m.total_amount:>12.2f}")
    click.echo()


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the ranking as JSON")
@click.pass_context
def projects(ctx: click.Context, as_json: bool) -> None:
    """All projects ranked by projected cost."""
    rankings = ProjectCostTracker(ctx.obj["store"], ctx.obj["config"]).get_project_rankings()
    if as_json:
        _echo_json(rankings)
        return
    click.echo()
    for r in rankings:
        click.echo(
            f"  {r.name[:36]:<36} spent {r.total_spent:>12.2f}  "
            f"committed {r.total_committed:>12.2f}  projected {r.total_projected:>12.2f}"
        )
    click.echo()


# --------------------------------------------------------------------
# audit command
# --------------------------------------------------------------------

@cli.command()
@click.pass_context
def audit(ctx: click.Context) -> None:
    """Check the ledger and project travel spend for inconsistencies."""
    report = LedgerAuditor(ctx.obj["store"]).audit()
    click.echo(f"\n  Entries checked:   {report.entries_checked}")
    click.echo(f"  Projects checked:  {report.projects_checked}\n")
    if report.ok:
        click.echo("✓ No issues found")
        return
    for issue in report.issues:
        click.echo(f"  ✗ [{issue.kind}] {issue.description}")
    sys.exit(1)


# --------------------------------------------------------------------
# backup command
# --------------------------------------------------------------------

@cli.command()
@click.option("--destination", "-d", default=None, type=click.Path(file_okay=False), help="Backup directory")
@click.pass_context
def backup(ctx: click.Context, destination: str | None) -> None:
    """Create a timestamped ZIP of the database and settings."""
    config: Config = ctx.obj["config"]
    if destination:
        config.backup_dir = Path(destination)
    try:
        zip_name = BackupService(config).create_backup()
    except Exception as exc:
        click.echo(f"\n✗ Backup failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"✓ Backup successful: {config.backup_dir / zip_name}")


if __name__ == "__main__":
    cli()
