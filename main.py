#!/usr/bin/env python3
"""
Work Order Engine: CLI entry point.

Usage examples:
  python main.py init-db                                   # Create data/orders.db
  python main.py list --kind work_order                    # Newest orders first
  python main.py show 3f2a...                              # Full order as JSON
  python main.py totals 3f2a...                            # Cost breakdown
  python main.py transition 3f2a... "Inspection In Progress"
  python main.py transition 3f2a... "On Hold" --hold-reason "Other" --hold-reason-other "Customer abroad"
  python main.py convert 9b1c...                           # Full quote conversion
  python main.py convert 9b1c... --part p1 --labor l1      # Partial conversion
  python main.py split 3f2a... --title "Brakes" --part p1
  python main.py order-number 3f2a... "RockAuto" "RA-1001"
"""
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from config import Config
from engine.service import CommandResult, OrderService
from engine.status_machine import allowed_targets


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )


def _service(ctx: click.Context) -> OrderService:
    if "service" not in ctx.obj:
        ctx.obj["service"] = OrderService.from_config(ctx.obj["config"])
    return ctx.obj["service"]


def _unwrap(result: CommandResult):
    """Return the command value, or print the error and exit non-zero."""
    if result.ok:
        return result.value
    error = result.error
    click.echo(f"  ✗ {error.kind}: {error.message}", err=True)
    sys.exit(1)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--db", "db_path", default=None, type=click.Path(dir_okay=False), help="SQLite database file")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, db_path: Optional[str]) -> None:
    """Work Order Engine: quotes, work orders, parts and labor."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)
    config = Config()
    if db_path:
        config.db_path = Path(db_path)
    ctx.obj["config"] = config


# --------------------------------------------------------------------
# Storage
# --------------------------------------------------------------------

@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database and its tables if they do not exist."""
    service = _service(ctx)
    counts = service.repository.count_orders()
    click.echo(f"  Database ready: {service.repository.db_path}")
    click.echo(f"  Quotes: {counts['quote']}   Work orders: {counts['work_order']}")


# --------------------------------------------------------------------
# Queries
# --------------------------------------------------------------------

@cli.command()
@click.argument("order_id")
@click.pass_context
def show(ctx: click.Context, order_id: str) -> None:
    """Print one order as JSON."""
    order = _unwrap(_service(ctx).get_order(order_id))
    data = order.model_dump(mode="json")
    data["allowed_transitions"] = sorted(s.value for s in allowed_targets(order))
    _echo_json(data)


@cli.command("list")
@click.option("--kind", type=click.Choice(["quote", "work_order"]), default=None)
@click.option("--status", default=None, help="Status label, e.g. 'Parts Ordered'")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def list_orders(ctx: click.Context, kind: Optional[str], status: Optional[str], limit: int) -> None:
    """List orders, newest first."""
    orders = _unwrap(_service(ctx).list_orders(kind=kind, status=status, limit=limit))
    if not orders:
        click.echo("  No orders found.")
        return
    for order in orders:
        click.echo(
            f"  {order.id}  {order.kind:<10}  {order.status.value:<35}  "
            f"v{order.version:<3}  {order.title or '-'}"
        )


@cli.command()
@click.argument("order_id")
@click.pass_context
def totals(ctx: click.Context, order_id: str) -> None:
    """Print the cost breakdown of an order."""
    result = _unwrap(_service(ctx).totals(order_id))
    click.echo(f"  Parts:     {result.parts_cost:>10}")
    click.echo(f"  Labor:     {result.labor_cost:>10}")
    click.echo(f"  Subtotal:  {result.subtotal:>10}")
    click.echo(f"  Tax ({result.tax_rate}%): {result.tax_amount:>7}")
    click.echo(f"  Total:     {result.total:>10}")


# --------------------------------------------------------------------
# Commands
# --------------------------------------------------------------------

@cli.command()
@click.argument("order_id")
@click.argument("target")
@click.option("--hold-reason", default=None, help="Required when TARGET is 'On Hold'")
@click.option("--hold-reason-other", default=None, help="Description for hold reason 'Other'")
@click.option("--expected-version", type=int, default=None)
@click.pass_context
def transition(
    ctx: click.Context,
    order_id: str,
    target: str,
    hold_reason: Optional[str],
    hold_reason_other: Optional[str],
    expected_version: Optional[int],
) -> None:
    """Move an order to TARGET status."""
    order = _unwrap(_service(ctx).request_transition(
        order_id, target,
        hold_reason=hold_reason,
        hold_reason_other=hold_reason_other,
        expected_version=expected_version,
    ))
    click.echo(f"  ✓ {order.id} is now '{order.status.value}' (v{order.version})")


@cli.command()
@click.argument("quote_id")
@click.option("--part", "part_ids", multiple=True, help="Part id to convert (repeatable)")
@click.option("--labor", "labor_ids", multiple=True, help="Labor id to convert (repeatable)")
@click.pass_context
def convert(ctx: click.Context, quote_id: str, part_ids: tuple, labor_ids: tuple) -> None:
    """Convert a quote to a work order.  No --part/--labor means everything."""
    partial = bool(part_ids or labor_ids)
    result = _unwrap(_service(ctx).convert_quote(
        quote_id,
        part_ids=list(part_ids) if partial else None,
        labor_ids=list(labor_ids) if partial else None,
    ))
    click.echo(f"  ✓ Work order created: {result.new_work_order.id}")
    if result.quote_archived:
        click.echo(f"  Quote {quote_id} archived")
    else:
        remaining = len(result.updated_quote.parts) + len(result.updated_quote.labor)
        click.echo(f"  Quote {quote_id} keeps {remaining} line item(s)")


@cli.command()
@click.argument("work_order_id")
@click.option("--title", required=True, help="Title of the new work order")
@click.option("--part", "part_ids", multiple=True, help="Part id to move (repeatable)")
@click.option("--labor", "labor_ids", multiple=True, help="Labor id to move (repeatable)")
@click.pass_context
def split(ctx: click.Context, work_order_id: str, title: str, part_ids: tuple, labor_ids: tuple) -> None:
    """Move line items from a work order into a new one."""
    result = _unwrap(_service(ctx).split_work_order(
        work_order_id, part_ids=part_ids, labor_ids=labor_ids, new_title=title,
    ))
    click.echo(f"  ✓ New work order: {result.new_work_order.id} ('{result.new_work_order.title}')")
    click.echo(f"  {work_order_id} is '{result.original_work_order.status.value}'")


@cli.command("order-number")
@click.argument("order_id")
@click.argument("vendor")
@click.argument("order_number")
@click.pass_context
def order_number(ctx: click.Context, order_id: str, vendor: str, order_number: str) -> None:
    """Set ORDER_NUMBER on every part bought from VENDOR and mark them ordered."""
    order = _unwrap(_service(ctx).bulk_assign_order_number(order_id, vendor, order_number))
    matched = [p for p in order.parts if p.purchase_order_number == order_number.strip()]
    click.echo(f"  ✓ {len(matched)} part(s) from {vendor} now on order {order_number}")
    click.echo(f"  Status: '{order.status.value}'")


@cli.command()
@click.argument("order_id")
@click.argument("content")
@click.option("--customer-facing", is_flag=True, help="Show this note to the customer")
@click.pass_context
def note(ctx: click.Context, order_id: str, content: str, customer_facing: bool) -> None:
    """Add a progress note to an order."""
    added = _unwrap(_service(ctx).add_note(order_id, content, is_customer_facing=customer_facing))
    click.echo(f"  ✓ Note {added['id']} added to {order_id}")


if __name__ == "__main__":
    cli()
