"""
Line-item ledger: the parts and labor collections of one Order.

Every mutator
  - refuses orders that are no longer editable (archived/consumed quotes,
    invoiced/cancelled work orders),
  - works on a deep copy and returns the new snapshot,
  - finishes through _ledger_mutation, which runs derive_auto_transition.
That wrapper is the only place derived statuses are computed.

compute_totals() and the value helpers are pure and never cache anything on
the Order.
"""
import functools
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from models.line_items import Labor, Part
from models.order import Order, utcnow
from models.result import Totals
from .errors import IntegrityError, ValidationError, from_pydantic
from .status_machine import derive_auto_transition, is_editable

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
PART_FLAGS = ("ordered", "received")

_PART_PATCHABLE = frozenset(Part.model_fields) - {"id"}
_LABOR_PATCHABLE = frozenset({"description", "quantity", "rate", "billing_type"})
_LABOR_ADAPTER: TypeAdapter = TypeAdapter(Labor)


def _ledger_mutation(func: Callable[..., None]) -> Callable[..., Order]:
    """Run *func* against a copy of the order, then derive status from the result."""

    @functools.wraps(func)
    def wrapper(order: Order, *args: Any, now: Optional[datetime] = None, **kwargs: Any) -> Order:
        if not is_editable(order):
            raise ValidationError(
                f"Order is not editable in status '{order.status.value}'",
                order_id=order.id,
            )
        updated = order.model_copy(deep=True)
        func(updated, *args, **kwargs)
        updated.updated_at = now or utcnow()
        return derive_auto_transition(updated, now=updated.updated_at)

    return wrapper


# ------------------------------------------------------------------
# Parts
# ------------------------------------------------------------------

@_ledger_mutation
def add_part(order: Order, part: Part | dict) -> None:
    """
    Append a part.  ordered/received default to False; a caller importing
    already-purchased items (e.g. from a receipt) may pass them set.
    """
    if isinstance(part, dict) and part.get("received") and "ordered" not in part:
        part = {**part, "ordered": True}
    new_part = _build_part(part, order.id)
    if new_part.id in order.part_ids:
        raise ValidationError(f"Part {new_part.id} is already on this order", order_id=order.id, field="parts")
    order.parts.append(new_part)
    logger.info("Order %s: added part '%s' x%d", order.id, new_part.name, new_part.quantity)


@_ledger_mutation
def update_part(order: Order, part_id: str, patch: dict) -> None:
    """
    Apply *patch* to one part.  The id cannot change.  Flag edits keep
    received => ordered: ordered=False clears received, received=True sets ordered.
    """
    index = _part_index(order, part_id)
    unknown = set(patch) - _PART_PATCHABLE
    if unknown:
        raise ValidationError(
            f"Cannot update part field(s): {', '.join(sorted(unknown))}",
            order_id=order.id,
            field="parts",
        )
    merged = {**order.parts[index].model_dump(), **patch}
    _reconcile_flags(merged, patch, order.id)
    order.parts[index] = _build_part(merged, order.id)


@_ledger_mutation
def remove_part(order: Order, part_id: str) -> None:
    index = _part_index(order, part_id)
    removed = order.parts.pop(index)
    logger.info("Order %s: removed part '%s'", order.id, removed.name)


@_ledger_mutation
def set_part_flag(order: Order, part_id: str, field: str, value: bool) -> None:
    """Set ordered or received on one part, keeping received => ordered."""
    if field not in PART_FLAGS:
        raise ValidationError(
            f"Unknown part flag '{field}' (expected one of {', '.join(PART_FLAGS)})",
            order_id=order.id,
            field=field,
        )
    index = _part_index(order, part_id)
    patch = {field: bool(value)}
    merged = {**order.parts[index].model_dump(), **patch}
    _reconcile_flags(merged, patch, order.id)
    order.parts[index] = _build_part(merged, order.id)


@_ledger_mutation
def bulk_assign_order_number(order: Order, vendor: str, order_number: str) -> None:
    """
    Stamp *order_number* on every part bought from *vendor* and mark it ordered.
    Running it again with the same arguments leaves the ledger unchanged.
    """
    vendor = (vendor or "").strip()
    order_number = (order_number or "").strip()
    if not vendor:
        raise ValidationError("Vendor is required", order_id=order.id, field="vendor")
    if not order_number:
        raise ValidationError("Order number is required", order_id=order.id, field="order_number")

    matched = 0
    for i, part in enumerate(order.parts):
        if (part.vendor or "").strip() != vendor:
            continue
        order.parts[i] = part.model_copy(update={
            "purchase_order_number": order_number,
            "ordered": True,
        })
        matched += 1

    if matched:
        logger.info("Order %s: order number %s set on %d part(s) from %s",
                    order.id, order_number, matched, vendor)
    else:
        logger.info("Order %s: no parts from vendor %s", order.id, vendor)


# ------------------------------------------------------------------
# Labor
# ------------------------------------------------------------------

@_ledger_mutation
def add_labor(order: Order, labor: Labor | dict) -> None:
    new_labor = _build_labor(labor, order.id)
    if new_labor.id in order.labor_ids:
        raise ValidationError(f"Labor {new_labor.id} is already on this order", order_id=order.id, field="labor")
    order.labor.append(new_labor)
    logger.info("Order %s: added labor '%s'", order.id, new_labor.description)


@_ledger_mutation
def update_labor(order: Order, labor_id: str, patch: dict) -> None:
    index = _labor_index(order, labor_id)
    unknown = set(patch) - _LABOR_PATCHABLE
    if unknown:
        raise ValidationError(
            f"Cannot update labor field(s): {', '.join(sorted(unknown))}",
            order_id=order.id,
            field="labor",
        )
    merged = {**order.labor[index].model_dump(), **patch}
    order.labor[index] = _build_labor(merged, order.id)


@_ledger_mutation
def remove_labor(order: Order, labor_id: str) -> None:
    index = _labor_index(order, labor_id)
    removed = order.labor.pop(index)
    logger.info("Order %s: removed labor '%s'", order.id, removed.description)


# ------------------------------------------------------------------
# Moving items between orders
# ------------------------------------------------------------------

def take_line_items(
    order: Order,
    part_ids: Iterable[str],
    labor_ids: Iterable[str],
) -> tuple[list[Part], list[Labor]]:
    """
    Remove the given items from *order* IN PLACE and return them.

    Only called on a working copy owned by the conversion / split engines.
    Unknown ids raise ValidationError before anything is removed.
    """
    part_ids = set(part_ids)
    labor_ids = set(labor_ids)

    missing_parts = part_ids - order.part_ids
    missing_labor = labor_ids - order.labor_ids
    if missing_parts:
        raise ValidationError(
            f"Part(s) not on order: {', '.join(sorted(missing_parts))}",
            order_id=order.id,
            field="part_ids",
        )
    if missing_labor:
        raise ValidationError(
            f"Labor item(s) not on order: {', '.join(sorted(missing_labor))}",
            order_id=order.id,
            field="labor_ids",
        )

    moved_parts = [p for p in order.parts if p.id in part_ids]
    moved_labor = [item for item in order.labor if item.id in labor_ids]
    order.parts = [p for p in order.parts if p.id not in part_ids]
    order.labor = [item for item in order.labor if item.id not in labor_ids]
    return moved_parts, moved_labor


def assert_conserved(before: Order, after: Iterable[Order]) -> None:
    """
    Check that *after* holds exactly the line items of *before*: same total
    value, every id present once, nothing added or lost.
    """
    after = list(after)
    ids_before = line_item_ids(before)
    seen: set[str] = set()
    for order in after:
        ids = line_item_ids(order)
        overlap = seen & ids
        if overlap:
            raise IntegrityError(
                f"Line item(s) present on two orders: {', '.join(sorted(overlap))}",
                order_id=before.id,
            )
        seen |= ids
    if seen != ids_before:
        raise IntegrityError(
            "Line items were lost or invented while moving between orders",
            order_id=before.id,
        )

    value_after = sum((value_of(o) for o in after), Decimal("0"))
    if value_after != value_of(before):
        raise IntegrityError(
            f"Order value not conserved: {value_of(before)} before, {value_after} after",
            order_id=before.id,
        )


# ------------------------------------------------------------------
# Cost math
# ------------------------------------------------------------------

def part_subtotal(part: Part) -> Decimal:
    return part.subtotal


def labor_subtotal(labor: Labor) -> Decimal:
    """hourly -> quantity * rate; fixed -> rate (quantity is not a multiplier)."""
    return labor.subtotal


def value_of(order: Order) -> Decimal:
    """Unrounded sum of every line item on the order."""
    parts = sum((part_subtotal(p) for p in order.parts), Decimal("0"))
    labor = sum((labor_subtotal(item) for item in order.labor), Decimal("0"))
    return parts + labor


def line_item_ids(order: Order) -> set[str]:
    return order.part_ids | order.labor_ids


def compute_totals(order: Order, tax_rate: Decimal | str | float) -> Totals:
    """
    Cost breakdown for *order*.  *tax_rate* is a percentage (8 means 8%).
    Pure: recomputed from the line items on every call.
    """
    rate = Decimal(str(tax_rate))
    if rate < 0:
        raise ValidationError(f"Tax rate cannot be negative: {rate}", order_id=order.id, field="tax_rate")

    parts_cost = _cents(sum((part_subtotal(p) for p in order.parts), Decimal("0")))
    labor_cost = _cents(sum((labor_subtotal(item) for item in order.labor), Decimal("0")))
    subtotal = parts_cost + labor_cost
    tax_amount = _cents(subtotal * rate / Decimal("100"))
    return Totals(
        parts_cost=parts_cost,
        labor_cost=labor_cost,
        subtotal=subtotal,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=subtotal + tax_amount,
    )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def _build_part(data: Part | dict, order_id: str) -> Part:
    if isinstance(data, Part):
        data = data.model_dump()
    try:
        return Part.model_validate(data)
    except PydanticValidationError as exc:
        raise from_pydantic(exc, order_id=order_id) from exc


def _build_labor(data: Labor | dict, order_id: str) -> Labor:
    if not isinstance(data, dict):
        data = data.model_dump()
    data = {"billing_type": "hourly", **data}
    try:
        return _LABOR_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise from_pydantic(exc, order_id=order_id) from exc


def _reconcile_flags(merged: dict, patch: dict, order_id: str) -> None:
    if patch.get("ordered") is False and patch.get("received") is True:
        raise ValidationError(
            "A part cannot be received without being ordered",
            order_id=order_id,
            field="received",
        )
    if "ordered" in patch and not patch["ordered"]:
        merged["received"] = False
    if patch.get("received"):
        merged["ordered"] = True


def _part_index(order: Order, part_id: str) -> int:
    for i, part in enumerate(order.parts):
        if part.id == part_id:
            return i
    raise ValidationError(f"Part {part_id} is not on this order", order_id=order.id, field="part_id")


def _labor_index(order: Order, labor_id: str) -> int:
    for i, item in enumerate(order.labor):
        if item.id == labor_id:
            return i
    raise ValidationError(f"Labor {labor_id} is not on this order", order_id=order.id, field="labor_id")
