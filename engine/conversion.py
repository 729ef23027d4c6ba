"""
Quote -> WorkOrder conversion.

Full conversion (no selection, or a selection covering every line item):
  the new work order receives everything; the quote is emptied, linked to the
  work order and archived.  It is kept as a read-only reference.

Partial conversion:
  the selected parts/labor are moved to a new work order; the rest stay on
  the quote, which remains an open Quote.

Nothing here touches storage.  The caller gets both aggregates back and must
persist them in one transaction (OrderService.convert_quote does).
"""
import logging
from datetime import datetime
from typing import Optional

from models.line_items import new_id
from models.order import OrderStatus, Quote, WorkOrder, utcnow
from models.result import ConversionResult, Selection
from .errors import ValidationError
from .ledger import assert_conserved, take_line_items, value_of
from .status_machine import TransitionContext, request_transition

logger = logging.getLogger(__name__)


def convert(
    quote: Quote,
    selection: Optional[Selection] = None,
    *,
    new_work_order_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConversionResult:
    """
    Move line items from *quote* into a new WorkOrder (status Created).

    Raises ValidationError when the quote cannot be converted, when the
    selection is empty, or when it names items that are not on the quote.
    The input quote is never modified.
    """
    _check_convertible(quote)
    now = now or utcnow()

    if selection is None:
        part_ids, labor_ids = quote.part_ids, quote.labor_ids
    else:
        if selection.is_empty:
            raise ValidationError(
                "Select at least one part or labor item to convert",
                order_id=quote.id,
                field="selection",
            )
        part_ids, labor_ids = selection.part_ids, selection.labor_ids

    updated = quote.model_copy(deep=True)
    moved_parts, moved_labor = take_line_items(updated, part_ids, labor_ids)

    work_order = WorkOrder(
        id=new_work_order_id or new_id(),
        title=quote.title,
        customer_id=quote.customer_id,
        vehicle_id=quote.vehicle_id,
        services=[s.model_copy() for s in quote.services],
        parts=moved_parts,
        labor=moved_labor,
        status=OrderStatus.CREATED,
        source_quote_id=quote.id,
        created_at=now,
        updated_at=now,
        status_changed_at=now,
    )

    updated.converted_work_order_ids.append(work_order.id)
    updated.updated_at = now

    archived = updated.is_empty
    if archived:
        # Archive before linking: a linked (consumed) quote accepts no transitions.
        updated = request_transition(updated, OrderStatus.QUOTE_ARCHIVED, TransitionContext(now=now))
        updated.linked_work_order_id = work_order.id

    assert_conserved(quote, [updated, work_order])

    logger.info(
        "Quote %s -> work order %s (%s, %d part(s), %d labor, value %s)%s",
        quote.id,
        work_order.id,
        "full" if archived else "partial",
        len(moved_parts),
        len(moved_labor),
        value_of(work_order),
        "; quote archived" if archived else "",
    )
    return ConversionResult(
        new_work_order=work_order,
        updated_quote=updated,
        quote_archived=archived,
    )


def _check_convertible(quote: Quote) -> None:
    if not isinstance(quote, Quote):
        raise ValidationError(
            "Only quotes can be converted to work orders",
            order_id=getattr(quote, "id", None),
        )
    if quote.consumed:
        raise ValidationError(
            f"Quote was already converted to work order {quote.linked_work_order_id}",
            order_id=quote.id,
        )
    if quote.status != OrderStatus.QUOTE:
        raise ValidationError(
            f"Quote is '{quote.status.value}'; unarchive it before converting",
            order_id=quote.id,
            field="status",
        )
    if quote.is_empty:
        raise ValidationError(
            "This quote has no parts or labor to convert",
            order_id=quote.id,
        )
