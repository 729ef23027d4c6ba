"""
WorkOrder split: move selected line items into a new sibling work order.

The sibling shares the customer/vehicle references, starts at Created and
holds exactly the moved items.  The source keeps the rest; its status is
re-derived from the reduced ledger, which can hold or advance it but never
move it back.
"""
import logging
from datetime import datetime
from typing import Optional

from models.line_items import new_id
from models.order import OrderStatus, WorkOrder, utcnow
from models.result import SplitRequest, SplitResult
from .errors import ValidationError
from .ledger import assert_conserved, take_line_items
from .status_machine import derive_auto_transition, is_editable

logger = logging.getLogger(__name__)


def split(
    source: WorkOrder,
    request: SplitRequest,
    *,
    new_work_order_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SplitResult:
    """
    Split *source* in two.  Raises ValidationError (and changes nothing) for a
    blank title, an empty selection, unknown ids or a closed work order.
    """
    if not isinstance(source, WorkOrder):
        raise ValidationError("Only work orders can be split", order_id=getattr(source, "id", None))

    title = (request.new_title or "").strip()
    if not title:
        raise ValidationError("A title for the new work order is required", order_id=source.id, field="new_title")
    if not request.part_ids and not request.labor_ids:
        raise ValidationError(
            "Select at least one part or labor item to move to the new work order",
            order_id=source.id,
            field="selection",
        )
    if not is_editable(source):
        raise ValidationError(
            f"Cannot split a work order in status '{source.status.value}'",
            order_id=source.id,
            field="status",
        )

    now = now or utcnow()
    remaining = source.model_copy(deep=True)
    moved_parts, moved_labor = take_line_items(remaining, request.part_ids, request.labor_ids)
    remaining.updated_at = now
    remaining = derive_auto_transition(remaining, now=now)

    sibling = WorkOrder(
        id=new_work_order_id or new_id(),
        title=title,
        customer_id=source.customer_id,
        vehicle_id=source.vehicle_id,
        services=[s.model_copy() for s in source.services],
        parts=moved_parts,
        labor=moved_labor,
        status=OrderStatus.CREATED,
        split_from_id=source.id,
        created_at=now,
        updated_at=now,
        status_changed_at=now,
    )

    assert_conserved(source, [remaining, sibling])

    logger.info(
        "Work order %s split: %d part(s), %d labor moved to %s ('%s')",
        source.id, len(moved_parts), len(moved_labor), sibling.id, title,
    )
    return SplitResult(original_work_order=remaining, new_work_order=sibling)
