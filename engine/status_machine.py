"""
Order status state machine.

Two kinds of status change exist:

  Manual   request_transition() validates (current, target) against the
           ALLOWED_TRANSITIONS table, then runs any guard attached to the edge:
             Inspection In Progress -> Inspection/Diag Complete
                 needs a non-system progress note (NotesGateway)
             anything -> On Hold
                 needs a HoldReason ("Other" must carry text)

  Derived  derive_auto_transition() looks at the parts ledger and advances a
           work order to Parts Ordered / Parts Received.  It only ever moves
           forward and is invoked from one place: the ledger's mutation
           wrapper (see engine/ledger.py).

Both return a new Order; the input is never modified.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from models.order import (
    HoldReason,
    Order,
    OrderStatus,
    Quote,
    StatusChange,
    WorkOrder,
    utcnow,
)
from .errors import GuardNotSatisfied, InvalidTransition, ValidationError, from_pydantic
from .gateways import NotesGateway

logger = logging.getLogger(__name__)

S = OrderStatus

# Canonical forward order of the work order lifecycle.
FORWARD_ORDER: tuple[OrderStatus, ...] = (
    S.CREATED,
    S.APPOINTMENT_SCHEDULED,
    S.INSPECTION_IN_PROGRESS,
    S.INSPECTION_COMPLETE,
    S.PARTS_ORDERED,
    S.PARTS_RECEIVED,
    S.REPAIR_IN_PROGRESS,
    S.REPAIR_COMPLETE_AWAITING_PAYMENT,
    S.REPAIR_COMPLETE_INVOICED,
)

# States from which "every part ordered" may advance the order: everything
# on the forward path before Parts Ordered.
PRE_ORDER_STATES: frozenset[OrderStatus] = frozenset(FORWARD_ORDER[:FORWARD_ORDER.index(S.PARTS_ORDERED)])

TERMINAL_STATES: frozenset[OrderStatus] = frozenset({
    S.REPAIR_COMPLETE_INVOICED,
    S.CANCELLED,
})

_SIDE = frozenset({S.ON_HOLD, S.CANCELLED})

# Manual edges.  Key: current status, value: statuses it may move to.
# On Hold may additionally return to the status it was held from
# (WorkOrder.status_before_hold); see allowed_targets().
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.QUOTE:                  frozenset({S.QUOTE_ARCHIVED}),
    S.QUOTE_ARCHIVED:         frozenset({S.QUOTE}),

    S.CREATED:                frozenset({S.APPOINTMENT_SCHEDULED, S.INSPECTION_IN_PROGRESS}) | _SIDE,
    S.APPOINTMENT_SCHEDULED:  frozenset({S.CREATED, S.INSPECTION_IN_PROGRESS}) | _SIDE,
    S.INSPECTION_IN_PROGRESS: frozenset({S.INSPECTION_COMPLETE}) | _SIDE,
    S.INSPECTION_COMPLETE:    frozenset({S.PARTS_ORDERED, S.REPAIR_IN_PROGRESS}) | _SIDE,
    S.PARTS_ORDERED:          frozenset({S.PARTS_RECEIVED}) | _SIDE,
    S.PARTS_RECEIVED:         frozenset({S.REPAIR_IN_PROGRESS}) | _SIDE,
    S.REPAIR_IN_PROGRESS:     frozenset({S.REPAIR_COMPLETE_AWAITING_PAYMENT}) | _SIDE,
    S.REPAIR_COMPLETE_AWAITING_PAYMENT: frozenset({S.REPAIR_COMPLETE_INVOICED}) | _SIDE,
    S.REPAIR_COMPLETE_INVOICED: frozenset(),

    S.ON_HOLD:                frozenset({S.CANCELLED}),
    S.CANCELLED:              frozenset(),
}


@dataclass
class TransitionContext:
    """
    Everything a manual transition may need besides the order itself.

    notes        consulted by the inspection-complete guard
    hold_reason  required when the target is On Hold
    now          timestamp to stamp on the change (defaults to utcnow())
    """
    notes: Optional[NotesGateway] = None
    hold_reason: Optional[HoldReason] = None
    now: Optional[datetime] = None


# ------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------

def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def is_editable(order: Order) -> bool:
    """Whether the order's ledger may still be changed."""
    if isinstance(order, Quote):
        return order.status == S.QUOTE and not order.consumed
    return not is_terminal(order.status)


def allowed_targets(order: Order) -> frozenset[OrderStatus]:
    """Statuses the order may be moved to manually from where it is now."""
    if isinstance(order, Quote):
        if order.consumed:
            return frozenset()
        return ALLOWED_TRANSITIONS[order.status]

    targets = ALLOWED_TRANSITIONS.get(order.status, frozenset())
    if order.status == S.ON_HOLD and order.status_before_hold is not None:
        targets = targets | {order.status_before_hold}
    return targets


def coerce_status(value: OrderStatus | str) -> OrderStatus:
    """Accept an OrderStatus, its label ('Parts Ordered') or its name ('PARTS_ORDERED')."""
    if isinstance(value, OrderStatus):
        return value
    text = (value or "").strip()
    try:
        return OrderStatus(text)
    except ValueError:
        pass
    try:
        return OrderStatus[text.upper()]
    except KeyError:
        raise ValidationError(f"Unknown status: '{value}'", field="status") from None


def parse_hold_reason(reason: Optional[str], other_text: Optional[str] = None) -> HoldReason:
    """Build a HoldReason from request fields, raising the engine's ValidationError."""
    if reason is None or not str(reason).strip():
        raise ValidationError("A hold reason is required to place an order on hold", field="hold_reason")
    try:
        return HoldReason(reason=str(reason).strip(), other_text=other_text)
    except PydanticValidationError as exc:
        raise from_pydantic(exc) from exc


# ------------------------------------------------------------------
# Manual transitions
# ------------------------------------------------------------------

def request_transition(
    order: Order,
    target: OrderStatus | str,
    context: Optional[TransitionContext] = None,
) -> Order:
    """
    Move *order* to *target* if the edge is allowed and its guard holds.

    Raises InvalidTransition, GuardNotSatisfied or ValidationError.
    """
    context = context or TransitionContext()
    target = coerce_status(target)

    if target not in allowed_targets(order):
        raise InvalidTransition(
            f"Cannot move {_kind_label(order)} from '{order.status.value}' to '{target.value}'",
            order_id=order.id,
            field="status",
        )

    if order.status == S.INSPECTION_IN_PROGRESS and target == S.INSPECTION_COMPLETE:
        _require_progress_note(order, context)

    if target == S.ON_HOLD and context.hold_reason is None:
        raise ValidationError(
            "A hold reason is required to place an order on hold",
            order_id=order.id,
            field="hold_reason",
        )

    updated = order.model_copy(deep=True)
    if target == S.ON_HOLD:
        updated.hold_reason = context.hold_reason.model_copy()
        updated.status_before_hold = order.status
    elif order.status == S.ON_HOLD:
        updated.hold_reason = None
        updated.status_before_hold = None

    _apply(updated, target, context.now or utcnow(), derived=False)
    logger.info(
        "Order %s: '%s' -> '%s'", order.id, order.status.value, target.value,
    )
    return updated


def _require_progress_note(order: Order, context: TransitionContext) -> None:
    if context.notes is None or not context.notes.has_non_system_progress_note(order.id):
        raise GuardNotSatisfied(
            "Add a progress note before marking the inspection complete",
            order_id=order.id,
            field="notes",
        )


# ------------------------------------------------------------------
# Derived transitions
# ------------------------------------------------------------------

def derive_auto_transition(order: Order, now: Optional[datetime] = None) -> Order:
    """
    Advance a work order from its parts ledger.

    Every part ordered, status pre-order            -> Parts Ordered
    Every part received, status pre-order or
    Parts Ordered                                   -> Parts Received

    Never moves backwards: un-ordering a part later leaves the status alone.
    Quotes, empty ledgers and every other status are returned unchanged.
    """
    if not isinstance(order, WorkOrder) or not order.parts:
        return order

    target: Optional[OrderStatus] = None
    if all(p.received for p in order.parts) and (
        order.status in PRE_ORDER_STATES or order.status == S.PARTS_ORDERED
    ):
        target = S.PARTS_RECEIVED
    elif all(p.ordered for p in order.parts) and order.status in PRE_ORDER_STATES:
        target = S.PARTS_ORDERED

    if target is None:
        return order

    updated = order.model_copy(deep=True)
    _apply(updated, target, now or utcnow(), derived=True)
    logger.debug("Order %s derived '%s' from parts ledger", order.id, target.value)
    return updated


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _apply(order: Order, target: OrderStatus, now: datetime, derived: bool) -> None:
    order.status_history.append(StatusChange(
        from_status=order.status,
        to_status=target,
        changed_at=now,
        derived=derived,
    ))
    order.status = target
    order.status_changed_at = now
    order.updated_at = now


def _kind_label(order: Order) -> str:
    return "quote" if isinstance(order, Quote) else "work order"
