from .errors import (
    OrderError, ValidationError, InvalidTransition, GuardNotSatisfied,
    ConflictError, NotFoundError, IntegrityError,
)
from .gateways import NotesGateway, TaxPolicy, SqliteNotesGateway, FlatTaxPolicy
from .status_machine import (
    TransitionContext, request_transition, derive_auto_transition,
    allowed_targets, is_editable,
)
from .ledger import (
    add_part, update_part, remove_part, set_part_flag, bulk_assign_order_number,
    add_labor, update_labor, remove_labor, compute_totals,
)
from .conversion import convert
from .split import split
from .repository import OrderRepository
from .service import OrderService, CommandResult

__all__ = [
    "OrderError", "ValidationError", "InvalidTransition", "GuardNotSatisfied",
    "ConflictError", "NotFoundError", "IntegrityError",
    "NotesGateway", "TaxPolicy", "SqliteNotesGateway", "FlatTaxPolicy",
    "TransitionContext", "request_transition", "derive_auto_transition",
    "allowed_targets", "is_editable",
    "add_part", "update_part", "remove_part", "set_part_flag", "bulk_assign_order_number",
    "add_labor", "update_labor", "remove_labor", "compute_totals",
    "convert", "split", "OrderRepository", "OrderService", "CommandResult",
]
