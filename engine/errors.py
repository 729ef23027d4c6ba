"""
Error taxonomy for the order engine.

Pure engine functions raise these.  OrderService catches them at the module
boundary and hands them back inside a CommandResult; the HTTP layer maps each
kind to a status code (see api/app.py).
"""
from typing import Optional

from pydantic import ValidationError as PydanticValidationError


class OrderError(Exception):
    """Base class for every failure the engine reports to callers."""
    kind = "OrderError"

    def __init__(
        self,
        message: str,
        *,
        order_id: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.field = field

    def to_dict(self) -> dict:
        return {
            "error":    self.kind,
            "message":  self.message,
            "order_id": self.order_id,
            "field":    self.field,
        }


class ValidationError(OrderError):
    """Malformed or missing input, empty selection, unknown line-item id."""
    kind = "ValidationError"


class InvalidTransition(OrderError):
    """The requested status edge is not in the allowed table."""
    kind = "InvalidTransition"


class GuardNotSatisfied(OrderError):
    """The edge exists but its transition-specific precondition failed."""
    kind = "GuardNotSatisfied"


class ConflictError(OrderError):
    """A write referenced a stale version.  Reload and retry."""
    kind = "ConflictError"


class NotFoundError(OrderError):
    kind = "NotFoundError"


class IntegrityError(OrderError):
    """An engine invariant (value conservation, disjointness) did not hold."""
    kind = "IntegrityError"


def from_pydantic(exc: PydanticValidationError, *, order_id: Optional[str] = None) -> ValidationError:
    """Translate a pydantic validation failure into the engine's ValidationError."""
    errors = exc.errors()
    if not errors:
        return ValidationError(str(exc), order_id=order_id)
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return ValidationError(first.get("msg", str(exc)), order_id=order_id, field=field)
