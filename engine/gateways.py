"""
Collaborators the engine consumes but does not own.

  NotesGateway  -- answers "has a technician written a progress note?" for the
                   inspection-complete guard.
  TaxPolicy     -- supplies the tax rate (a percentage) used by compute_totals.
"""
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from models.order import Order
    from .repository import OrderRepository

logger = logging.getLogger(__name__)

DEFAULT_TAX_RATE = Decimal("8")     # percent


class NotesGateway(Protocol):
    def has_non_system_progress_note(self, order_id: str) -> bool:
        ...


class TaxPolicy(Protocol):
    def rate_for(self, order: "Order") -> Decimal:
        ...


class SqliteNotesGateway:
    """NotesGateway backed by the repository's notes table."""

    def __init__(self, repository: "OrderRepository") -> None:
        self.repository = repository

    def has_non_system_progress_note(self, order_id: str) -> bool:
        found = self.repository.count_notes(order_id, include_system=False) > 0
        logger.debug("Progress note present for %s: %s", order_id, found)
        return found


class FlatTaxPolicy:
    """The same rate for every order."""

    def __init__(self, rate: Decimal | str | float = DEFAULT_TAX_RATE) -> None:
        self.rate = Decimal(str(rate))
        if self.rate < 0:
            raise ValueError(f"Tax rate cannot be negative: {self.rate}")

    def rate_for(self, order: "Order") -> Decimal:
        return self.rate
