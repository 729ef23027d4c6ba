from decimal import Decimal
from typing import Optional, Set

from pydantic import BaseModel, Field

from .order import Quote, WorkOrder


class Totals(BaseModel):
    """
    Cost breakdown of one Order, recomputed from its line items on every call.
    All amounts are rounded to cents; tax_rate is a percentage (8 = 8%).
    """
    parts_cost: Decimal
    labor_cost: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal


class Selection(BaseModel):
    """Line items picked for a partial quote conversion."""
    part_ids: Set[str] = Field(default_factory=set)
    labor_ids: Set[str] = Field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not self.part_ids and not self.labor_ids


class SplitRequest(BaseModel):
    """Line items to move out of a work order, and the new order's title."""
    part_ids: Set[str] = Field(default_factory=set)
    labor_ids: Set[str] = Field(default_factory=set)
    new_title: Optional[str] = None


class ConversionResult(BaseModel):
    """Outcome of converting (part of) a Quote into a new WorkOrder."""
    new_work_order: WorkOrder
    updated_quote: Quote
    quote_archived: bool = False


class SplitResult(BaseModel):
    """The source work order (reduced) and its new sibling."""
    original_work_order: WorkOrder
    new_work_order: WorkOrder
