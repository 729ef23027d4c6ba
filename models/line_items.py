from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def new_id() -> str:
    """Return a fresh opaque identifier for an order or line item."""
    return uuid4().hex


class Part(BaseModel):
    """
    A part line item on an Order.

    unit_cost is what the shop paid (before markup); unit_price is what the
    customer is charged.  A part can only be received once it has been ordered.
    """
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    part_number: Optional[str] = None
    vendor: Optional[str] = None                # Purchase location (retailer / marketplace)
    supplier: Optional[str] = None              # Actual seller on the marketplace
    purchase_order_number: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    unit_cost: Decimal = Field(default=Decimal("0"), ge=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    ordered: bool = False
    received: bool = False

    @model_validator(mode="after")
    def _received_implies_ordered(self) -> "Part":
        if self.received and not self.ordered:
            raise ValueError("a part cannot be marked received before it is ordered")
        return self

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class _LaborBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    description: str = Field(min_length=1)
    quantity: Decimal = Field(default=Decimal("1"), ge=1)
    rate: Decimal = Field(default=Decimal("0"), ge=0)


class HourlyLabor(_LaborBase):
    """Labor billed by the hour: quantity is the number of hours."""
    billing_type: Literal["hourly"] = "hourly"

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.rate


class FixedLabor(_LaborBase):
    """Flat-rate labor: the rate is the whole charge, quantity is informational."""
    billing_type: Literal["fixed"] = "fixed"

    @property
    def subtotal(self) -> Decimal:
        return self.rate


Labor = Annotated[Union[HourlyLabor, FixedLabor], Field(discriminator="billing_type")]
