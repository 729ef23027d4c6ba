"""
Pydantic models for API requests.

Bodies arrive in camelCase (targetStatus, partsToConvert, unitPrice, ...);
snake_case names are accepted too.  Unknown keys are rejected so a misspelt
field can never be dropped silently.  Part and labor bodies only check shape
here; the engine applies the business rules.
"""
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def fields_sent(self) -> dict:
        """snake_case dict of only the fields present in the request."""
        return self.model_dump(exclude_unset=True, exclude={"expected_version"})


class OrderCreate(_Body):
    customer_id: str
    vehicle_id: Optional[str] = None
    title: Optional[str] = None
    services: list[str] = []


class StatusUpdate(_Body):
    target_status: str
    hold_reason: Optional[str] = None         # HoldReasonCode label, e.g. "Waiting for Parts"
    hold_reason_other: Optional[str] = None   # required when hold_reason is "Other"
    expected_version: Optional[int] = None


# ── Parts ────────────────────────────────────────────────────────────────────

class PartCreate(_Body):
    id: Optional[str] = None
    name: str
    part_number: Optional[str] = None
    vendor: Optional[str] = None
    supplier: Optional[str] = None
    purchase_order_number: Optional[str] = None
    quantity: Optional[int] = None
    unit_cost: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    ordered: Optional[bool] = None
    received: Optional[bool] = None


class PartPatch(_Body):
    name: Optional[str] = None
    part_number: Optional[str] = None
    vendor: Optional[str] = None
    supplier: Optional[str] = None
    purchase_order_number: Optional[str] = None
    quantity: Optional[int] = None
    unit_cost: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    ordered: Optional[bool] = None
    received: Optional[bool] = None


class BulkOrderNumber(_Body):
    vendor: str
    order_number: str
    expected_version: Optional[int] = None


# ── Labor ────────────────────────────────────────────────────────────────────

class LaborCreate(_Body):
    id: Optional[str] = None
    description: str
    billing_type: Literal["hourly", "fixed"] = "hourly"
    quantity: Optional[Decimal] = None
    rate: Optional[Decimal] = None


class LaborPatch(_Body):
    description: Optional[str] = None
    billing_type: Optional[Literal["hourly", "fixed"]] = None
    quantity: Optional[Decimal] = None
    rate: Optional[Decimal] = None


# ── Notes / conversion / split ───────────────────────────────────────────────

class NoteCreate(_Body):
    content: str
    is_customer_facing: bool = False


class ConvertRequest(_Body):
    # Both omitted -> full conversion
    parts_to_convert: Optional[list[str]] = None
    labor_to_convert: Optional[list[str]] = None
    expected_version: Optional[int] = None


class SplitBody(_Body):
    parts_to_move: list[str] = []
    labor_to_move: list[str] = []
    new_work_order_title: str = ""
    expected_version: Optional[int] = None
