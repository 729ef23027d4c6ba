from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from .line_items import Labor, Part, new_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """
    Every status an Order can hold.  Values are the labels shown in the shop.

    Quotes only ever use QUOTE / QUOTE_ARCHIVED; work orders use the rest.
    """
    QUOTE                            = "Quote"
    QUOTE_ARCHIVED                   = "Quote - Archived"

    CREATED                          = "Work Order Created"
    APPOINTMENT_SCHEDULED            = "Appointment Scheduled"
    INSPECTION_IN_PROGRESS           = "Inspection In Progress"
    INSPECTION_COMPLETE              = "Inspection/Diag Complete"
    PARTS_ORDERED                    = "Parts Ordered"
    PARTS_RECEIVED                   = "Parts Received"
    REPAIR_IN_PROGRESS               = "Repair In Progress"
    REPAIR_COMPLETE_AWAITING_PAYMENT = "Repair Complete - Awaiting Payment"
    REPAIR_COMPLETE_INVOICED         = "Repair Complete - Invoiced"
    ON_HOLD                          = "On Hold"
    CANCELLED                        = "Cancelled"


QUOTE_STATUSES = frozenset({OrderStatus.QUOTE, OrderStatus.QUOTE_ARCHIVED})
WORK_ORDER_STATUSES = frozenset(s for s in OrderStatus if s not in QUOTE_STATUSES)


class HoldReasonCode(str, Enum):
    WAITING_FOR_PARTS             = "Waiting for Parts"
    WAITING_FOR_CUSTOMER_APPROVAL = "Waiting for Customer Approval"
    WAITING_FOR_INSURANCE         = "Waiting for Insurance"
    CUSTOMER_REQUESTED_DELAY      = "Customer Requested Delay"
    SHOP_CAPACITY                 = "Shop Capacity"
    BACKORDERED_PARTS             = "Backordered Parts"
    VEHICLE_STORAGE               = "Vehicle Storage"
    OTHER                         = "Other"


class HoldReason(BaseModel):
    """
    Why a work order is on hold.

    other_text is mandatory for OTHER and discarded for every other reason,
    so "Other" with no explanation cannot be constructed.
    """
    reason: HoldReasonCode
    other_text: Optional[str] = None

    @model_validator(mode="after")
    def _other_needs_text(self) -> "HoldReason":
        text = (self.other_text or "").strip()
        if self.reason == HoldReasonCode.OTHER:
            if not text:
                raise ValueError("a hold reason of 'Other' needs a description")
            self.other_text = text
        else:
            self.other_text = None
        return self

    @property
    def label(self) -> str:
        if self.reason == HoldReasonCode.OTHER:
            return f"Other: {self.other_text}"
        return self.reason.value


class ServiceRequest(BaseModel):
    """A requested-service description. Informational only, never billed."""
    description: str = Field(min_length=1)


class StatusChange(BaseModel):
    """One entry of an order's status history."""
    from_status: OrderStatus
    to_status: OrderStatus
    changed_at: datetime
    derived: bool = False       # True when advanced automatically from ledger state


class _OrderBase(BaseModel):
    id: str = Field(default_factory=new_id)
    version: int = 0            # 0 = not yet persisted; repository bumps on each save
    title: Optional[str] = None
    customer_id: str = Field(min_length=1)
    vehicle_id: Optional[str] = None
    services: List[ServiceRequest] = Field(default_factory=list)
    parts: List[Part] = Field(default_factory=list)
    labor: List[Labor] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    status_changed_at: datetime = Field(default_factory=utcnow)
    status_history: List[StatusChange] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    def find_part(self, part_id: str) -> Optional[Part]:
        return next((p for p in self.parts if p.id == part_id), None)

    def find_labor(self, labor_id: str) -> Optional[Labor]:
        return next((item for item in self.labor if item.id == labor_id), None)

    @property
    def part_ids(self) -> set[str]:
        return {p.id for p in self.parts}

    @property
    def labor_ids(self) -> set[str]:
        return {item.id for item in self.labor}

    @property
    def is_empty(self) -> bool:
        return not self.parts and not self.labor


class Quote(_OrderBase):
    """
    A priced estimate.  Line items are drained out of it by conversion;
    after a full conversion it stays behind as a read-only reference.
    """
    kind: Literal["quote"] = "quote"
    status: OrderStatus = OrderStatus.QUOTE
    linked_work_order_id: Optional[str] = None
    converted_work_order_ids: List[str] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def _quote_status(cls, value: OrderStatus) -> OrderStatus:
        if value not in QUOTE_STATUSES:
            raise ValueError(f"'{value.value}' is not a quote status")
        return value

    @property
    def consumed(self) -> bool:
        return self.linked_work_order_id is not None


class WorkOrder(_OrderBase):
    """A job in the shop, from creation through invoicing."""
    kind: Literal["work_order"] = "work_order"
    status: OrderStatus = OrderStatus.CREATED
    hold_reason: Optional[HoldReason] = None
    status_before_hold: Optional[OrderStatus] = None
    source_quote_id: Optional[str] = None
    split_from_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _work_order_status(cls, value: OrderStatus) -> OrderStatus:
        if value not in WORK_ORDER_STATUSES:
            raise ValueError(f"'{value.value}' is not a work order status")
        return value

    @model_validator(mode="after")
    def _hold_fields_match_status(self) -> "WorkOrder":
        on_hold = self.status == OrderStatus.ON_HOLD
        if on_hold and self.hold_reason is None:
            raise ValueError("an on-hold work order needs a hold reason")
        if not on_hold and (self.hold_reason is not None or self.status_before_hold is not None):
            raise ValueError("hold details are only allowed while on hold")
        return self


Order = Annotated[Union[Quote, WorkOrder], Field(discriminator="kind")]

ORDER_ADAPTER: TypeAdapter = TypeAdapter(Order)
