from .line_items import Part, HourlyLabor, FixedLabor, Labor, new_id
from .order import (
    Order, Quote, WorkOrder, OrderStatus, HoldReason, HoldReasonCode,
    ServiceRequest, StatusChange, ORDER_ADAPTER,
)
from .result import Totals, Selection, SplitRequest, ConversionResult, SplitResult

__all__ = [
    "Part", "HourlyLabor", "FixedLabor", "Labor", "new_id",
    "Order", "Quote", "WorkOrder", "OrderStatus", "HoldReason", "HoldReasonCode",
    "ServiceRequest", "StatusChange", "ORDER_ADAPTER",
    "Totals", "Selection", "SplitRequest", "ConversionResult", "SplitResult",
]
