"""
Work order engine: FastAPI backend.

Thin HTTP layer over OrderService.  Every handler makes one service call and
either returns the value as JSON or maps the OrderError to a status code:

  ValidationError    400
  NotFoundError      404
  ConflictError      409   (stale expectedVersion; reload and retry)
  GuardNotSatisfied  412
  InvalidTransition  422
  IntegrityError     500

Endpoints
---------
  GET    /api/health                               → liveness probe
  POST   /api/quotes                               → create a quote
  POST   /api/workorders                           → create a work order
  GET    /api/orders                               → list (supports ?kind= and ?status=)
  GET    /api/orders/{id}                          → one order with its allowed transitions
  POST   /api/orders/{id}/status                   → manual status transition
  POST   /api/orders/{id}/parts                    → add a part
  PATCH  /api/orders/{id}/parts/{partId}           → update a part
  DELETE /api/orders/{id}/parts/{partId}           → remove a part
  POST   /api/orders/{id}/parts/bulk-order-number  → stamp an order number on one vendor's parts
  POST   /api/orders/{id}/labor                    → add labor
  PATCH  /api/orders/{id}/labor/{laborId}          → update labor
  DELETE /api/orders/{id}/labor/{laborId}          → remove labor
  GET    /api/orders/{id}/totals                   → cost breakdown
  POST   /api/orders/{id}/notes                    → add a progress note
  POST   /api/quotes/{id}/convert                  → full or partial quote conversion
  POST   /api/workorders/{id}/split                → split a work order
"""
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic.alias_generators import to_camel

from config import Config
from engine.service import CommandResult, OrderService
from engine.status_machine import allowed_targets
from models.order import Order
from .models import (
    BulkOrderNumber, ConvertRequest, LaborCreate, LaborPatch, NoteCreate, OrderCreate,
    PartCreate, PartPatch, SplitBody, StatusUpdate,
)

logger = logging.getLogger(__name__)

STATUS_CODES = {
    "ValidationError":   400,
    "NotFoundError":     404,
    "ConflictError":     409,
    "GuardNotSatisfied": 412,
    "InvalidTransition": 422,
    "IntegrityError":    500,
}

# ---------------------------------------------------------------------------
# Service (lazy: created on first request so importing the app never touches
# the database)
# ---------------------------------------------------------------------------
_service: Optional[OrderService] = None
_config: Optional[Config] = None


def get_config() -> Config:
    global _config
    if _config is None:
        _config = Config()
    return _config


def get_service() -> OrderService:
    global _service
    if _service is None:
        _service = OrderService.from_config(get_config())
    return _service


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="Work Order Engine", docs_url=None, redoc_url=None)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _unwrap(result: CommandResult):
    if result.ok:
        return result.value
    error = result.error
    status_code = STATUS_CODES.get(error.kind, 500)
    if status_code >= 500:
        logger.error("Request failed [%s]: %s", error.kind, error.message)
    raise HTTPException(status_code=status_code, detail=_camel_keys(error.to_dict()))


def _camel_keys(data):
    """Rename dict keys to camelCase, recursively; values are left alone."""
    if isinstance(data, dict):
        return {to_camel(k): _camel_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_camel_keys(v) for v in data]
    return data


def _order_json(order: Order) -> dict:
    data = order.model_dump(mode="json")
    data["allowed_transitions"] = sorted(s.value for s in allowed_targets(order))
    return _camel_keys(data)


@app.exception_handler(RequestValidationError)
def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are ValidationErrors like any other: 400, same detail shape."""
    first = exc.errors()[0] if exc.errors() else {}
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    return JSONResponse(status_code=400, content={"detail": {
        "error":   "ValidationError",
        "message": first.get("msg", "Invalid request"),
        "orderId": request.path_params.get("order_id"),
        "field":   ".".join(loc) or None,
    }})


# ── Routes ───────────────────────────────────────────────────────────────────

@app.get("/api/health")
def health():
    config = get_config()
    return {
        "status":   "ok",
        "dbPath":   str(config.db_path),
        "dbExists": config.db_path.exists(),
    }


@app.post("/api/quotes", status_code=201)
def create_quote(body: OrderCreate):
    quote = _unwrap(get_service().create_quote(
        body.customer_id, vehicle_id=body.vehicle_id, title=body.title, services=body.services,
    ))
    return _order_json(quote)


@app.post("/api/workorders", status_code=201)
def create_work_order(body: OrderCreate):
    work_order = _unwrap(get_service().create_work_order(
        body.customer_id, vehicle_id=body.vehicle_id, title=body.title, services=body.services,
    ))
    return _order_json(work_order)


@app.get("/api/orders")
def list_orders(
    kind: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=2000),
    offset: int = Query(default=0, ge=0),
):
    orders = _unwrap(get_service().list_orders(
        kind=kind or None,
        status=status or None,
        limit=limit or get_config().api_list_limit,
        offset=offset,
    ))
    return [_order_json(o) for o in orders]


@app.get("/api/orders/{order_id}")
def get_order(order_id: str):
    return _order_json(_unwrap(get_service().get_order(order_id)))


@app.post("/api/orders/{order_id}/status")
def change_status(order_id: str, body: StatusUpdate):
    """Move the order to targetStatus.  holdReason is required for On Hold."""
    order = _unwrap(get_service().request_transition(
        order_id,
        body.target_status,
        hold_reason=body.hold_reason,
        hold_reason_other=body.hold_reason_other,
        expected_version=body.expected_version,
    ))
    return _order_json(order)


# ── Parts ────────────────────────────────────────────────────────────────────

@app.post("/api/orders/{order_id}/parts", status_code=201)
def add_part(
    order_id: str,
    body: PartCreate,
    expected_version: Optional[int] = Query(default=None, alias="expectedVersion"),
):
    return _order_json(_unwrap(get_service().add_part(order_id, body.fields_sent(), expected_version)))


@app.patch("/api/orders/{order_id}/parts/{part_id}")
def update_part(
    order_id: str,
    part_id: str,
    body: PartPatch,
    expected_version: Optional[int] = Query(default=None, alias="expectedVersion"),
):
    return _order_json(_unwrap(get_service().update_part(order_id, part_id, body.fields_sent(), expected_version)))


@app.delete("/api/orders/{order_id}/parts/{part_id}")
def remove_part(
    order_id: str,
    part_id: str,
    expected_version: Optional[int] = Query(default=None, alias="expectedVersion"),
):
    return _order_json(_unwrap(get_service().remove_part(order_id, part_id, expected_version)))


@app.post("/api/orders/{order_id}/parts/bulk-order-number")
def bulk_order_number(order_id: str, body: BulkOrderNumber):
    """Set the purchase order number on every part from one vendor and mark them ordered."""
    order = _unwrap(get_service().bulk_assign_order_number(
        order_id, body.vendor, body.order_number, body.expected_version,
    ))
    return _order_json(order)


# ── Labor ────────────────────────────────────────────────────────────────────

@app.post("/api/orders/{order_id}/labor", status_code=201)
def add_labor(
    order_id: str,
    body: LaborCreate,
    expected_version: Optional[int] = Query(default=None, alias="expectedVersion"),
):
    labor = {"billing_type": body.billing_type, **body.fields_sent()}
    return _order_json(_unwrap(get_service().add_labor(order_id, labor, expected_version)))


@app.patch("/api/orders/{order_id}/labor/{labor_id}")
def update_labor(
    order_id: str,
    labor_id: str,
    body: LaborPatch,
    expected_version: Optional[int] = Query(default=None, alias="expectedVersion"),
):
    return _order_json(_unwrap(get_service().update_labor(order_id, labor_id, body.fields_sent(), expected_version)))


@app.delete("/api/orders/{order_id}/labor/{labor_id}")
def remove_labor(
    order_id: str,
    labor_id: str,
    expected_version: Optional[int] = Query(default=None, alias="expectedVersion"),
):
    return _order_json(_unwrap(get_service().remove_labor(order_id, labor_id, expected_version)))


# ── Totals / notes ───────────────────────────────────────────────────────────

@app.get("/api/orders/{order_id}/totals")
def totals(order_id: str):
    return _camel_keys(_unwrap(get_service().totals(order_id)).model_dump(mode="json"))


@app.post("/api/orders/{order_id}/notes", status_code=201)
def add_note(order_id: str, body: NoteCreate):
    return _camel_keys(_unwrap(get_service().add_note(
        order_id, body.content, is_customer_facing=body.is_customer_facing,
    )))


# ── Conversion / split ───────────────────────────────────────────────────────

@app.post("/api/quotes/{quote_id}/convert")
def convert_quote(quote_id: str, body: Optional[ConvertRequest] = None):
    """
    Omit both partsToConvert and laborToConvert for a full conversion.
    Passing either one (even empty) makes it a partial conversion.
    """
    body = body or ConvertRequest()
    result = _unwrap(get_service().convert_quote(
        quote_id,
        part_ids=body.parts_to_convert,
        labor_ids=body.labor_to_convert,
        expected_version=body.expected_version,
    ))
    return {
        "workOrder":     _order_json(result.new_work_order),
        "quote":         _order_json(result.updated_quote),
        "quoteArchived": result.quote_archived,
    }


@app.post("/api/workorders/{work_order_id}/split")
def split_work_order(work_order_id: str, body: SplitBody):
    result = _unwrap(get_service().split_work_order(
        work_order_id,
        part_ids=body.parts_to_move,
        labor_ids=body.labor_to_move,
        new_title=body.new_work_order_title,
        expected_version=body.expected_version,
    ))
    return {
        "originalWorkOrder": _order_json(result.original_work_order),
        "newWorkOrder":      _order_json(result.new_work_order),
    }
