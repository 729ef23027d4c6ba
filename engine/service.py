"""
Order command handlers.

OrderService is the boundary between callers (HTTP API, CLI) and the pure
engine.  Each command:

  1. takes the in-process lock(s) for the order(s) it touches, in canonical
     order: existing ids ascending, then the id reserved for a new order;
  2. loads the aggregate(s) from the repository;
  3. runs exactly one engine operation (no I/O inside);
  4. saves the result with the loaded version as expected_version, writing
     two aggregates in one transaction for conversion and split.

Commands never raise engine errors to the caller: they return a
CommandResult holding either the value or the OrderError.
"""
import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Iterator, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from config import Config
from models.line_items import Labor, Part, new_id
from models.order import Order, OrderStatus, Quote, ServiceRequest, WorkOrder
from models.result import ConversionResult, Selection, SplitRequest, SplitResult, Totals
from . import ledger
from .conversion import convert
from .errors import ConflictError, IntegrityError, OrderError, ValidationError, from_pydantic
from .gateways import FlatTaxPolicy, NotesGateway, SqliteNotesGateway, TaxPolicy
from .repository import OrderRepository
from .split import split
from .status_machine import (
    TransitionContext,
    coerce_status,
    derive_auto_transition,
    parse_hold_reason,
    request_transition,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Everything else (status, version, links, hold details) belongs to the engine.
_CREATE_FIELDS = frozenset({"title", "vehicle_id", "services", "parts", "labor"})


@dataclass
class CommandResult(Generic[T]):
    """Either a value or the OrderError that prevented it."""
    value: Optional[T] = None
    error: Optional[OrderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, re-raising the error if the command failed."""
        if self.error is not None:
            raise self.error
        return self.value


class OrderLocks:
    """
    Per-order in-process locks, always acquired in a fixed order.

    Each entry counts the threads holding or waiting on it and is dropped
    when that count returns to zero, so the map only holds ids in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}     # order_id -> [Lock, users]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_ref(self, order_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.setdefault(order_id, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _release_ref(self, order_id: str) -> None:
        with self._guard:
            entry = self._locks[order_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[order_id]

    def ordering(self, existing_ids: Iterable[str], new_ids: Iterable[str] = ()) -> list[str]:
        """Existing ids ascending, then ids of orders that do not exist yet."""
        existing = sorted(set(existing_ids))
        fresh = [i for i in new_ids if i not in existing]
        return existing + fresh

    @contextmanager
    def hold(self, existing_ids: Iterable[str], new_ids: Iterable[str] = ()) -> Iterator[None]:
        with ExitStack() as stack:
            for order_id in self.ordering(existing_ids, new_ids):
                lock = self._acquire_ref(order_id)
                stack.callback(self._release_ref, order_id)
                stack.enter_context(lock)
            yield


class OrderService:
    """
    Usage:
        service = OrderService.from_config(Config())
        result = service.convert_quote(quote_id, part_ids=[...])
        if result.ok:
            work_order = result.value.new_work_order
    """

    def __init__(
        self,
        repository: OrderRepository,
        notes: Optional[NotesGateway] = None,
        tax_policy: Optional[TaxPolicy] = None,
        actor: str = "system",
    ) -> None:
        self.repository = repository
        self.notes = notes or SqliteNotesGateway(repository)
        self.tax_policy = tax_policy or FlatTaxPolicy()
        self.actor = actor
        self.locks = OrderLocks()

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "OrderService":
        config = config or Config()
        config.ensure_data_dir()
        repository = OrderRepository(config.db_path)
        return cls(
            repository,
            tax_policy=FlatTaxPolicy(config.tax_rate_percent),
            actor=config.actor,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> CommandResult[Order]:
        return self._run("get_order", self.repository.load, order_id)

    def list_orders(
        self,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 500,
        offset: int = 0,
    ) -> CommandResult[list[Order]]:
        def _list() -> list[Order]:
            if kind and kind not in ("quote", "work_order"):
                raise ValidationError(f"Unknown order kind: '{kind}'", field="kind")
            status_filter = coerce_status(status) if status else None
            return self.repository.list_orders(kind=kind, status=status_filter, limit=limit, offset=offset)
        return self._run("list_orders", _list)

    def totals(self, order_id: str) -> CommandResult[Totals]:
        def _totals() -> Totals:
            order = self.repository.load(order_id)
            return ledger.compute_totals(order, self.tax_policy.rate_for(order))
        return self._run("totals", _totals)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_quote(self, customer_id: str, **fields) -> CommandResult[Quote]:
        return self._run("create_quote", self._create, Quote, customer_id, fields)

    def create_work_order(self, customer_id: str, **fields) -> CommandResult[WorkOrder]:
        return self._run("create_work_order", self._create, WorkOrder, customer_id, fields)

    def _create(self, model: type, customer_id: str, fields: dict) -> Order:
        unknown = set(fields) - _CREATE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot set field(s) on creation: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        services = [
            s if isinstance(s, (ServiceRequest, dict)) else {"description": s}
            for s in fields.pop("services", None) or []
        ]
        try:
            order = model(customer_id=customer_id, services=services, **fields)
        except PydanticValidationError as exc:
            raise from_pydantic(exc) from exc
        except TypeError as exc:
            raise ValidationError(str(exc)) from exc
        order = derive_auto_transition(order)
        saved = self.repository.save(order, expected_version=0, action="created", actor=self.actor)
        logger.info("Created %s %s for customer %s", saved.kind, saved.id, customer_id)
        return saved

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def request_transition(
        self,
        order_id: str,
        target: OrderStatus | str,
        hold_reason: Optional[str] = None,
        hold_reason_other: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> CommandResult[Order]:
        def _transition(order: Order) -> Order:
            target_status = coerce_status(target)
            context = TransitionContext(notes=self.notes)
            # A hold reason only means something when putting the order on hold.
            if target_status == OrderStatus.ON_HOLD and hold_reason is not None and hold_reason.strip():
                context.hold_reason = parse_hold_reason(hold_reason, hold_reason_other)
            return request_transition(order, target_status, context)
        return self._run(
            "request_transition", self._mutate, order_id, _transition,
            expected_version, "status_changed",
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def add_part(self, order_id: str, part: Part | dict, expected_version: Optional[int] = None) -> CommandResult[Order]:
        return self._run("add_part", self._mutate, order_id,
                         lambda o: ledger.add_part(o, part), expected_version, "part_added")

    def update_part(self, order_id: str, part_id: str, patch: dict,
                    expected_version: Optional[int] = None) -> CommandResult[Order]:
        return self._run("update_part", self._mutate, order_id,
                         lambda o: ledger.update_part(o, part_id, patch), expected_version, "part_updated")

    def remove_part(self, order_id: str, part_id: str, expected_version: Optional[int] = None) -> CommandResult[Order]:
        return self._run("remove_part", self._mutate, order_id,
                         lambda o: ledger.remove_part(o, part_id), expected_version, "part_removed")

    def set_part_flag(self, order_id: str, part_id: str, field: str, value: bool,
                      expected_version: Optional[int] = None) -> CommandResult[Order]:
        return self._run("set_part_flag", self._mutate, order_id,
                         lambda o: ledger.set_part_flag(o, part_id, field, value),
                         expected_version, "part_updated")

    def bulk_assign_order_number(self, order_id: str, vendor: str, order_number: str,
                                 expected_version: Optional[int] = None) -> CommandResult[Order]:
        return self._run("bulk_assign_order_number", self._mutate, order_id,
                         lambda o: ledger.bulk_assign_order_number(o, vendor, order_number),
                         expected_version, "order_number_assigned")

    def add_labor(self, order_id: str, labor: Labor | dict, expected_version: Optional[int] = None) -> CommandResult[Order]:
        return self._run("add_labor", self._mutate, order_id,
                         lambda o: ledger.add_labor(o, labor), expected_version, "labor_added")

    def update_labor(self, order_id: str, labor_id: str, patch: dict,
                     expected_version: Optional[int] = None) -> CommandResult[Order]:
        return self._run("update_labor", self._mutate, order_id,
                         lambda o: ledger.update_labor(o, labor_id, patch), expected_version, "labor_updated")

    def remove_labor(self, order_id: str, labor_id: str, expected_version: Optional[int] = None) -> CommandResult[Order]:
        return self._run("remove_labor", self._mutate, order_id,
                         lambda o: ledger.remove_labor(o, labor_id), expected_version, "labor_removed")

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def add_note(
        self,
        order_id: str,
        content: str,
        is_system: bool = False,
        is_customer_facing: bool = False,
    ) -> CommandResult[dict]:
        def _add() -> dict:
            self.repository.load(order_id)
            text = (content or "").strip()
            if not text:
                raise ValidationError("Note content is required", order_id=order_id, field="content")
            note_id = self.repository.add_note(
                order_id, text,
                is_system=is_system,
                is_customer_facing=is_customer_facing,
                created_by=self.actor,
            )
            return {"id": note_id, "order_id": order_id, "content": text, "is_system": is_system}
        return self._run("add_note", _add)

    # ------------------------------------------------------------------
    # Conversion / split
    # ------------------------------------------------------------------

    def convert_quote(
        self,
        quote_id: str,
        part_ids: Optional[Iterable[str]] = None,
        labor_ids: Optional[Iterable[str]] = None,
        expected_version: Optional[int] = None,
    ) -> CommandResult[ConversionResult]:
        """
        Convert a quote.  Leave both id lists as None for a full conversion;
        pass either (even empty) for a partial one.
        """
        def _convert() -> ConversionResult:
            selection = None
            if part_ids is not None or labor_ids is not None:
                selection = Selection(part_ids=set(part_ids or ()), labor_ids=set(labor_ids or ()))

            reserved_id = new_id()
            with self.locks.hold([quote_id], [reserved_id]):
                quote = self._load_expected(quote_id, expected_version)
                if not isinstance(quote, Quote):
                    raise ValidationError("Only quotes can be converted to work orders", order_id=quote_id)
                result = convert(quote, selection, new_work_order_id=reserved_id)
                saved_quote, saved_work_order = self.repository.save_many(
                    [(result.updated_quote, quote.version), (result.new_work_order, 0)],
                    action="converted",
                    actor=self.actor,
                )
            return ConversionResult(
                new_work_order=saved_work_order,
                updated_quote=saved_quote,
                quote_archived=result.quote_archived,
            )
        return self._run("convert_quote", _convert)

    def split_work_order(
        self,
        work_order_id: str,
        part_ids: Iterable[str] = (),
        labor_ids: Iterable[str] = (),
        new_title: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> CommandResult[SplitResult]:
        def _split() -> SplitResult:
            request = SplitRequest(part_ids=set(part_ids or ()), labor_ids=set(labor_ids or ()), new_title=new_title)
            reserved_id = new_id()
            with self.locks.hold([work_order_id], [reserved_id]):
                source = self._load_expected(work_order_id, expected_version)
                if not isinstance(source, WorkOrder):
                    raise ValidationError("Only work orders can be split", order_id=work_order_id)
                result = split(source, request, new_work_order_id=reserved_id)
                saved_original, saved_new = self.repository.save_many(
                    [(result.original_work_order, source.version), (result.new_work_order, 0)],
                    action="split",
                    actor=self.actor,
                )
            return SplitResult(original_work_order=saved_original, new_work_order=saved_new)
        return self._run("split_work_order", _split)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(self, action: str, func: Callable[..., T], *args) -> CommandResult[T]:
        try:
            return CommandResult(value=func(*args))
        except OrderError as exc:
            logger.warning("%s failed [%s]: %s", action, exc.kind, exc.message)
            return CommandResult(error=exc)

    def _load_expected(self, order_id: str, expected_version: Optional[int]) -> Order:
        order = self.repository.load(order_id)
        if expected_version is not None and expected_version != order.version:
            raise ConflictError(
                f"Order {order_id} is at version {order.version}, not {expected_version}; reload and retry",
                order_id=order_id,
            )
        return order

    def _mutate(
        self,
        order_id: str,
        operation: Callable[[Order], Order],
        expected_version: Optional[int],
        action: str,
    ) -> Order:
        with self.locks.hold([order_id]):
            order = self._load_expected(order_id, expected_version)
            updated = operation(order)
            if updated.id != order.id:
                raise IntegrityError(f"Operation returned a different order for {order_id}", order_id=order_id)
            return self.repository.save(updated, expected_version=order.version, action=action, actor=self.actor)
