"""
Unit tests for the parts/labor ledger and cost math.
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from engine import ledger
from engine.errors import IntegrityError, ValidationError
from models.line_items import FixedLabor, HourlyLabor, Part
from models.order import OrderStatus, Quote, WorkOrder

FIXED_NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.mark.unit
class TestParts:
    """Tests for adding, updating and removing parts."""

    def test_add_part_returns_new_snapshot(self, sample_work_order):
        """Test add_part leaves the input order untouched."""
        updated = ledger.add_part(sample_work_order, {"name": "Rotor", "unit_price": "90"}, now=FIXED_NOW)

        assert len(updated.parts) == 3
        assert len(sample_work_order.parts) == 2
        assert updated.parts[-1].ordered is False
        assert updated.parts[-1].received is False
        assert updated.updated_at == FIXED_NOW

    def test_add_part_rejects_invalid_quantity(self, sample_work_order):
        """Test pydantic errors surface as the engine's ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            ledger.add_part(sample_work_order, {"name": "Rotor", "quantity": 0})
        assert exc_info.value.field == "quantity"
        assert exc_info.value.order_id == "wo-1"

    def test_add_part_rejects_unknown_field(self, sample_work_order):
        """Test a misspelt or camelCase key is an error, not silently dropped."""
        with pytest.raises(ValidationError) as exc_info:
            ledger.add_part(sample_work_order, {"name": "Rotor", "unitPrice": "90"})
        assert exc_info.value.field == "unitPrice"

    def test_add_part_rejects_duplicate_id(self, sample_work_order):
        """Test a part id can only appear once on an order."""
        with pytest.raises(ValidationError):
            ledger.add_part(sample_work_order, {"id": "p-pads", "name": "Brake pads again"})

    def test_add_received_part_is_ordered(self, sample_work_order):
        """Test importing an already-received part marks it ordered."""
        updated = ledger.add_part(sample_work_order, {"name": "Wiper", "received": True})
        assert updated.parts[-1].ordered is True

    def test_update_part_fields(self, sample_work_order):
        """Test a patch changes only the named fields."""
        updated = ledger.update_part(sample_work_order, "p-pads", {"unit_price": "55.50", "quantity": 2})

        part = updated.find_part("p-pads")
        assert part.unit_price == Decimal("55.50")
        assert part.quantity == 2
        assert part.name == "Brake pads"

    def test_update_part_cannot_change_id(self, sample_work_order):
        """Test the id is not patchable."""
        with pytest.raises(ValidationError):
            ledger.update_part(sample_work_order, "p-pads", {"id": "other"})

    def test_update_unknown_part(self, sample_work_order):
        """Test patching a part that is not on the order."""
        with pytest.raises(ValidationError) as exc_info:
            ledger.update_part(sample_work_order, "nope", {"quantity": 2})
        assert exc_info.value.field == "part_id"

    def test_remove_part(self, sample_work_order):
        """Test removing a part."""
        updated = ledger.remove_part(sample_work_order, "p-filter")
        assert updated.part_ids == {"p-pads"}

    def test_closed_order_is_read_only(self, sample_work_order):
        """Test invoiced work orders reject ledger edits."""
        closed = sample_work_order.model_copy(update={"status": OrderStatus.REPAIR_COMPLETE_INVOICED})
        with pytest.raises(ValidationError):
            ledger.add_part(closed, {"name": "Rotor"})

    def test_archived_quote_is_read_only(self, sample_quote):
        """Test archived quotes reject ledger edits."""
        archived = sample_quote.model_copy(update={"status": OrderStatus.QUOTE_ARCHIVED})
        with pytest.raises(ValidationError):
            ledger.remove_part(archived, "p-pads")


@pytest.mark.unit
class TestPartFlags:
    """Tests for the ordered / received flags."""

    def test_received_sets_ordered(self, sample_work_order):
        """Test marking a part received also marks it ordered."""
        updated = ledger.set_part_flag(sample_work_order, "p-pads", "received", True)
        part = updated.find_part("p-pads")
        assert part.received is True
        assert part.ordered is True

    def test_unordering_clears_received(self, sample_work_order):
        """Test clearing ordered also clears received."""
        received = ledger.set_part_flag(sample_work_order, "p-pads", "received", True)
        updated = ledger.set_part_flag(received, "p-pads", "ordered", False)
        part = updated.find_part("p-pads")
        assert part.ordered is False
        assert part.received is False

    def test_contradictory_patch_rejected(self, sample_work_order):
        """Test a patch asking for received but not ordered."""
        with pytest.raises(ValidationError):
            ledger.update_part(sample_work_order, "p-pads", {"ordered": False, "received": True})

    def test_unknown_flag(self, sample_work_order):
        """Test only ordered and received are flags."""
        with pytest.raises(ValidationError) as exc_info:
            ledger.set_part_flag(sample_work_order, "p-pads", "shipped", True)
        assert exc_info.value.field == "shipped"

    def test_received_without_ordered_cannot_be_built(self):
        """Test the Part model itself refuses received without ordered."""
        from pydantic import ValidationError as PydanticValidationError
        with pytest.raises(PydanticValidationError):
            Part(name="Belt", ordered=False, received=True)

    def test_every_part_keeps_received_implies_ordered(self, sample_work_order):
        """Test the invariant across a sequence of flag edits."""
        order = sample_work_order
        steps = [
            ("p-pads", "received", True),
            ("p-filter", "ordered", True),
            ("p-pads", "ordered", False),
            ("p-filter", "received", True),
        ]
        for part_id, field, value in steps:
            order = ledger.set_part_flag(order, part_id, field, value)
            assert all(p.ordered for p in order.parts if p.received)


@pytest.mark.unit
class TestBulkOrderNumber:
    """Tests for bulk_assign_order_number."""

    def test_assigns_matching_vendor_only(self, sample_work_order):
        """Test only parts from the given vendor are stamped and ordered."""
        updated = ledger.bulk_assign_order_number(sample_work_order, "RockAuto", "RA-1001")

        pads = updated.find_part("p-pads")
        filt = updated.find_part("p-filter")
        assert pads.purchase_order_number == "RA-1001"
        assert pads.ordered is True
        assert filt.purchase_order_number is None
        assert filt.ordered is False

    def test_idempotent(self, sample_work_order):
        """Test applying the same assignment twice leaves the ledger as after once."""
        once = ledger.bulk_assign_order_number(sample_work_order, "RockAuto", "RA-1001")
        twice = ledger.bulk_assign_order_number(once, "RockAuto", "RA-1001")

        assert [p.model_dump() for p in twice.parts] == [p.model_dump() for p in once.parts]
        assert twice.status == once.status

    def test_no_matching_vendor_is_a_no_op(self, sample_work_order):
        """Test an unknown vendor changes no part."""
        updated = ledger.bulk_assign_order_number(sample_work_order, "Amazon", "A-1")
        assert [p.model_dump() for p in updated.parts] == [p.model_dump() for p in sample_work_order.parts]

    @pytest.mark.parametrize("vendor,number", [("", "RA-1"), ("RockAuto", "  ")])
    def test_blank_arguments_rejected(self, sample_work_order, vendor, number):
        """Test vendor and order number are both required."""
        with pytest.raises(ValidationError):
            ledger.bulk_assign_order_number(sample_work_order, vendor, number)

    def test_covering_every_vendor_derives_parts_ordered(self, sample_work_order):
        """Test the status advances once every part carries an order number."""
        order = ledger.bulk_assign_order_number(sample_work_order, "RockAuto", "RA-1001")
        assert order.status == OrderStatus.INSPECTION_IN_PROGRESS
        order = ledger.bulk_assign_order_number(order, "NAPA", "N-77")
        assert order.status == OrderStatus.PARTS_ORDERED


@pytest.mark.unit
class TestDerivedStatus:
    """Tests for status derivation driven by ledger edits."""

    def test_all_ordered_advances_to_parts_ordered(self, sample_work_order):
        """Test ordering the last part moves the work order to Parts Ordered."""
        order = ledger.set_part_flag(sample_work_order, "p-pads", "ordered", True)
        assert order.status == OrderStatus.INSPECTION_IN_PROGRESS
        order = ledger.set_part_flag(order, "p-filter", "ordered", True, now=FIXED_NOW)

        assert order.status == OrderStatus.PARTS_ORDERED
        assert order.status_history[-1].derived is True
        assert order.status_changed_at == FIXED_NOW

    def test_all_received_advances_to_parts_received(self, sample_work_order):
        """Test receiving every part moves the work order to Parts Received."""
        order = ledger.set_part_flag(sample_work_order, "p-pads", "received", True)
        order = ledger.set_part_flag(order, "p-filter", "received", True)
        assert order.status == OrderStatus.PARTS_RECEIVED

    def test_derivation_never_moves_backwards(self, sample_work_order):
        """Test un-ordering a part after Parts Ordered keeps the status."""
        order = ledger.set_part_flag(sample_work_order, "p-pads", "ordered", True)
        order = ledger.set_part_flag(order, "p-filter", "ordered", True)
        assert order.status == OrderStatus.PARTS_ORDERED

        order = ledger.set_part_flag(order, "p-filter", "ordered", False)
        assert order.status == OrderStatus.PARTS_ORDERED

    def test_later_statuses_are_left_alone(self, sample_work_order):
        """Test derivation does not touch Repair In Progress."""
        in_repair = sample_work_order.model_copy(update={"status": OrderStatus.REPAIR_IN_PROGRESS})
        order = ledger.set_part_flag(in_repair, "p-pads", "received", True)
        order = ledger.set_part_flag(order, "p-filter", "received", True)
        assert order.status == OrderStatus.REPAIR_IN_PROGRESS

    def test_quotes_are_never_derived(self, sample_quote):
        """Test ordering every part on a quote keeps it a Quote."""
        order = ledger.set_part_flag(sample_quote, "p-pads", "ordered", True)
        order = ledger.set_part_flag(order, "p-filter", "ordered", True)
        assert order.status == OrderStatus.QUOTE

    def test_removing_the_unordered_part_derives(self, sample_work_order):
        """Test removal can also complete the all-ordered condition."""
        order = ledger.set_part_flag(sample_work_order, "p-pads", "ordered", True)
        order = ledger.remove_part(order, "p-filter")
        assert order.status == OrderStatus.PARTS_ORDERED


@pytest.mark.unit
class TestLabor:
    """Tests for labor items."""

    def test_add_labor_defaults_to_hourly(self, sample_work_order):
        """Test labor without billing_type is billed hourly."""
        updated = ledger.add_labor(sample_work_order, {"description": "Diagnose", "quantity": "1.5", "rate": "80"})
        item = updated.labor[-1]
        assert isinstance(item, HourlyLabor)
        assert item.subtotal == Decimal("120.0")

    def test_fixed_labor_ignores_quantity(self):
        """Test a fixed item is billed at its rate."""
        item = FixedLabor(description="Alignment", quantity=Decimal("3"), rate=Decimal("99"))
        assert ledger.labor_subtotal(item) == Decimal("99")

    def test_update_labor_switches_billing_type(self, sample_work_order):
        """Test billing_type is patchable and re-dispatches the variant."""
        updated = ledger.update_labor(sample_work_order, "l-brakes", {"billing_type": "fixed", "rate": "120"})
        item = updated.find_labor("l-brakes")
        assert isinstance(item, FixedLabor)
        assert item.subtotal == Decimal("120")

    def test_labor_quantity_below_one_rejected(self, sample_work_order):
        """Test labor quantity must be at least 1."""
        with pytest.raises(ValidationError):
            ledger.update_labor(sample_work_order, "l-brakes", {"quantity": "0.5"})

    def test_add_labor_rejects_unknown_field(self, sample_work_order):
        """Test labor keys outside the model are rejected."""
        with pytest.raises(ValidationError):
            ledger.add_labor(sample_work_order, {"description": "Diagnose", "hours": "2"})

    def test_remove_unknown_labor(self, sample_work_order):
        """Test removing labor that is not on the order."""
        with pytest.raises(ValidationError):
            ledger.remove_labor(sample_work_order, "missing")


@pytest.mark.unit
class TestTotals:
    """Tests for compute_totals."""

    def test_breakdown(self, sample_quote):
        """Test $50 + $30 parts and 2h @ $75 labor at 8% tax."""
        totals = ledger.compute_totals(sample_quote, Decimal("8"))

        assert totals.parts_cost == Decimal("80.00")
        assert totals.labor_cost == Decimal("150.00")
        assert totals.subtotal == Decimal("230.00")
        assert totals.tax_amount == Decimal("18.40")
        assert totals.total == Decimal("248.40")

    def test_pure(self, sample_quote):
        """Test repeated calls agree and do not modify the order."""
        before = sample_quote.model_dump()
        first = ledger.compute_totals(sample_quote, "8")
        second = ledger.compute_totals(sample_quote, "8")
        assert first == second
        assert sample_quote.model_dump() == before

    def test_tax_rounds_half_up(self):
        """Test tax is rounded to cents, half up."""
        order = WorkOrder(customer_id="c", parts=[Part(name="Fuse", unit_price=Decimal("10"))])
        totals = ledger.compute_totals(order, Decimal("8.25"))
        assert totals.tax_amount == Decimal("0.83")
        assert totals.total == Decimal("10.83")

    def test_empty_order(self):
        """Test an empty order totals zero."""
        totals = ledger.compute_totals(Quote(customer_id="c"), 8)
        assert totals.total == Decimal("0.00")

    def test_negative_rate_rejected(self, sample_quote):
        """Test a negative tax rate."""
        with pytest.raises(ValidationError):
            ledger.compute_totals(sample_quote, "-1")


@pytest.mark.unit
class TestConservation:
    """Tests for moving items between orders."""

    def test_take_unknown_id_changes_nothing(self, sample_quote):
        """Test unknown ids fail before anything is removed."""
        working = sample_quote.model_copy(deep=True)
        with pytest.raises(ValidationError):
            ledger.take_line_items(working, {"p-pads", "ghost"}, set())
        assert working.part_ids == {"p-pads", "p-filter"}

    def test_duplicate_item_detected(self, sample_quote):
        """Test an item present on two orders is an integrity error."""
        copy = sample_quote.model_copy(deep=True)
        with pytest.raises(IntegrityError):
            ledger.assert_conserved(sample_quote, [sample_quote, copy])

    def test_lost_item_detected(self, sample_quote):
        """Test a dropped item is an integrity error."""
        working = sample_quote.model_copy(deep=True)
        ledger.take_line_items(working, {"p-pads"}, set())
        with pytest.raises(IntegrityError):
            ledger.assert_conserved(sample_quote, [working])
