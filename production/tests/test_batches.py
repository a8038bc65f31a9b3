import datetime
from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError

from production.exceptions import UnbalancedProductionError
from production.models import (
    CoatingRollInput,
    ProductionBatch,
    ProductionOrder,
    Roll,
    StockMovement,
)
from production.services import batches, orders, stock_ledger
from production.services.batches import CoatingBreakdown, RollOutput

from .helpers import add_roll, setup_fabrics, stock_batch, weaving


def running_weaving_order(raw, required="100"):
    order = orders.open_order(ProductionOrder.RAW_WEAVING, raw, Decimal(required))
    return orders.start(order.pk)


def running_coating_order(raw, finished, lengths, color="Navy"):
    base = stock_batch(raw)
    for length in lengths:
        add_roll(base, length)
    order = orders.open_order(
        ProductionOrder.FINISH_COATING, finished, sum(Decimal(str(x)) for x in lengths), color=color
    )
    orders.reserve_input_rolls(order.pk)
    return orders.start(order.pk)


def test_roll_type_classification():
    assert Roll.type_for("A", Decimal("50"), Decimal("50")) == Roll.STANDARD_LENGTH
    assert Roll.type_for("A", Decimal("60"), Decimal("50")) == Roll.STANDARD_LENGTH
    assert Roll.type_for("A", Decimal("49.99"), Decimal("50")) == Roll.SHORT
    assert Roll.type_for("B", Decimal("50"), Decimal("50")) == Roll.WASTAGE
    assert Roll.type_for("C", Decimal("2"), Decimal("50")) == Roll.WASTAGE


def test_roll_number_format():
    assert batches.roll_number("COATING-20260119-001", "A50", 3) == "COATING-20260119-001-A50-R003"


@pytest.mark.django_db
def test_batch_numbers_are_sequential_per_day_and_kind():
    raw, _ = setup_fabrics()
    day = datetime.date(2026, 1, 19)
    assert batches.next_batch_number(ProductionOrder.RAW_WEAVING, day) == "WEAVING-20260119-001"
    order = running_weaving_order(raw)
    ProductionBatch.objects.create(
        batch_number="WEAVING-20260119-001",
        production_order=order,
        kind=ProductionOrder.RAW_WEAVING,
        planned_quantity=Decimal("100"),
    )
    assert batches.next_batch_number(ProductionOrder.RAW_WEAVING, day) == "WEAVING-20260119-002"
    assert batches.next_batch_number(ProductionOrder.FINISH_COATING, day) == "COATING-20260119-001"
    assert batches.next_batch_number(ProductionOrder.RAW_WEAVING, datetime.date(2026, 1, 20)) == "WEAVING-20260120-001"


@pytest.mark.django_db
def test_weaving_creates_rolls_per_loom_and_credits_base_stock():
    raw, _ = setup_fabrics()
    order = running_weaving_order(raw)
    batch, rolls = batches.record_weaving_batch(order, weaving(("L1", [60, (5, "C")]), ("L2", [40])))

    assert batch.batch_number.startswith("WEAVING-")
    assert batch.produced_quantity == Decimal("105")
    assert batch.wastage_quantity == Decimal("5")
    numbers = [r.roll_number for r in rolls]
    assert numbers == [
        f"{batch.batch_number}-L1-R001",
        f"{batch.batch_number}-L1-R002",
        f"{batch.batch_number}-L2-R001",
    ]
    assert [r.roll_type for r in rolls] == [Roll.STANDARD_LENGTH, Roll.WASTAGE, Roll.SHORT]
    for roll in rolls:
        roll.refresh_from_db()
        assert roll.status == Roll.AVAILABLE
        assert roll.remaining_length == roll.total_length
        assert roll.fabric_kind == "raw"
        assert roll.color == ""
        assert roll.consistency_errors() == []
    assert rolls[0].loom_number == "L1"
    assert stock_ledger.stock_level(raw) == Decimal("105")
    mv = StockMovement.objects.get(fabric=raw)
    assert mv.movement_type == StockMovement.PRODUCTION_IN
    assert mv.reference_id == order.pk


@pytest.mark.django_db
@pytest.mark.parametrize(
    "breakdown",
    [
        weaving(),
        weaving(("L1", [])),
        weaving(("L1", [60]), ("L1", [40])),
        weaving(("L1", [0])),
        weaving(("L1", [(10, "D")])),
    ],
)
def test_weaving_breakdown_validation(breakdown):
    raw, _ = setup_fabrics()
    order = running_weaving_order(raw)
    with pytest.raises(ValidationError):
        batches.record_weaving_batch(order, breakdown)
    assert not Roll.objects.exists()
    assert not ProductionBatch.objects.exists()


@pytest.mark.django_db
def test_coating_creates_graded_rolls_and_consumes_inputs():
    raw, finished = setup_fabrics()
    order = running_coating_order(raw, finished, [60, 40])
    breakdown = CoatingBreakdown(
        full_rolls=1,
        short_rolls=[Decimal("48")],
        graded_rolls=[RollOutput(Decimal("2"), "B", "pinholes")],
    )
    batch, rolls = batches.record_coating_batch(order, breakdown)

    assert batch.input_quantity == Decimal("100")
    assert batch.produced_quantity == Decimal("100")
    assert batch.wastage_quantity == Decimal("2")
    assert [r.roll_number for r in rolls] == [
        f"{batch.batch_number}-A50-R001",
        f"{batch.batch_number}-AS-R001",
        f"{batch.batch_number}-BC-R001",
    ]
    assert [r.roll_type for r in rolls] == [Roll.STANDARD_LENGTH, Roll.SHORT, Roll.WASTAGE]
    assert all(r.color == "Navy" and r.fabric == finished for r in rolls)
    assert rolls[2].quality_notes == "pinholes"

    inputs = Roll.objects.filter(fabric=raw)
    assert set(inputs.values_list("status", flat=True)) == {Roll.USED}
    assert set(inputs.values_list("remaining_length", flat=True)) == {Decimal("0")}
    assert stock_ledger.stock_level(finished, "Navy") == Decimal("100")
    assert stock_ledger.find_divergent_aggregates() == []


@pytest.mark.django_db
def test_coating_within_tolerance_is_accepted():
    raw, finished = setup_fabrics()
    order = running_coating_order(raw, finished, [50])
    batch, rolls = batches.record_coating_batch(order, CoatingBreakdown(short_rolls=[Decimal("49.95")]))
    assert batch.produced_quantity == Decimal("49.95")


@pytest.mark.django_db
def test_unbalanced_coating_writes_nothing():
    raw, finished = setup_fabrics()
    order = running_coating_order(raw, finished, [60, 40])
    movements = StockMovement.objects.count()

    with pytest.raises(UnbalancedProductionError) as exc:
        batches.record_coating_batch(order, CoatingBreakdown(full_rolls=1, short_rolls=[Decimal("45")]))

    assert exc.value.total_input == Decimal("100")
    assert exc.value.total_output == Decimal("95")
    assert isinstance(exc.value, ValidationError)
    assert not ProductionBatch.objects.filter(production_order=order).exists()
    assert not Roll.objects.filter(fabric=finished).exists()
    assert StockMovement.objects.count() == movements
    assert set(Roll.objects.filter(fabric=raw).values_list("status", flat=True)) == {Roll.ALLOCATED}


@pytest.mark.django_db
def test_quantity_used_override_changes_the_balance():
    raw, finished = setup_fabrics()
    order = running_coating_order(raw, finished, [60, 40])
    first = CoatingRollInput.objects.filter(production_order=order).order_by("processing_order").first()
    breakdown = CoatingBreakdown(
        full_rolls=1,
        short_rolls=[Decimal("45")],
        quantities_used={first.roll_id: Decimal("55")},
    )
    batch, _ = batches.record_coating_batch(order, breakdown)
    first.refresh_from_db()
    assert first.quantity_used == Decimal("55")
    assert batch.input_quantity == Decimal("95")


@pytest.mark.django_db
@pytest.mark.parametrize(
    "breakdown",
    [
        CoatingBreakdown(),
        CoatingBreakdown(full_rolls=-1, short_rolls=[Decimal("150")]),
        CoatingBreakdown(full_rolls=2, short_rolls=[Decimal("0")]),
        CoatingBreakdown(full_rolls=1, graded_rolls=[RollOutput(Decimal("50"), "A")]),
    ],
)
def test_coating_breakdown_validation(breakdown):
    raw, finished = setup_fabrics()
    order = running_coating_order(raw, finished, [60, 40])
    with pytest.raises(ValidationError):
        batches.record_coating_batch(order, breakdown)
    assert not Roll.objects.filter(fabric=finished).exists()


@pytest.mark.django_db
def test_record_batch_rejects_mismatched_breakdown():
    raw, _ = setup_fabrics()
    order = running_weaving_order(raw)
    with pytest.raises(ValidationError):
        batches.record_batch(order, CoatingBreakdown(full_rolls=2))
