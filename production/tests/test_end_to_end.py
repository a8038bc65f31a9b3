"""Weaving feeds coating, coating output is swept to waiting demand."""
from decimal import Decimal

import pytest

from production.models import Demand, ProductionOrder, Roll, StockMovement
from production.services import orders, stock_ledger
from production.services.batches import CoatingBreakdown, RollOutput

from .helpers import make_demand, make_user, setup_fabrics, weaving


@pytest.mark.django_db
def test_weave_coat_and_allocate():
    raw, finished = setup_fabrics()
    user = make_user()
    demand = make_demand(finished, "Navy", 60)

    w = orders.open_order(ProductionOrder.RAW_WEAVING, raw, Decimal("100"))
    c = orders.open_order(
        ProductionOrder.FINISH_COATING, finished, Decimal("100"), color="Navy", upstream=w, demand=demand
    )
    assert c.status == ProductionOrder.WAITING_MATERIALS

    # Weaving: two looms, 60m + 40m of A grade.
    orders.start(w.pk, actor=user)
    woven = orders.complete_production(w.pk, weaving(("L1", [60]), ("L2", [40])), actor=user)
    assert len(woven.rolls) == 2
    assert woven.batch.completed_by == user
    assert stock_ledger.stock_level(raw) == Decimal("100")
    assert [o.pk for o in woven.released_orders] == [c.pk]
    c.refresh_from_db()
    assert c.status == ProductionOrder.PENDING

    # Coating: reserve both woven rolls, then start.
    inputs = orders.reserve_input_rolls(c.pk, actor=user)
    assert sum(i.quantity_used for i in inputs) == Decimal("100")
    assert stock_ledger.stock_level(raw) == Decimal("0")
    orders.start(c.pk, actor=user)

    coated = orders.complete_production(
        c.pk,
        CoatingBreakdown(
            full_rolls=1,
            short_rolls=[Decimal("48")],
            graded_rolls=[RollOutput(Decimal("2"), "B")],
        ),
        actor=user,
    )

    c.refresh_from_db()
    assert c.status == ProductionOrder.COMPLETED
    assert c.produced_quantity == Decimal("100")
    full, short, wastage = coated.rolls
    assert (full.roll_type, short.roll_type, wastage.roll_type) == (
        Roll.STANDARD_LENGTH,
        Roll.SHORT,
        Roll.WASTAGE,
    )
    assert set(Roll.objects.filter(fabric=raw).values_list("status", flat=True)) == {Roll.USED}

    # The sweep handed 50m from the full roll and 10m from the short roll.
    assert len(coated.allocations) == 1
    result = coated.allocations[0]
    assert result.demand.pk == demand.pk
    assert [(r.pk, q) for r, q in result.allocations] == [
        (full.pk, Decimal("50.00")),
        (short.pk, Decimal("10.00")),
    ]
    full.refresh_from_db()
    short.refresh_from_db()
    wastage.refresh_from_db()
    assert (full.status, full.remaining_length) == (Roll.ALLOCATED, Decimal("0"))
    assert (short.status, short.remaining_length) == (Roll.PARTIALLY_ALLOCATED, Decimal("38"))
    assert (wastage.status, wastage.remaining_length) == (Roll.AVAILABLE, Decimal("2"))
    demand.refresh_from_db()
    assert demand.status == Demand.FULLY_MET
    assert demand.quantity_allocated == Decimal("60")

    # +100 produced (wastage included) then -60 allocated.
    assert stock_ledger.stock_level(finished, "Navy") == Decimal("40")
    assert stock_ledger.find_divergent_aggregates() == []
    assert [m.quantity for m in StockMovement.objects.filter(fabric=finished).order_by("id")] == [
        Decimal("100.00"),
        Decimal("-60.00"),
    ]
    for roll in Roll.objects.all():
        assert roll.consistency_errors() == [], roll.roll_number
