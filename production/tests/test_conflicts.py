"""Writes guarded on stale reads must fail the whole operation."""
from decimal import Decimal

import pytest

from production.exceptions import ConcurrencyConflict
from production.models import (
    Demand,
    ProductionBatch,
    ProductionOrder,
    Roll,
    RollAllocation,
    StockMovement,
)
from production.services import allocation, batches, orders, stock_ledger
from production.services.batches import CoatingBreakdown

from .helpers import add_roll, make_demand, setup_fabrics, stock_batch


class Snapshot(list):
    """Rolls read earlier, handed back as if freshly locked."""

    def select_for_update(self):
        return self


def assert_untouched(demand, *rolls):
    demand.refresh_from_db()
    assert demand.quantity_allocated == Decimal("0")
    assert demand.status == Demand.UNMET
    for roll in rolls:
        roll.refresh_from_db()
        assert (roll.status, roll.remaining_length, roll.demand_id) == (
            Roll.AVAILABLE,
            roll.total_length,
            None,
        )
    assert not RollAllocation.objects.exists()
    assert not StockMovement.objects.filter(movement_type=StockMovement.ALLOCATION).exists()


@pytest.mark.django_db
def test_roll_changed_behind_allocation_rolls_back(monkeypatch):
    raw, finished = setup_fabrics()
    batch = stock_batch(finished, color="Navy")
    first = add_roll(batch, 50)
    second = add_roll(batch, 50)
    demand = make_demand(finished, "Navy", 60)
    real = allocation.candidate_rolls

    def stale_candidates(fabric_id, color, grades=allocation.CUSTOMER_GRADES):
        rolls = Snapshot(real(fabric_id, color, grades))
        Roll.objects.filter(pk=second.pk).update(remaining_length=Decimal("45"))
        return rolls

    monkeypatch.setattr(allocation, "candidate_rolls", stale_candidates)

    with pytest.raises(ConcurrencyConflict):
        allocation.allocate(demand.pk)

    assert_untouched(demand, first, second)
    assert stock_ledger.stock_level(finished, "Navy") == Decimal("100")


@pytest.mark.django_db
def test_demand_changed_behind_allocation_rolls_back(monkeypatch):
    raw, finished = setup_fabrics()
    roll = add_roll(stock_batch(finished, color="Navy"), 50)
    demand = make_demand(finished, "Navy", 30)
    real = allocation._lock_demand

    def stale_lock(demand_id):
        locked = real(demand_id)
        Demand.objects.filter(pk=demand_id).update(quantity_allocated=Decimal("5"))
        return locked

    monkeypatch.setattr(allocation, "_lock_demand", stale_lock)

    with pytest.raises(ConcurrencyConflict):
        allocation.allocate(demand.pk)
    with pytest.raises(ConcurrencyConflict):
        allocation.manual_allocate(demand.pk, [(roll.pk, Decimal("10"))])

    assert_untouched(demand, roll)


@pytest.mark.django_db
def test_input_roll_consumed_elsewhere_aborts_coating_completion(monkeypatch):
    raw, finished = setup_fabrics()
    base = stock_batch(raw)
    inputs = [add_roll(base, 60), add_roll(base, 40)]
    order = orders.open_order(ProductionOrder.FINISH_COATING, finished, Decimal("100"), color="Navy")
    orders.reserve_input_rolls(order.pk)
    orders.start(order.pk)
    real = batches.validate_coating_breakdown

    def validate_then_steal(breakdown, total_input):
        real(breakdown, total_input)
        Roll.objects.filter(pk=inputs[1].pk).update(status=Roll.USED)

    monkeypatch.setattr(batches, "validate_coating_breakdown", validate_then_steal)

    with pytest.raises(ConcurrencyConflict):
        orders.complete(order.pk, CoatingBreakdown(full_rolls=2))

    order.refresh_from_db()
    assert order.status == ProductionOrder.IN_PROGRESS
    assert not ProductionBatch.objects.filter(production_order=order).exists()
    assert not Roll.objects.filter(fabric=finished).exists()
    assert stock_ledger.stock_level(finished, "Navy") == Decimal("0")
    for roll in inputs:
        roll.refresh_from_db()
        assert (roll.status, roll.reserved_for_id) == (Roll.ALLOCATED, order.pk)
