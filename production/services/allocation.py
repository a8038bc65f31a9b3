"""Matching finished rolls to customer demand.

All allocation for a fabric is serialised on that fabric's row lock, so two
callers can never hand out the same metres. Roll writes are additionally
guarded on the values that were read.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from production.exceptions import ConcurrencyConflict, NoAvailableStock
from production.models import (
    CustomerOrder,
    Demand,
    Fabric,
    Roll,
    RollAllocation,
    StockMovement,
    ZERO,
)
from production.permissions import require_authorized
from production.services import stock_ledger
from production.services.batches import _q
from production.services.retry import retry_on_conflict
from production.signals import allocation_completed

logger = logging.getLogger(__name__)

# Only first-quality rolls are shipped automatically.
CUSTOMER_GRADES = (Roll.GRADE_A,)


@dataclass
class AllocationResult:
    demand: Demand
    allocations: list = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((qty for _, qty in self.allocations), ZERO)


def _lock_fabric(fabric_id):
    return Fabric.objects.select_for_update().get(pk=fabric_id)


def _lock_demand(demand_id) -> Demand:
    """Lock the demand's fabric, then the demand itself."""
    fabric_id = Demand.objects.filter(pk=demand_id).values_list("fabric_id", flat=True).first()
    if fabric_id is None:
        raise ValidationError(f"Demand {demand_id} does not exist.")
    _lock_fabric(fabric_id)
    return Demand.objects.select_for_update().select_related("fabric").get(pk=demand_id)


def _take(roll, qty, demand, now):
    remaining = roll.remaining_length - qty
    status = Roll.ALLOCATED if remaining == 0 else Roll.PARTIALLY_ALLOCATED
    updated = Roll.objects.filter(
        pk=roll.pk,
        status__in=Roll.IN_STOCK_STATUSES,
        remaining_length=roll.remaining_length,
        reserved_for__isnull=True,
    ).update(remaining_length=remaining, status=status, demand=demand, updated_at=now)
    if updated != 1:
        raise ConcurrencyConflict(f"Roll {roll.roll_number} changed during allocation")
    roll.remaining_length = remaining
    roll.status = status
    roll.demand = demand
    return roll


def _finish(demand, allocations, *, manual, actor):
    """Apply the demand update, traceability rows and the stock debit."""
    total = sum((qty for _, qty in allocations), ZERO)
    allocated = demand.quantity_allocated + total
    if allocated > demand.quantity_requested:
        raise ValidationError(f"Allocation would exceed demand {demand.pk}.")
    status = Demand.status_for(demand.quantity_requested, allocated)
    updated = Demand.objects.filter(
        pk=demand.pk, quantity_allocated=demand.quantity_allocated
    ).update(quantity_allocated=allocated, status=status, updated_at=timezone.now())
    if updated != 1:
        raise ConcurrencyConflict(f"Demand {demand.pk} changed during allocation")
    demand.quantity_allocated = allocated
    demand.status = status

    user = actor if getattr(actor, "pk", None) else None
    RollAllocation.objects.bulk_create(
        [
            RollAllocation(roll=roll, demand=demand, quantity=qty, manual=manual, allocated_by=user)
            for roll, qty in allocations
        ]
    )
    stock_ledger.debit(
        demand.fabric,
        total,
        StockMovement.ALLOCATION,
        demand,
        color=demand.color,
        notes=("Manual" if manual else "Auto") + f" allocation of {len(allocations)} rolls",
    )
    logger.info(
        "%s allocation: demand %s got %sm from %d rolls (%s)",
        "Manual" if manual else "Auto", demand.pk, total, len(allocations), status,
    )
    transaction.on_commit(
        lambda: allocation_completed.send(
            sender=Demand, demand=demand, allocations=allocations, manual=manual
        )
    )
    return AllocationResult(demand=demand, allocations=allocations)


def candidate_rolls(fabric_id, color, grades=CUSTOMER_GRADES):
    """In-stock rolls eligible for automatic allocation, oldest first."""
    return Roll.objects.filter(
        fabric_id=fabric_id,
        color=color,
        status__in=Roll.IN_STOCK_STATUSES,
        remaining_length__gt=0,
        quality_grade__in=grades,
        reserved_for__isnull=True,
    ).order_by("created_at", "roll_number")


@retry_on_conflict
def allocate(
    demand_id,
    fabric_id=None,
    color=None,
    target_quantity=None,
    *,
    actor=None,
    authorized=True,
    grades=CUSTOMER_GRADES,
):
    """Allocate oldest-first from matching rolls, up to ``target_quantity``.

    Returns an AllocationResult whose ``allocations`` are ``(roll, qty)``
    pairs. Raises NoAvailableStock when something is owed but nothing
    could be allocated.
    """
    require_authorized(authorized, "allocate stock")
    demand = _lock_demand(demand_id)
    if fabric_id is not None and int(fabric_id) != demand.fabric_id:
        raise ValidationError("Fabric does not match the demand.")
    if color is not None and color != demand.color:
        raise ValidationError("Colour does not match the demand.")

    requirement = demand.outstanding
    if target_quantity is not None:
        requirement = min(_q(target_quantity), requirement)
    if requirement <= 0:
        return AllocationResult(demand=demand)

    now = timezone.now()
    allocations, left = [], requirement
    for roll in candidate_rolls(demand.fabric_id, demand.color, grades).select_for_update():
        if left <= 0:
            break
        qty = min(roll.remaining_length, left)
        allocations.append((_take(roll, qty, demand, now), qty))
        left -= qty

    if not allocations:
        raise NoAvailableStock(
            f"No {demand.fabric.name} / {demand.color} stock for demand {demand.pk}",
            demand_id=demand.pk,
            requirement=requirement,
        )
    return _finish(demand, allocations, manual=False, actor=actor)


@retry_on_conflict
def sweep_pending_demand(fabric_id, *, actor=None, authorized=True):
    """Offer new stock of a fabric to open demands, oldest demand first.

    A demand that cannot be served stays open and the sweep moves on. Returns
    one AllocationResult per demand that received stock.
    """
    require_authorized(authorized, "allocate stock")
    _lock_fabric(fabric_id)
    results = []
    demands = Demand.objects.filter(
        fabric_id=fabric_id, status__in=Demand.OPEN_STATUSES
    ).order_by("created_at", "id")
    for demand in demands:
        if not candidate_rolls(fabric_id, demand.color).exists():
            continue
        try:
            result = allocate(demand.pk, actor=actor, authorized=authorized)
        except NoAvailableStock:
            continue
        if result.allocations:
            results.append(result)
        if not _any_stock(fabric_id):
            break
    if results:
        logger.info(
            "Sweep of fabric %s served %d demands (%sm)",
            fabric_id, len(results), sum((r.total for r in results), ZERO),
        )
    return results


def _any_stock(fabric_id):
    return Roll.objects.filter(
        fabric_id=fabric_id,
        status__in=Roll.IN_STOCK_STATUSES,
        remaining_length__gt=0,
        quality_grade__in=CUSTOMER_GRADES,
        reserved_for__isnull=True,
    ).exists()


@retry_on_conflict
def manual_allocate(demand_id, roll_selections, *, actor=None, authorized=True):
    """Allocate hand-picked rolls of any grade to a demand.

    ``roll_selections`` is a list of ``(roll_id, quantity)``.
    """
    require_authorized(authorized, "allocate stock")
    demand = _lock_demand(demand_id)
    if not roll_selections:
        raise ValidationError("Select at least one roll.")
    ids = [int(roll_id) for roll_id, _ in roll_selections]
    if len(set(ids)) != len(ids):
        raise ValidationError("A roll can only be selected once.")
    quantities = [_q(qty) for _, qty in roll_selections]
    if any(qty <= 0 for qty in quantities):
        raise ValidationError("Allocated quantities must be positive.")

    if sum(quantities, ZERO) > demand.outstanding:
        raise ValidationError(
            f"Selected {sum(quantities, ZERO)}m but demand {demand.pk} only needs {demand.outstanding}m."
        )

    rolls = {r.pk: r for r in Roll.objects.select_for_update().filter(pk__in=ids)}
    now = timezone.now()
    allocations = []
    for roll_id, qty in zip(ids, quantities):
        roll = rolls.get(roll_id)
        if roll is None:
            raise ValidationError(f"Roll {roll_id} does not exist.")
        if roll.fabric_id != demand.fabric_id or roll.color != demand.color:
            raise ValidationError(f"Roll {roll.roll_number} does not match the demand's fabric/colour.")
        if roll.status not in Roll.IN_STOCK_STATUSES or roll.reserved_for_id is not None:
            raise ValidationError(f"Roll {roll.roll_number} is not in stock.")
        if qty > roll.remaining_length:
            raise ValidationError(
                f"Roll {roll.roll_number} has only {roll.remaining_length}m remaining."
            )
        allocations.append((_take(roll, qty, demand, now), qty))
    return _finish(demand, allocations, manual=True, actor=actor)


def allocate_customer_order(order_id, *, actor=None, authorized=True):
    """Allocate to the next unmet line of a customer order, if any."""
    order = CustomerOrder.objects.filter(pk=order_id).first()
    if order is None:
        raise ValidationError(f"Customer order {order_id} does not exist.")
    line = order.next_unmet_line()
    if line is None:
        return None
    return allocate(line.pk, actor=actor, authorized=authorized)
