"""Production order lifecycle.

pending -> in_progress -> completed, with on_hold as a detour from
pending or in_progress. Coating orders linked to an upstream weaving order start in
waiting_materials and are released to pending when the upstream completes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Max, Sum
from django.utils import timezone

from production.exceptions import ConcurrencyConflict, InvalidTransition, NoAvailableStock
from production.models import (
    CoatingRollInput,
    Fabric,
    ProductionOrder,
    Roll,
    StockMovement,
    ZERO,
)
from production.permissions import require_authorized
from production.services import allocation, stock_ledger
from production.services.batches import _q, record_batch
from production.services.retry import retry_on_conflict
from production.signals import production_order_transitioned

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    order: ProductionOrder
    batch: object
    rolls: list = field(default_factory=list)
    released_orders: list = field(default_factory=list)
    allocations: list = field(default_factory=list)
    sweep_error: Exception | None = None


def _announce(order, previous):
    transaction.on_commit(
        lambda: production_order_transitioned.send(
            sender=ProductionOrder, order=order, previous=previous
        )
    )


def _lock(order_id) -> ProductionOrder:
    try:
        return (
            ProductionOrder.objects.select_for_update()
            .select_related("fabric", "fabric__base_fabric")
            .get(pk=order_id)
        )
    except ProductionOrder.DoesNotExist:
        raise ValidationError(f"Production order {order_id} does not exist.")


def _move(order, expected, target, **extra):
    """Guarded status write; the row must still be in ``expected``."""
    now = timezone.now()
    updated = ProductionOrder.objects.filter(pk=order.pk, status=expected).update(
        status=target, updated_at=now, **extra
    )
    if updated != 1:
        raise ConcurrencyConflict(f"{order.order_number} changed while moving to {target}")
    order.refresh_from_db()
    _announce(order, expected)
    logger.info("Production order %s: %s -> %s", order.order_number, expected, target)
    return order


def _expect(order, *statuses, action):
    if order.status not in statuses:
        raise InvalidTransition(
            f"Cannot {action} {order.order_number} while it is {order.status}.",
            current=order.status,
        )


def next_order_number(kind, today=None) -> str:
    """``ORD260119001-W`` style, sequential per day."""
    suffix = "W" if kind == ProductionOrder.RAW_WEAVING else "C"
    today = today or timezone.localdate()
    stem = f"ORD{today:%y%m%d}"
    last = (
        ProductionOrder.objects.filter(order_number__startswith=stem)
        .order_by("-order_number")
        .values_list("order_number", flat=True)
        .first()
    )
    seq = int(last[len(stem):len(stem) + 3]) + 1 if last else 1
    return f"{stem}{seq:03d}-{suffix}"


@transaction.atomic
def open_order(kind, fabric, required_quantity, *, color="", upstream=None, demand=None, notes=""):
    """Register a production order in its initial state.

    Coating orders fed by an unfinished upstream order wait for materials.
    """
    required_quantity = _q(required_quantity)
    if required_quantity <= 0:
        raise ValidationError("Required quantity must be positive.")
    expected_kind = Fabric.RAW if kind == ProductionOrder.RAW_WEAVING else Fabric.FINISHED
    if fabric.kind != expected_kind:
        raise ValidationError(f"{kind} orders must produce {expected_kind} fabric.")
    if upstream is not None:
        if kind != ProductionOrder.FINISH_COATING:
            raise ValidationError("Only coating orders can be linked to an upstream order.")
        if upstream.kind != ProductionOrder.RAW_WEAVING or upstream.fabric_id != fabric.base_fabric_id:
            raise ValidationError(
                f"Upstream order {upstream.order_number} does not weave the base fabric of {fabric}."
            )

    status = ProductionOrder.PENDING
    if upstream is not None and upstream.status != ProductionOrder.COMPLETED:
        status = ProductionOrder.WAITING_MATERIALS
    order = ProductionOrder.objects.create(
        order_number=next_order_number(kind),
        kind=kind,
        fabric=fabric,
        color=color,
        required_quantity=required_quantity,
        status=status,
        linked_upstream_order=upstream,
        demand=demand,
        notes=notes,
    )
    logger.info("Opened production order %s (%s)", order.order_number, status)
    return order


@retry_on_conflict
def start(order_id, *, actor=None, authorized=True):
    require_authorized(authorized, "start production")
    order = _lock(order_id)
    _expect(order, ProductionOrder.PENDING, action="start")
    upstream = order.linked_upstream_order
    if upstream is not None and upstream.status != ProductionOrder.COMPLETED:
        raise InvalidTransition(
            f"Upstream order {upstream.order_number} is not completed.", current=order.status
        )
    if order.is_coating:
        reserved = order.roll_inputs.aggregate(t=Sum("quantity_used"))["t"] or ZERO
        if reserved < order.required_quantity:
            raise InvalidTransition(
                f"Insufficient input for {order.order_number}: required {order.required_quantity}m, "
                f"reserved {reserved}m.",
                current=order.status,
            )
    return _move(order, ProductionOrder.PENDING, ProductionOrder.IN_PROGRESS, started_at=timezone.now())


@retry_on_conflict
def hold(order_id, *, actor=None, authorized=True):
    require_authorized(authorized, "hold production")
    order = _lock(order_id)
    _expect(order, ProductionOrder.PENDING, ProductionOrder.IN_PROGRESS, action="hold")
    return _move(order, order.status, ProductionOrder.ON_HOLD)


@retry_on_conflict
def resume(order_id, *, actor=None, authorized=True):
    """Return a held order to in_progress if it had started, else to pending."""
    require_authorized(authorized, "resume production")
    order = _lock(order_id)
    _expect(order, ProductionOrder.ON_HOLD, action="resume")
    target = ProductionOrder.IN_PROGRESS if order.started_at else ProductionOrder.PENDING
    return _move(order, ProductionOrder.ON_HOLD, target)


def _release_waiting(order):
    waiting = list(
        ProductionOrder.objects.select_for_update()
        .filter(linked_upstream_order=order, status=ProductionOrder.WAITING_MATERIALS)
        .order_by("created_at", "id")
    )
    released = []
    for downstream in waiting:
        released.append(
            _move(downstream, ProductionOrder.WAITING_MATERIALS, ProductionOrder.PENDING)
        )
    return released


@retry_on_conflict
def cascade_on_completion(order_id):
    """Move orders waiting on ``order_id`` to pending. Safe to repeat."""
    order = _lock(order_id)
    _expect(order, ProductionOrder.COMPLETED, action="cascade from")
    return _release_waiting(order)


@retry_on_conflict
def complete(order_id, breakdown, *, actor=None, authorized=True):
    """Record the batch, close the order and release downstream orders."""
    require_authorized(authorized, "complete production")
    order = _lock(order_id)
    _expect(order, ProductionOrder.IN_PROGRESS, action="complete")
    batch, rolls = record_batch(order, breakdown, actor)
    _move(
        order,
        ProductionOrder.IN_PROGRESS,
        ProductionOrder.COMPLETED,
        produced_quantity=batch.produced_quantity,
        completed_at=timezone.now(),
    )
    released = _release_waiting(order)
    return CompletionResult(order=order, batch=batch, rolls=rolls, released_orders=released)


def complete_production(order_id, breakdown, *, actor=None, authorized=True):
    """complete() and then, in a separate transaction, a demand sweep.

    The completion is committed even when the sweep hits a conflict; the
    unmet demand is picked up by the next sweep.
    """
    result = complete(order_id, breakdown, actor=actor, authorized=authorized)
    if result.order.fabric.kind != Fabric.FINISHED:
        return result
    try:
        result.allocations = allocation.sweep_pending_demand(
            result.order.fabric_id, actor=actor, authorized=authorized
        )
    except ConcurrencyConflict as exc:
        logger.warning(
            "Sweep after %s deferred: %s", result.order.order_number, exc
        )
        result.sweep_error = exc
    return result


def _fifo_inputs(order, base_fabric, needed):
    rolls = Roll.objects.select_for_update().filter(
        fabric=base_fabric,
        status=Roll.AVAILABLE,
        reserved_for__isnull=True,
        archived=False,
    )
    upstream = order.linked_upstream_order
    if upstream is not None:
        rolls = rolls.filter(batch__production_order=upstream)
    picked, covered = [], ZERO
    for roll in rolls.order_by("created_at", "roll_number"):
        if covered >= needed:
            break
        picked.append((roll.pk, roll.remaining_length))
        covered += roll.remaining_length
    return picked


@retry_on_conflict
def reserve_input_rolls(order_id, selections=None, *, actor=None, authorized=True):
    """Reserve raw rolls as coating input and debit base-fabric stock.

    ``selections`` is a list of ``(roll_id, quantity_used)``; when omitted the
    oldest available rolls (from the upstream batch, if linked) are taken
    until the order's required quantity is covered. Each reserved roll is
    taken whole, so ``quantity_used`` may be None or the roll's remaining
    length. Reservations may be topped up until start() sees them covering
    the required quantity.
    """
    require_authorized(authorized, "reserve input rolls")
    order = _lock(order_id)
    if not order.is_coating:
        raise ValidationError("Only coating orders consume input rolls.")
    _expect(order, ProductionOrder.PENDING, action="reserve rolls for")
    base = order.fabric.base_fabric
    if base is None:
        raise ValidationError(f"{order.fabric} has no base fabric.")
    Fabric.objects.select_for_update().get(pk=base.pk)

    reserved = order.roll_inputs.aggregate(t=Max("processing_order"))["t"] or 0
    if selections is None:
        already = sum((i.quantity_used for i in order.roll_inputs.all()), ZERO)
        if already >= order.required_quantity:
            raise ValidationError(f"{order.order_number} already has enough input rolls.")
        selections = _fifo_inputs(order, base, order.required_quantity - already)
        if not selections:
            raise NoAvailableStock(
                f"No {base.name} rolls available for {order.order_number}.",
                requirement=order.required_quantity - already,
            )
    if not selections:
        raise ValidationError("Select at least one input roll.")
    ids = [int(roll_id) for roll_id, _ in selections]
    if len(set(ids)) != len(ids):
        raise ValidationError("An input roll can only be selected once.")

    now = timezone.now()
    inputs, debited = [], ZERO
    for seq, (roll_id, qty) in enumerate(selections, start=reserved + 1):
        roll = Roll.objects.select_for_update().filter(pk=roll_id).first()
        if roll is None or roll.fabric_id != base.pk:
            raise ValidationError(f"Roll {roll_id} is not a {base.name} roll.")
        if roll.status != Roll.AVAILABLE or roll.reserved_for_id is not None:
            raise ValidationError(f"Roll {roll.roll_number} is not available.")
        qty = _q(qty) if qty is not None else roll.remaining_length
        if qty != roll.remaining_length:
            raise ValidationError(
                f"Roll {roll.roll_number} is reserved whole; quantity used must be {roll.remaining_length}m."
            )
        updated = Roll.objects.filter(
            pk=roll.pk,
            status=Roll.AVAILABLE,
            remaining_length=roll.remaining_length,
            reserved_for__isnull=True,
        ).update(status=Roll.ALLOCATED, remaining_length=ZERO, reserved_for=order, updated_at=now)
        if updated != 1:
            raise ConcurrencyConflict(f"Roll {roll.roll_number} changed during reservation")
        debited += roll.remaining_length
        inputs.append(
            CoatingRollInput.objects.create(
                production_order=order, roll=roll, quantity_used=qty, processing_order=seq
            )
        )

    stock_ledger.debit(
        base,
        debited,
        StockMovement.ALLOCATION,
        order,
        notes=f"Reserved {len(inputs)} rolls for {order.order_number}",
    )
    logger.info(
        "Reserved %d input rolls (%sm) for %s", len(inputs), debited, order.order_number
    )
    return inputs


@retry_on_conflict
def release_input_rolls(order_id, *, actor=None, authorized=True) -> Decimal:
    """Undo reservations of an order that has not been completed."""
    require_authorized(authorized, "release input rolls")
    order = _lock(order_id)
    _expect(order, ProductionOrder.PENDING, ProductionOrder.ON_HOLD, action="release rolls of")
    if order.started_at is not None:
        raise InvalidTransition(
            f"{order.order_number} has started; its input rolls are on the line.",
            current=order.status,
        )
    inputs = list(order.roll_inputs.select_related("roll"))
    if not inputs:
        return ZERO
    base = order.fabric.base_fabric
    Fabric.objects.select_for_update().get(pk=base.pk)
    rolls = list(Roll.objects.select_for_update().filter(pk__in=[i.roll_id for i in inputs]))
    now = timezone.now()
    returned = ZERO
    for roll in rolls:
        updated = Roll.objects.filter(
            pk=roll.pk, status=Roll.ALLOCATED, reserved_for=order
        ).update(
            status=Roll.AVAILABLE,
            remaining_length=roll.total_length,
            reserved_for=None,
            updated_at=now,
        )
        if updated != 1:
            raise ConcurrencyConflict(f"Roll {roll.roll_number} is no longer reserved")
        returned += roll.total_length
    CoatingRollInput.objects.filter(production_order=order).delete()
    stock_ledger.credit(
        base,
        returned,
        StockMovement.RETURN,
        order,
        notes=f"Released {len(rolls)} rolls from {order.order_number}",
    )
    logger.info("Released %d input rolls (%sm) from %s", len(rolls), returned, order.order_number)
    return returned
