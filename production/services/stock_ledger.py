"""Stock aggregates and the append-only movement log.

``credit`` and ``debit`` are the only functions allowed to change a
StockAggregate. Each call adjusts the cached total and appends exactly one
StockMovement in the caller's transaction, so the aggregate can always be
re-derived from the roll ledger.
"""
from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP

from django.db import transaction
from django.db.models import F, Sum

from production.models import (
    Demand,
    Fabric,
    ProductionOrder,
    Roll,
    StockAggregate,
    StockMovement,
    ZERO,
)
from production.signals import stock_level_changed

logger = logging.getLogger(__name__)

Q2 = Decimal("0.01")


def _q(x) -> Decimal:
    return Decimal(x).quantize(Q2, rounding=ROUND_HALF_UP)


def _reference(reference):
    """Map a ProductionOrder/Demand (or a (type, id) pair) to movement columns."""
    if isinstance(reference, tuple):
        return reference
    if isinstance(reference, ProductionOrder):
        return StockMovement.REF_PRODUCTION_ORDER, reference.pk
    if isinstance(reference, Demand):
        return StockMovement.REF_DEMAND, reference.pk
    raise TypeError(f"Unsupported stock movement reference: {reference!r}")


def _apply(fabric, delta, movement_type, reference, color, notes):
    fabric_id = getattr(fabric, "pk", fabric)
    ref_type, ref_id = _reference(reference)
    agg, _ = StockAggregate.objects.select_for_update().get_or_create(
        fabric_id=fabric_id, color=color or ""
    )
    StockAggregate.objects.filter(pk=agg.pk).update(quantity=F("quantity") + delta)
    agg.refresh_from_db(fields=["quantity", "updated_at"])
    mv = StockMovement.objects.create(
        fabric_id=fabric_id,
        color=color or "",
        quantity=delta,
        movement_type=movement_type,
        reference_type=ref_type,
        reference_id=ref_id,
        notes=notes,
    )
    logger.info(
        "Stock %s %+.2fm fabric=%s color=%s -> %sm (%s #%s)",
        movement_type, delta, fabric_id, color or "-", agg.quantity, ref_type, ref_id,
    )
    _announce(fabric_id, color or "", agg.quantity)
    return mv


def _announce(fabric_id, color, quantity):
    def send():
        fabric = Fabric.objects.filter(pk=fabric_id).first()
        if fabric is None:
            return
        total = fabric_stock_total(fabric)
        stock_level_changed.send(
            sender=StockAggregate,
            fabric=fabric,
            color=color,
            quantity=quantity,
            is_low=total < fabric.minimum_stock,
        )

    transaction.on_commit(send)


def credit(fabric, qty, movement_type, reference, color="", notes="") -> StockMovement:
    """Add ``qty`` metres to the aggregate and log a positive movement."""
    qty = _q(qty)
    if qty <= 0:
        raise ValueError("Credit quantity must be positive")
    with transaction.atomic():
        return _apply(fabric, qty, movement_type, reference, color, notes)


def debit(fabric, qty, movement_type, reference, color="", notes="") -> StockMovement:
    """Remove ``qty`` metres from the aggregate and log a negative movement."""
    qty = _q(qty)
    if qty <= 0:
        raise ValueError("Debit quantity must be positive")
    with transaction.atomic():
        return _apply(fabric, -qty, movement_type, reference, color, notes)


def stock_level(fabric, color="") -> Decimal:
    fabric_id = getattr(fabric, "pk", fabric)
    agg = StockAggregate.objects.filter(fabric_id=fabric_id, color=color or "").first()
    return agg.quantity if agg else ZERO


def fabric_stock_total(fabric) -> Decimal:
    fabric_id = getattr(fabric, "pk", fabric)
    total = StockAggregate.objects.filter(fabric_id=fabric_id).aggregate(t=Sum("quantity"))["t"]
    return total or ZERO


def derive_stock_level(fabric, color="") -> Decimal:
    """Ground truth: remaining metres on in-stock rolls."""
    fabric_id = getattr(fabric, "pk", fabric)
    total = (
        Roll.objects.filter(
            fabric_id=fabric_id,
            color=color or "",
            status__in=Roll.IN_STOCK_STATUSES,
        ).aggregate(t=Sum("remaining_length"))["t"]
    )
    return total or ZERO


def _derived_levels(fabric_id=None):
    rolls = Roll.objects.filter(status__in=Roll.IN_STOCK_STATUSES)
    if fabric_id is not None:
        rolls = rolls.filter(fabric_id=fabric_id)
    levels = {}
    for row in rolls.values("fabric_id", "color").annotate(t=Sum("remaining_length")):
        levels[(row["fabric_id"], row["color"])] = row["t"] or ZERO
    return levels


def find_divergent_aggregates(fabric=None):
    """Return [(fabric_id, color, cached, derived)] where the cache is wrong."""
    fabric_id = getattr(fabric, "pk", fabric)
    derived = _derived_levels(fabric_id)
    aggs = StockAggregate.objects.all()
    if fabric_id is not None:
        aggs = aggs.filter(fabric_id=fabric_id)
    cached = {(a.fabric_id, a.color): a.quantity for a in aggs}
    out = []
    for key in sorted(set(derived) | set(cached), key=lambda k: (k[0], k[1])):
        have = _q(cached.get(key, ZERO))
        want = _q(derived.get(key, ZERO))
        if have != want:
            out.append((key[0], key[1], have, want))
    return out


@transaction.atomic
def rebuild_aggregates(fabric=None):
    """Overwrite cached aggregates with the values derived from rolls.

    This is a repair tool; it does not append movements because it does not
    change stock, only the cache of it.
    """
    fixed = []
    for fabric_id, color, have, want in find_divergent_aggregates(fabric):
        agg, _ = StockAggregate.objects.select_for_update().get_or_create(
            fabric_id=fabric_id, color=color
        )
        agg.quantity = want
        agg.save(update_fields=["quantity", "updated_at"])
        logger.warning(
            "Rebuilt stock aggregate fabric=%s color=%s: %s -> %s",
            fabric_id, color or "-", have, want,
        )
        fixed.append((fabric_id, color, have, want))
    return fixed


def low_stock_fabrics():
    """Fabrics whose total stock is below their minimum_stock threshold."""
    out = []
    for fabric in Fabric.objects.filter(minimum_stock__gt=0):
        total = fabric_stock_total(fabric)
        if total < fabric.minimum_stock:
            out.append((fabric, total))
    return out
