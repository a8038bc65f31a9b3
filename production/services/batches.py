from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.core.exceptions import ValidationError
from django.utils import timezone

from production.exceptions import ConcurrencyConflict, UnbalancedProductionError
from production.models import (
    CoatingRollInput,
    Fabric,
    ProductionBatch,
    ProductionOrder,
    Roll,
    StockMovement,
    ZERO,
)
from production.services import stock_ledger

logger = logging.getLogger(__name__)

GRADES = {Roll.GRADE_A, Roll.GRADE_B, Roll.GRADE_C}


def _q(x):
    return Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def standard_roll_length() -> Decimal:
    return _q(getattr(settings, "PRODUCTION_STANDARD_ROLL_LENGTH", Decimal("50")))


def conservation_tolerance() -> Decimal:
    return Decimal(str(getattr(settings, "PRODUCTION_CONSERVATION_TOLERANCE", "0.1")))


@dataclass
class RollOutput:
    length: Decimal
    grade: str = Roll.GRADE_A
    notes: str = ""


@dataclass
class LoomOutput:
    loom_number: str
    rolls: list[RollOutput] = field(default_factory=list)


@dataclass
class WeavingBreakdown:
    """Per-loom rolls declared at the end of a weaving order."""

    looms: list[LoomOutput] = field(default_factory=list)
    notes: str = ""

    @property
    def total_output(self) -> Decimal:
        return sum((_q(r.length) for loom in self.looms for r in loom.rolls), ZERO)


@dataclass
class CoatingBreakdown:
    """Graded output of a coating order.

    ``full_rolls`` counts standard-length A-grade rolls, ``short_rolls`` lists
    the lengths of shorter A-grade rolls and ``graded_rolls`` holds B/C rolls,
    which are wastage. ``quantities_used`` optionally overrides the metres
    consumed from each reserved input roll, keyed by roll id.
    """

    full_rolls: int = 0
    short_rolls: list[Decimal] = field(default_factory=list)
    graded_rolls: list[RollOutput] = field(default_factory=list)
    quantities_used: dict | None = None
    notes: str = ""

    @property
    def full_total(self) -> Decimal:
        return standard_roll_length() * self.full_rolls

    @property
    def short_total(self) -> Decimal:
        return sum((_q(x) for x in self.short_rolls), ZERO)

    @property
    def wastage_total(self) -> Decimal:
        return sum((_q(r.length) for r in self.graded_rolls), ZERO)

    @property
    def total_output(self) -> Decimal:
        return self.full_total + self.short_total + self.wastage_total


def next_batch_number(kind: str, today=None) -> str:
    """``WEAVING-20260119-001`` style, sequential per day and kind."""
    prefix = "WEAVING" if kind == ProductionOrder.RAW_WEAVING else "COATING"
    today = today or timezone.localdate()
    stem = f"{prefix}-{today:%Y%m%d}-"
    last = (
        ProductionBatch.objects.filter(batch_number__startswith=stem)
        .order_by("-batch_number")
        .values_list("batch_number", flat=True)
        .first()
    )
    seq = int(last[-3:]) + 1 if last else 1
    return f"{stem}{seq:03d}"


def roll_number(batch_number: str, segment: str, index: int) -> str:
    return f"{batch_number}-{segment}-R{index:03d}"


def validate_weaving_breakdown(breakdown: WeavingBreakdown):
    if not breakdown.looms:
        raise ValidationError("Loom details are required for weaving completion.")
    seen = set()
    for loom in breakdown.looms:
        if not str(loom.loom_number).strip():
            raise ValidationError("Every loom needs a loom number.")
        if loom.loom_number in seen:
            raise ValidationError(f"Loom {loom.loom_number} listed twice.")
        seen.add(loom.loom_number)
        if not loom.rolls:
            raise ValidationError(f"Loom {loom.loom_number} produced no rolls.")
        for r in loom.rolls:
            if r.grade not in GRADES:
                raise ValidationError(f"Unknown quality grade {r.grade!r}.")
            if _q(r.length) <= 0:
                raise ValidationError("All roll lengths must be positive numbers.")


def validate_coating_breakdown(breakdown: CoatingBreakdown, total_input: Decimal):
    """Input checks followed by the conservation check (input == output)."""
    if breakdown.full_rolls < 0:
        raise ValidationError("A grade full roll count cannot be negative.")
    for length in breakdown.short_rolls:
        if _q(length) <= 0:
            raise ValidationError("A grade short rolls must have a positive length.")
    for r in breakdown.graded_rolls:
        if r.grade not in (Roll.GRADE_B, Roll.GRADE_C):
            raise ValidationError("Only B/C grade rolls may be listed as graded wastage.")
        if _q(r.length) <= 0:
            raise ValidationError("B/C grade rolls must have a positive length.")
    if not (breakdown.full_rolls or breakdown.short_rolls or breakdown.graded_rolls):
        raise ValidationError("Coating completion must declare at least one output roll.")

    total_output = breakdown.total_output
    if abs(total_input - total_output) > conservation_tolerance():
        raise UnbalancedProductionError(total_input, total_output)


def _create_batch(order, kind, produced, wastage, actor, notes, input_quantity=None):
    now = timezone.now()
    return ProductionBatch.objects.create(
        batch_number=next_batch_number(kind, timezone.localdate(now)),
        production_order=order,
        kind=kind,
        planned_quantity=order.required_quantity,
        produced_quantity=produced,
        wastage_quantity=wastage,
        input_quantity=input_quantity,
        completed_by=actor if getattr(actor, "pk", None) else None,
        notes=notes,
        created_at=now,
    )


def _make_roll(batch, order, number, length, grade, *, loom_number="", notes=""):
    length = _q(length)
    return Roll.objects.create(
        roll_number=number,
        fabric_kind=order.fabric.kind,
        fabric=order.fabric,
        color=order.color if order.fabric.kind == Fabric.FINISHED else "",
        quality_grade=grade,
        roll_type=Roll.type_for(grade, length, standard_roll_length()),
        total_length=length,
        remaining_length=length,
        status=Roll.AVAILABLE,
        batch=batch,
        loom_number=loom_number,
        quality_notes=notes,
        created_at=batch.created_at,
    )


def record_weaving_batch(order: ProductionOrder, breakdown: WeavingBreakdown, actor=None):
    """Create one raw roll per declared loom roll and credit base stock.

    Raw fibre consumption is not tracked, so there is no input-side check.
    """
    if order.fabric.kind != Fabric.RAW:
        raise ValidationError("Weaving orders must produce raw fabric.")
    validate_weaving_breakdown(breakdown)

    produced = breakdown.total_output
    wastage = sum(
        (_q(r.length) for loom in breakdown.looms for r in loom.rolls if r.grade != Roll.GRADE_A),
        ZERO,
    )
    batch = _create_batch(order, ProductionOrder.RAW_WEAVING, produced, wastage, actor, breakdown.notes)
    rolls = []
    for loom in breakdown.looms:
        for idx, r in enumerate(loom.rolls, start=1):
            rolls.append(
                _make_roll(
                    batch,
                    order,
                    roll_number(batch.batch_number, loom.loom_number, idx),
                    r.length,
                    r.grade,
                    loom_number=loom.loom_number,
                    notes=r.notes,
                )
            )

    stock_ledger.credit(
        order.fabric,
        produced,
        StockMovement.PRODUCTION_IN,
        order,
        notes=f"Production completed - Batch {batch.batch_number}",
    )
    logger.info(
        "Weaving batch %s: %d rolls, %sm from %d looms",
        batch.batch_number, len(rolls), produced, len(breakdown.looms),
    )
    return batch, rolls


def _consumed_inputs(order, breakdown):
    inputs = list(
        CoatingRollInput.objects.filter(production_order=order).order_by("processing_order", "id")
    )
    if not inputs:
        raise ValidationError("Input rolls are required for coating completion.")
    rolls = {
        r.pk: r
        for r in Roll.objects.select_for_update().filter(pk__in=[i.roll_id for i in inputs])
    }
    overrides = breakdown.quantities_used or {}
    unknown = {int(k) for k in overrides} - set(rolls)
    if unknown:
        raise ValidationError(f"Rolls {sorted(unknown)} are not reserved for this order.")
    for inp in inputs:
        roll = rolls[inp.roll_id]
        if roll.reserved_for_id != order.pk or roll.status != Roll.ALLOCATED:
            raise ConcurrencyConflict(f"Input roll {roll.roll_number} is no longer reserved")
        inp.roll = roll
        qty = overrides.get(roll.pk, overrides.get(str(roll.pk)))
        if qty is not None:
            qty = _q(qty)
            if qty <= 0 or qty > roll.total_length:
                raise ValidationError(
                    f"Quantity used from {roll.roll_number} must be within 0..{roll.total_length}m."
                )
            inp.quantity_used = qty
    return inputs


def record_coating_batch(order: ProductionOrder, breakdown: CoatingBreakdown, actor=None):
    """Consume reserved raw rolls and create graded finished rolls.

    The conservation check runs before anything is written.
    """
    if order.fabric.kind != Fabric.FINISHED:
        raise ValidationError("Coating orders must produce finished fabric.")
    inputs = _consumed_inputs(order, breakdown)
    total_input = sum((_q(i.quantity_used) for i in inputs), ZERO)
    validate_coating_breakdown(breakdown, total_input)

    produced = breakdown.total_output
    batch = _create_batch(
        order,
        ProductionOrder.FINISH_COATING,
        produced,
        breakdown.wastage_total,
        actor,
        breakdown.notes,
        input_quantity=total_input,
    )
    standard = standard_roll_length()
    rolls = []
    for idx in range(1, breakdown.full_rolls + 1):
        rolls.append(_make_roll(batch, order, roll_number(batch.batch_number, "A50", idx), standard, Roll.GRADE_A))
    for idx, length in enumerate(breakdown.short_rolls, start=1):
        rolls.append(_make_roll(batch, order, roll_number(batch.batch_number, "AS", idx), length, Roll.GRADE_A))
    for idx, r in enumerate(breakdown.graded_rolls, start=1):
        rolls.append(
            _make_roll(batch, order, roll_number(batch.batch_number, "BC", idx), r.length, r.grade, notes=r.notes)
        )

    for inp in inputs:
        CoatingRollInput.objects.filter(pk=inp.pk).update(quantity_used=_q(inp.quantity_used))
    consumed = Roll.objects.filter(
        pk__in=[i.roll_id for i in inputs], reserved_for=order, status=Roll.ALLOCATED
    ).update(status=Roll.USED, remaining_length=ZERO)
    if consumed != len(inputs):
        raise ConcurrencyConflict(f"Input rolls for {order.order_number} changed during completion")

    stock_ledger.credit(
        order.fabric,
        produced,
        StockMovement.PRODUCTION_IN,
        order,
        color=order.color,
        notes=f"Production completed - Batch {batch.batch_number}",
    )
    logger.info(
        "Coating batch %s: %d rolls (%d full, %d short, %d B/C), in %sm out %sm",
        batch.batch_number, len(rolls), breakdown.full_rolls, len(breakdown.short_rolls),
        len(breakdown.graded_rolls), total_input, produced,
    )
    return batch, rolls


def record_batch(order: ProductionOrder, breakdown, actor=None):
    if order.kind == ProductionOrder.RAW_WEAVING:
        if not isinstance(breakdown, WeavingBreakdown):
            raise ValidationError("Weaving orders complete with a per-loom breakdown.")
        return record_weaving_batch(order, breakdown, actor)
    if not isinstance(breakdown, CoatingBreakdown):
        raise ValidationError("Coating orders complete with a graded roll breakdown.")
    return record_coating_batch(order, breakdown, actor)
