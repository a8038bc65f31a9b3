from decimal import Decimal
from itertools import count

from django.contrib.auth import get_user_model
from django.utils import timezone

from production.models import (
    Demand,
    Fabric,
    ProductionBatch,
    ProductionOrder,
    Roll,
    StockMovement,
)
from production.services import stock_ledger
from production.services.batches import LoomOutput, RollOutput, WeavingBreakdown

_seq = count(1)


def setup_fabrics(minimum_stock=Decimal("0")):
    raw = Fabric.objects.create(name="Polyester 220gsm", kind=Fabric.RAW, gsm=220)
    finished = Fabric.objects.create(
        name="PU Coated 220gsm",
        kind=Fabric.FINISHED,
        base_fabric=raw,
        coating_type="PU",
        minimum_stock=minimum_stock,
    )
    return raw, finished


def make_user(username="manager", superuser=False):
    User = get_user_model()
    if superuser:
        return User.objects.create_superuser(username=username, password="pass")
    return User.objects.create_user(username=username, password="pass")


def weaving(*looms):
    """weaving(("L1", [60]), ("L2", [40, (5, "B")]))"""
    out = []
    for loom_number, lengths in looms:
        rolls = []
        for item in lengths:
            if isinstance(item, tuple):
                rolls.append(RollOutput(Decimal(str(item[0])), item[1]))
            else:
                rolls.append(RollOutput(Decimal(str(item))))
        out.append(LoomOutput(loom_number, rolls))
    return WeavingBreakdown(looms=out)


def stock_batch(fabric, color=""):
    """A completed order + batch to hang hand-made rolls on."""
    n = next(_seq)
    kind = ProductionOrder.RAW_WEAVING if fabric.kind == Fabric.RAW else ProductionOrder.FINISH_COATING
    order = ProductionOrder.objects.create(
        order_number=f"TEST-{n:04d}",
        kind=kind,
        fabric=fabric,
        color=color,
        required_quantity=Decimal("100"),
        produced_quantity=Decimal("100"),
        status=ProductionOrder.COMPLETED,
    )
    return ProductionBatch.objects.create(
        batch_number=f"TEST-BATCH-{n:04d}",
        production_order=order,
        kind=kind,
        planned_quantity=Decimal("100"),
    )


def add_roll(batch, length, grade=Roll.GRADE_A, color=None, created_at=None, number=None):
    """Create an available roll and credit the stock ledger for it."""
    order = batch.production_order
    fabric = order.fabric
    color = order.color if color is None else color
    length = Decimal(str(length))
    roll = Roll.objects.create(
        roll_number=number or f"{batch.batch_number}-R{next(_seq):04d}",
        fabric_kind=fabric.kind,
        fabric=fabric,
        color=color,
        quality_grade=grade,
        roll_type=Roll.type_for(grade, length, Decimal("50")),
        total_length=length,
        remaining_length=length,
        batch=batch,
        created_at=created_at or timezone.now(),
    )
    stock_ledger.credit(fabric, length, StockMovement.PRODUCTION_IN, order, color=color)
    return roll


def make_demand(fabric, color, quantity, created_at=None, customer_order=None, line_no=1):
    return Demand.objects.create(
        customer_order=customer_order,
        line_no=line_no,
        fabric=fabric,
        color=color,
        quantity_requested=Decimal(str(quantity)),
        created_at=created_at or timezone.now(),
    )
