# models.py

from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q, Sum
from django.utils import timezone

ZERO = Decimal("0.00")


def _dec(x):
    """Ensure Decimal conversion with string for precision."""
    return Decimal(str(x)) if x is not None else None


def _length_field(**kwargs):
    return models.DecimalField(max_digits=12, decimal_places=2, **kwargs)


#
# ——————————————————————————————————————
# Core Lookups
# ——————————————————————————————————————
#
class Fabric(models.Model):
    """Base (greige) fabric off the looms or finished (coated) fabric."""

    RAW = "raw"
    FINISHED = "finished"
    KIND_CHOICES = [(RAW, "Raw (base) fabric"), (FINISHED, "Finished fabric")]

    name = models.CharField(max_length=100)
    kind = models.CharField(max_length=10, choices=KIND_CHOICES)
    base_fabric = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="finished_fabrics",
        limit_choices_to={"kind": "raw"},
        help_text="Raw fabric this finished fabric is coated from",
    )
    gsm = models.PositiveIntegerField(null=True, blank=True)
    width_metres = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    coating_type = models.CharField(max_length=50, blank=True)
    minimum_stock = _length_field(default=ZERO, help_text="Low-stock threshold (metres)")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name", "id"]
        unique_together = ("name", "kind")

    def __str__(self):
        return f"{self.name} ({self.get_kind_display()})"

    def clean(self):
        if self.kind == self.FINISHED and self.base_fabric_id is None:
            raise ValidationError("Finished fabric requires a base fabric.")
        if self.kind == self.RAW and self.base_fabric_id is not None:
            raise ValidationError("Raw fabric cannot have a base fabric.")


#
# ——————————————————————————————————————
# Customer demand
# ——————————————————————————————————————
#
class CustomerOrder(models.Model):
    """Header for a confirmed customer order; each line is a Demand."""

    order_number = models.CharField(max_length=30, unique=True)
    customer_name = models.CharField(max_length=150)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"{self.order_number} – {self.customer_name}"

    def next_unmet_line(self):
        """Lowest-numbered line that still needs stock, or None."""
        return (
            self.lines.exclude(status=Demand.FULLY_MET)
            .order_by("line_no", "id")
            .first()
        )

    @property
    def quantity_requested(self):
        return self.lines.aggregate(t=Sum("quantity_requested"))["t"] or ZERO

    @property
    def quantity_allocated(self):
        return self.lines.aggregate(t=Sum("quantity_allocated"))["t"] or ZERO


class Demand(models.Model):
    """Quantity of one fabric+colour owed to a customer."""

    UNMET = "unmet"
    PARTIALLY_MET = "partially_met"
    FULLY_MET = "fully_met"
    STATUS_CHOICES = [
        (UNMET, "Unmet"),
        (PARTIALLY_MET, "Partially met"),
        (FULLY_MET, "Fully met"),
    ]
    OPEN_STATUSES = (UNMET, PARTIALLY_MET)

    customer_order = models.ForeignKey(
        CustomerOrder,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="lines",
    )
    line_no = models.PositiveIntegerField(default=1)
    fabric = models.ForeignKey(Fabric, on_delete=models.PROTECT, related_name="demands")
    color = models.CharField(max_length=50)
    quantity_requested = _length_field()
    quantity_allocated = _length_field(default=ZERO)
    status = models.CharField(max_length=15, choices=STATUS_CHOICES, default=UNMET)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [models.Index(fields=["fabric", "status", "created_at"], name="prod_demand_open_idx")]
        constraints = [
            models.CheckConstraint(
                condition=Q(quantity_allocated__lte=models.F("quantity_requested")),
                name="demand_allocated_lte_requested",
            ),
        ]

    def __str__(self):
        return f"Demand #{self.pk}: {self.quantity_requested}m {self.fabric} / {self.color}"

    @property
    def outstanding(self):
        return max(_dec(self.quantity_requested) - _dec(self.quantity_allocated), ZERO)

    @classmethod
    def status_for(cls, requested, allocated):
        if allocated >= requested:
            return cls.FULLY_MET
        if allocated > 0:
            return cls.PARTIALLY_MET
        return cls.UNMET

    def refresh_status(self):
        self.status = self.status_for(_dec(self.quantity_requested), _dec(self.quantity_allocated))
        return self.status


#
# ——————————————————————————————————————
# Production orders and batches
# ——————————————————————————————————————
#
class ProductionOrder(models.Model):
    """A unit of manufacturing work: weaving raw fabric or coating it."""

    RAW_WEAVING = "raw_weaving"
    FINISH_COATING = "finish_coating"
    KIND_CHOICES = [(RAW_WEAVING, "Weaving"), (FINISH_COATING, "Coating")]

    PENDING = "pending"
    WAITING_MATERIALS = "waiting_materials"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (WAITING_MATERIALS, "Waiting for materials"),
        (IN_PROGRESS, "In progress"),
        (ON_HOLD, "On hold"),
        (COMPLETED, "Completed"),
    ]

    order_number = models.CharField(max_length=30, unique=True)
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    fabric = models.ForeignKey(
        Fabric,
        on_delete=models.PROTECT,
        related_name="production_orders",
        help_text="Raw fabric for weaving, finished fabric for coating",
    )
    color = models.CharField(max_length=50, blank=True)
    required_quantity = _length_field()
    produced_quantity = _length_field(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    linked_upstream_order = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="downstream_orders",
    )
    demand = models.ForeignKey(
        Demand,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="production_orders",
    )
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [models.Index(fields=["linked_upstream_order", "status"], name="prod_order_upstream_idx")]

    def __str__(self):
        return f"{self.order_number} ({self.get_kind_display()}, {self.status})"

    @property
    def is_coating(self):
        return self.kind == self.FINISH_COATING

    @property
    def stock_building(self):
        return self.demand_id is None


class ProductionBatch(models.Model):
    """Output of one completed production order."""

    batch_number = models.CharField(max_length=40, unique=True)
    production_order = models.OneToOneField(
        ProductionOrder, on_delete=models.PROTECT, related_name="batch"
    )
    kind = models.CharField(max_length=20, choices=ProductionOrder.KIND_CHOICES)
    planned_quantity = _length_field()
    produced_quantity = _length_field(default=ZERO)
    wastage_quantity = _length_field(default=ZERO)
    input_quantity = _length_field(null=True, blank=True)
    completed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="production_batches",
    )
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at", "-id"]
        verbose_name_plural = "production batches"

    def __str__(self):
        return self.batch_number

    @property
    def wastage_percentage(self):
        base = self.input_quantity or self.produced_quantity
        if not base:
            return ZERO
        return (self.wastage_quantity / base * 100).quantize(Decimal("0.1"))


#
# ——————————————————————————————————————
# Roll ledger
# ——————————————————————————————————————
#
class Roll(models.Model):
    """A physical, uniquely numbered roll of fabric."""

    GRADE_A = "A"
    GRADE_B = "B"
    GRADE_C = "C"
    GRADE_CHOICES = [(GRADE_A, "A"), (GRADE_B, "B"), (GRADE_C, "C")]

    STANDARD_LENGTH = "standard_length"
    SHORT = "short"
    WASTAGE = "wastage"
    TYPE_CHOICES = [
        (STANDARD_LENGTH, "Standard length"),
        (SHORT, "Short"),
        (WASTAGE, "Wastage"),
    ]

    AVAILABLE = "available"
    PARTIALLY_ALLOCATED = "partially_allocated"
    ALLOCATED = "allocated"
    USED = "used"
    STATUS_CHOICES = [
        (AVAILABLE, "Available"),
        (PARTIALLY_ALLOCATED, "Partially allocated"),
        (ALLOCATED, "Allocated"),
        (USED, "Used"),
    ]
    IN_STOCK_STATUSES = (AVAILABLE, PARTIALLY_ALLOCATED)

    roll_number = models.CharField(max_length=60, unique=True)
    fabric_kind = models.CharField(max_length=10, choices=Fabric.KIND_CHOICES)
    fabric = models.ForeignKey(Fabric, on_delete=models.PROTECT, related_name="rolls")
    color = models.CharField(max_length=50, blank=True)
    quality_grade = models.CharField(max_length=1, choices=GRADE_CHOICES, default=GRADE_A)
    roll_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    total_length = _length_field()
    remaining_length = _length_field()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=AVAILABLE)
    batch = models.ForeignKey(ProductionBatch, on_delete=models.PROTECT, related_name="rolls")
    loom_number = models.CharField(max_length=20, blank=True)
    demand = models.ForeignKey(
        Demand,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="rolls",
    )
    reserved_for = models.ForeignKey(
        ProductionOrder,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="reserved_rolls",
        help_text="Coating order this raw roll is reserved for",
    )
    quality_notes = models.CharField(max_length=255, blank=True)
    archived = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "roll_number"]
        indexes = [
            models.Index(fields=["fabric", "color", "status", "created_at"], name="prod_roll_fifo_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(remaining_length__gte=0)
                & Q(remaining_length__lte=models.F("total_length")),
                name="roll_remaining_within_total",
            ),
        ]

    def __str__(self):
        return f"{self.roll_number} ({self.remaining_length}/{self.total_length}m {self.status})"

    @classmethod
    def type_for(cls, grade, length, standard_length):
        if grade != cls.GRADE_A:
            return cls.WASTAGE
        if _dec(length) < _dec(standard_length):
            return cls.SHORT
        return cls.STANDARD_LENGTH

    def consistency_errors(self):
        """Return the ways this roll breaks the ledger invariants."""
        errors = []
        remaining = _dec(self.remaining_length)
        total = _dec(self.total_length)
        if remaining < 0 or remaining > total:
            errors.append("remaining_length outside 0..total_length")
        if self.status == self.AVAILABLE and (remaining != total or self.demand_id):
            errors.append("available roll must be untouched and unlinked")
        if self.status in (self.ALLOCATED, self.USED) and remaining != 0:
            errors.append(f"{self.status} roll must have no remaining length")
        if self.status == self.PARTIALLY_ALLOCATED and not (
            0 < remaining < total and self.demand_id
        ):
            errors.append("partially allocated roll needs 0 < remaining < total and a demand")
        return errors


class CoatingRollInput(models.Model):
    """Raw roll reserved for (and later consumed by) a coating order."""

    production_order = models.ForeignKey(
        ProductionOrder, on_delete=models.CASCADE, related_name="roll_inputs"
    )
    roll = models.ForeignKey(Roll, on_delete=models.PROTECT, related_name="coating_inputs")
    quantity_used = _length_field()
    processing_order = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["processing_order", "id"]
        unique_together = ("production_order", "roll")

    def __str__(self):
        return f"{self.roll.roll_number} -> {self.production_order.order_number} ({self.quantity_used}m)"


class RollAllocation(models.Model):
    """Traceability record: metres of a roll handed to a demand."""

    roll = models.ForeignKey(Roll, on_delete=models.PROTECT, related_name="allocations")
    demand = models.ForeignKey(Demand, on_delete=models.PROTECT, related_name="allocations")
    quantity = _length_field()
    manual = models.BooleanField(default=False)
    allocated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="roll_allocations",
    )
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"{self.quantity}m of {self.roll.roll_number} -> demand {self.demand_id}"


#
# ——————————————————————————————————————
# Stock ledger
# ——————————————————————————————————————
#
class StockAggregate(models.Model):
    """Denormalized running total per fabric and colour."""

    fabric = models.ForeignKey(Fabric, on_delete=models.PROTECT, related_name="stock_aggregates")
    color = models.CharField(max_length=50, blank=True, default="")
    quantity = _length_field(default=ZERO)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = [("fabric", "color")]
        ordering = ["fabric_id", "color"]

    def __str__(self):
        return f"{self.fabric} / {self.color or '-'}: {self.quantity}m"


class StockMovement(models.Model):
    """Immutable audit record of every stock quantity change."""

    PRODUCTION_IN = "production_in"
    ALLOCATION = "allocation"
    RETURN = "return"
    MOVEMENT_CHOICES = [
        (PRODUCTION_IN, "Production in"),
        (ALLOCATION, "Allocation"),
        (RETURN, "Return"),
    ]

    REF_PRODUCTION_ORDER = "production_order"
    REF_DEMAND = "demand"
    REFERENCE_CHOICES = [
        (REF_PRODUCTION_ORDER, "Production order"),
        (REF_DEMAND, "Demand"),
    ]

    fabric = models.ForeignKey(Fabric, on_delete=models.PROTECT, related_name="movements")
    color = models.CharField(max_length=50, blank=True, default="")
    quantity = _length_field()
    movement_type = models.CharField(max_length=20, choices=MOVEMENT_CHOICES)
    reference_type = models.CharField(max_length=20, choices=REFERENCE_CHOICES)
    reference_id = models.PositiveBigIntegerField()
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["fabric", "created_at"], name="prod_move_fabric_idx"),
            models.Index(fields=["reference_type", "reference_id"], name="prod_move_ref_idx"),
        ]

    def __str__(self):
        return f"{self.movement_type} {self.quantity}m {self.fabric_id}/{self.color or '-'}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValidationError("Stock movements are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Stock movements are append-only.")
