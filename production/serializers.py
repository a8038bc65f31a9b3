from rest_framework import serializers

from .models import (
    CoatingRollInput,
    Demand,
    Fabric,
    ProductionBatch,
    ProductionOrder,
    Roll,
    RollAllocation,
    StockAggregate,
    StockMovement,
)
from .services.batches import CoatingBreakdown, LoomOutput, RollOutput, WeavingBreakdown


class FabricSerializer(serializers.ModelSerializer):
    class Meta:
        model = Fabric
        fields = [
            "id",
            "name",
            "kind",
            "base_fabric",
            "gsm",
            "width_metres",
            "coating_type",
            "minimum_stock",
        ]


class RollSerializer(serializers.ModelSerializer):
    fabric_name = serializers.CharField(source="fabric.name", read_only=True)
    batch_number = serializers.CharField(source="batch.batch_number", read_only=True)

    class Meta:
        model = Roll
        fields = [
            "id",
            "roll_number",
            "fabric_kind",
            "fabric",
            "fabric_name",
            "color",
            "quality_grade",
            "roll_type",
            "total_length",
            "remaining_length",
            "status",
            "batch",
            "batch_number",
            "loom_number",
            "demand",
            "reserved_for",
            "quality_notes",
            "archived",
            "created_at",
        ]


class ProductionBatchSerializer(serializers.ModelSerializer):
    order_number = serializers.CharField(source="production_order.order_number", read_only=True)
    roll_count = serializers.SerializerMethodField()

    class Meta:
        model = ProductionBatch
        fields = [
            "id",
            "batch_number",
            "production_order",
            "order_number",
            "kind",
            "planned_quantity",
            "produced_quantity",
            "wastage_quantity",
            "input_quantity",
            "wastage_percentage",
            "roll_count",
            "notes",
            "created_at",
        ]

    def get_roll_count(self, obj):
        return obj.rolls.count()


class CoatingRollInputSerializer(serializers.ModelSerializer):
    roll_number = serializers.CharField(source="roll.roll_number", read_only=True)

    class Meta:
        model = CoatingRollInput
        fields = ["id", "roll", "roll_number", "quantity_used", "processing_order"]


class ProductionOrderSerializer(serializers.ModelSerializer):
    roll_inputs = CoatingRollInputSerializer(many=True, read_only=True)
    batch_number = serializers.SerializerMethodField()

    class Meta:
        model = ProductionOrder
        fields = [
            "id",
            "order_number",
            "kind",
            "fabric",
            "color",
            "required_quantity",
            "produced_quantity",
            "status",
            "linked_upstream_order",
            "demand",
            "started_at",
            "completed_at",
            "notes",
            "roll_inputs",
            "batch_number",
        ]

    def get_batch_number(self, obj):
        batch = getattr(obj, "batch", None)
        return batch.batch_number if batch else None


class RollAllocationSerializer(serializers.ModelSerializer):
    roll_number = serializers.CharField(source="roll.roll_number", read_only=True)

    class Meta:
        model = RollAllocation
        fields = ["id", "roll", "roll_number", "quantity", "manual", "created_at"]


class DemandSerializer(serializers.ModelSerializer):
    order_number = serializers.CharField(source="customer_order.order_number", read_only=True, default=None)
    outstanding = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    allocations = RollAllocationSerializer(many=True, read_only=True)

    class Meta:
        model = Demand
        fields = [
            "id",
            "customer_order",
            "order_number",
            "line_no",
            "fabric",
            "color",
            "quantity_requested",
            "quantity_allocated",
            "outstanding",
            "status",
            "created_at",
            "allocations",
        ]


class StockAggregateSerializer(serializers.ModelSerializer):
    fabric_name = serializers.CharField(source="fabric.name", read_only=True)

    class Meta:
        model = StockAggregate
        fields = ["id", "fabric", "fabric_name", "color", "quantity", "updated_at"]


class StockMovementSerializer(serializers.ModelSerializer):
    class Meta:
        model = StockMovement
        fields = [
            "id",
            "fabric",
            "color",
            "quantity",
            "movement_type",
            "reference_type",
            "reference_id",
            "notes",
            "created_at",
        ]


# Request payloads


class RollOutputSerializer(serializers.Serializer):
    length = serializers.DecimalField(max_digits=12, decimal_places=2)
    grade = serializers.ChoiceField(choices=Roll.GRADE_CHOICES, default=Roll.GRADE_A)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class LoomOutputSerializer(serializers.Serializer):
    loom_number = serializers.CharField(max_length=20)
    rolls = RollOutputSerializer(many=True)


class WeavingCompletionSerializer(serializers.Serializer):
    looms = LoomOutputSerializer(many=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def to_breakdown(self):
        data = self.validated_data
        return WeavingBreakdown(
            looms=[
                LoomOutput(loom["loom_number"], [RollOutput(**r) for r in loom["rolls"]])
                for loom in data["looms"]
            ],
            notes=data["notes"],
        )


class CoatingCompletionSerializer(serializers.Serializer):
    full_rolls = serializers.IntegerField(default=0)
    short_rolls = serializers.ListField(
        child=serializers.DecimalField(max_digits=12, decimal_places=2), default=list
    )
    graded_rolls = RollOutputSerializer(many=True, required=False)
    quantities_used = serializers.DictField(
        child=serializers.DecimalField(max_digits=12, decimal_places=2), required=False
    )
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_quantities_used(self, value):
        if any(not str(k).isdigit() for k in value):
            raise serializers.ValidationError("Keys must be roll ids.")
        return value

    def to_breakdown(self):
        data = self.validated_data
        used = data.get("quantities_used")
        return CoatingBreakdown(
            full_rolls=data["full_rolls"],
            short_rolls=list(data["short_rolls"]),
            graded_rolls=[RollOutput(**r) for r in data.get("graded_rolls", [])],
            quantities_used={int(k): v for k, v in used.items()} if used else None,
            notes=data["notes"],
        )


class RollSelectionSerializer(serializers.Serializer):
    roll = serializers.IntegerField()
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)


class ReserveRollsSerializer(serializers.Serializer):
    rolls = RollSelectionSerializer(many=True, required=False)

    def selections(self):
        rolls = self.validated_data.get("rolls")
        if not rolls:
            return None
        return [(r["roll"], r.get("quantity")) for r in rolls]


class AllocateSerializer(serializers.Serializer):
    fabric = serializers.IntegerField(required=False)
    color = serializers.CharField(required=False, allow_blank=True)
    target_quantity = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)


class ManualAllocateSerializer(serializers.Serializer):
    rolls = RollSelectionSerializer(many=True, allow_empty=False)

    def validate_rolls(self, value):
        for r in value:
            if r.get("quantity") is None:
                raise serializers.ValidationError("Each roll needs a quantity.")
        return value

    def selections(self):
        return [(r["roll"], r["quantity"]) for r in self.validated_data["rolls"]]
