from django.contrib import admin

from .models import (
    CoatingRollInput,
    CustomerOrder,
    Demand,
    Fabric,
    ProductionBatch,
    ProductionOrder,
    Roll,
    RollAllocation,
    StockAggregate,
    StockMovement,
)


class ReadOnlyAdmin(admin.ModelAdmin):
    """Ledger rows change only through the production services."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def get_actions(self, request):
        actions = super().get_actions(request)
        if 'delete_selected' in actions:
            del actions['delete_selected']
        return actions


@admin.register(Fabric)
class FabricAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "kind", "base_fabric", "coating_type", "minimum_stock")
    list_filter = ("kind",)
    search_fields = ("name",)


class DemandInline(admin.TabularInline):
    model = Demand
    extra = 0
    fields = ("line_no", "fabric", "color", "quantity_requested", "quantity_allocated", "status")
    readonly_fields = ("quantity_allocated", "status")


@admin.register(CustomerOrder)
class CustomerOrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "customer_name", "created_at")
    search_fields = ("order_number", "customer_name")
    inlines = [DemandInline]


@admin.register(Demand)
class DemandAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "customer_order",
        "line_no",
        "fabric",
        "color",
        "quantity_requested",
        "quantity_allocated",
        "status",
        "created_at",
    )
    list_filter = ("status", "fabric")
    search_fields = ("customer_order__order_number", "color")
    readonly_fields = ("quantity_allocated", "status")


class CoatingRollInputInline(admin.TabularInline):
    model = CoatingRollInput
    extra = 0
    can_delete = False
    readonly_fields = ("roll", "quantity_used", "processing_order", "created_at")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(ProductionOrder)
class ProductionOrderAdmin(admin.ModelAdmin):
    list_display = (
        "order_number",
        "kind",
        "fabric",
        "color",
        "required_quantity",
        "produced_quantity",
        "status",
        "linked_upstream_order",
        "created_at",
    )
    list_filter = ("kind", "status")
    search_fields = ("order_number",)
    readonly_fields = ("status", "produced_quantity", "started_at", "completed_at")
    inlines = [CoatingRollInputInline]


@admin.register(ProductionBatch)
class ProductionBatchAdmin(ReadOnlyAdmin):
    list_display = (
        "batch_number",
        "production_order",
        "kind",
        "planned_quantity",
        "produced_quantity",
        "wastage_quantity",
        "completed_by",
        "created_at",
    )
    list_filter = ("kind",)
    search_fields = ("batch_number", "production_order__order_number")


@admin.register(Roll)
class RollAdmin(ReadOnlyAdmin):
    list_display = (
        "roll_number",
        "fabric",
        "color",
        "quality_grade",
        "roll_type",
        "total_length",
        "remaining_length",
        "status",
        "demand",
        "reserved_for",
        "archived",
    )
    list_filter = ("status", "quality_grade", "roll_type", "fabric_kind", "archived")
    search_fields = ("roll_number", "batch__batch_number", "loom_number")


@admin.register(RollAllocation)
class RollAllocationAdmin(ReadOnlyAdmin):
    list_display = ("roll", "demand", "quantity", "manual", "allocated_by", "created_at")
    list_filter = ("manual",)


@admin.register(StockAggregate)
class StockAggregateAdmin(ReadOnlyAdmin):
    list_display = ("fabric", "color", "quantity", "updated_at")
    list_filter = ("fabric",)


@admin.register(StockMovement)
class StockMovementAdmin(ReadOnlyAdmin):
    list_display = (
        "created_at",
        "fabric",
        "color",
        "quantity",
        "movement_type",
        "reference_type",
        "reference_id",
        "notes",
    )
    list_filter = ("movement_type", "reference_type", "fabric")
    search_fields = ("notes",)
