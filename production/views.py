import functools
import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from .exceptions import (
    ConcurrencyConflict,
    InvalidTransition,
    NoAvailableStock,
    UnbalancedProductionError,
)
from .models import (
    Demand,
    Fabric,
    ProductionBatch,
    ProductionOrder,
    StockAggregate,
    StockMovement,
)
from .permissions import IsProductionManagerOrReadOnly, is_production_manager
from .serializers import (
    AllocateSerializer,
    CoatingCompletionSerializer,
    DemandSerializer,
    FabricSerializer,
    ManualAllocateSerializer,
    ProductionBatchSerializer,
    ProductionOrderSerializer,
    ReserveRollsSerializer,
    RollSerializer,
    StockAggregateSerializer,
    StockMovementSerializer,
    WeavingCompletionSerializer,
)
from .services import allocation, orders, rolls as roll_ledger, stock_ledger

logger = logging.getLogger(__name__)


def _truthy(value):
    return str(value).lower() in {"1", "true", "yes", "on"}


def maps_production_errors(view):
    """Translate engine exceptions raised by an action into API responses."""

    @functools.wraps(view)
    def wrapper(self, request, *args, **kwargs):
        try:
            return view(self, request, *args, **kwargs)
        except InvalidTransition as exc:
            return Response(
                {"error": str(exc), "code": exc.code, "current": exc.current}, status=409
            )
        except ConcurrencyConflict as exc:
            logger.warning("%s %s gave up after conflicts: %s", request.method, request.path, exc)
            return Response({"error": str(exc), "code": exc.code}, status=503)
        except UnbalancedProductionError as exc:
            return Response(
                {
                    "error": exc.messages,
                    "code": exc.code,
                    "total_input": str(exc.total_input),
                    "total_output": str(exc.total_output),
                },
                status=400,
            )
        except DjangoValidationError as exc:
            return Response({"error": exc.messages, "code": "invalid"}, status=400)

    return wrapper


def _allocation_payload(result):
    return {
        "demand": DemandSerializer(result.demand).data,
        "allocated": str(result.total),
        "allocations": [
            {"roll": roll.pk, "roll_number": roll.roll_number, "quantity": str(qty)}
            for roll, qty in result.allocations
        ],
    }


class FabricViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Fabric.objects.all()
    serializer_class = FabricSerializer
    permission_classes = [IsProductionManagerOrReadOnly]

    def get_queryset(self):
        qs = super().get_queryset()
        kind = self.request.query_params.get("kind")
        if kind:
            qs = qs.filter(kind=kind)
        return qs

    @action(detail=True, methods=["post"])
    @maps_production_errors
    def sweep(self, request, pk=None):
        fabric = self.get_object()
        results = allocation.sweep_pending_demand(
            fabric.pk, actor=request.user, authorized=is_production_manager(request.user)
        )
        return Response({"fabric": fabric.pk, "results": [_allocation_payload(r) for r in results]})

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        return Response(
            [
                {
                    "fabric": fabric.pk,
                    "name": fabric.name,
                    "quantity": str(total),
                    "minimum_stock": str(fabric.minimum_stock),
                }
                for fabric, total in stock_ledger.low_stock_fabrics()
            ]
        )


class RollViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = RollSerializer
    permission_classes = [IsProductionManagerOrReadOnly]

    def get_queryset(self):
        params = self.request.query_params
        include_archived = _truthy(params.get("include_archived", "")) or self.action == "retrieve"
        return roll_ledger.roll_queryset(
            fabric=params.get("fabric"),
            color=params.get("color"),
            status=params.get("status"),
            kind=params.get("kind"),
            grade=params.get("grade"),
            include_archived=include_archived,
        )


class ProductionBatchViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = ProductionBatch.objects.select_related("production_order")
    serializer_class = ProductionBatchSerializer
    permission_classes = [IsProductionManagerOrReadOnly]

    @action(detail=True, methods=["get"])
    def rolls(self, request, pk=None):
        batch = self.get_object()
        return Response(RollSerializer(batch.rolls.order_by("roll_number"), many=True).data)


class ProductionOrderViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = ProductionOrder.objects.select_related("fabric").prefetch_related("roll_inputs__roll")
    serializer_class = ProductionOrderSerializer
    permission_classes = [IsProductionManagerOrReadOnly]

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        if params.get("status"):
            qs = qs.filter(status__in=params["status"].split(","))
        if params.get("kind"):
            qs = qs.filter(kind=params["kind"])
        if params.get("fabric"):
            qs = qs.filter(fabric_id=params["fabric"])
        return qs

    def _respond(self, order):
        order = self.get_queryset().get(pk=order.pk)
        return Response(self.get_serializer(order).data)

    def _authorized(self, request):
        return is_production_manager(request.user)

    @action(detail=True, methods=["post"])
    @maps_production_errors
    def start(self, request, pk=None):
        order = orders.start(self.get_object().pk, actor=request.user, authorized=self._authorized(request))
        return self._respond(order)

    @action(detail=True, methods=["post"])
    @maps_production_errors
    def hold(self, request, pk=None):
        order = orders.hold(self.get_object().pk, actor=request.user, authorized=self._authorized(request))
        return self._respond(order)

    @action(detail=True, methods=["post"])
    @maps_production_errors
    def resume(self, request, pk=None):
        order = orders.resume(self.get_object().pk, actor=request.user, authorized=self._authorized(request))
        return self._respond(order)

    @action(detail=True, methods=["post"], url_path="reserve-rolls")
    @maps_production_errors
    def reserve_rolls(self, request, pk=None):
        order = self.get_object()
        ser = ReserveRollsSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            orders.reserve_input_rolls(
                order.pk, ser.selections(), actor=request.user, authorized=self._authorized(request)
            )
        except NoAvailableStock as exc:
            return Response({"error": str(exc), "code": exc.code}, status=409)
        return self._respond(order)

    @action(detail=True, methods=["post"], url_path="release-rolls")
    @maps_production_errors
    def release_rolls(self, request, pk=None):
        order = self.get_object()
        returned = orders.release_input_rolls(
            order.pk, actor=request.user, authorized=self._authorized(request)
        )
        data = self._respond(order).data
        data["returned_quantity"] = str(returned)
        return Response(data)

    @action(detail=True, methods=["post"])
    @maps_production_errors
    def complete(self, request, pk=None):
        order = self.get_object()
        if order.kind == ProductionOrder.RAW_WEAVING:
            ser = WeavingCompletionSerializer(data=request.data)
        else:
            ser = CoatingCompletionSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        result = orders.complete_production(
            order.pk, ser.to_breakdown(), actor=request.user, authorized=self._authorized(request)
        )
        data = self._respond(result.order).data
        data.update(
            {
                "batch_number": result.batch.batch_number,
                "rolls": RollSerializer(result.rolls, many=True).data,
                "released_orders": [o.order_number for o in result.released_orders],
                "allocations": [_allocation_payload(r) for r in result.allocations],
                "sweep_deferred": result.sweep_error is not None,
            }
        )
        return Response(data, status=201)

    @action(detail=True, methods=["post"])
    @maps_production_errors
    def cascade(self, request, pk=None):
        released = orders.cascade_on_completion(self.get_object().pk)
        return Response({"released_orders": [o.order_number for o in released]})


class DemandViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Demand.objects.select_related("customer_order").prefetch_related("allocations__roll")
    serializer_class = DemandSerializer
    permission_classes = [IsProductionManagerOrReadOnly]

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        if params.get("fabric"):
            qs = qs.filter(fabric_id=params["fabric"])
        if params.get("color"):
            qs = qs.filter(color=params["color"])
        if params.get("status"):
            qs = qs.filter(status__in=params["status"].split(","))
        return qs

    @action(detail=True, methods=["post"])
    @maps_production_errors
    def allocate(self, request, pk=None):
        demand = self.get_object()
        ser = AllocateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        try:
            result = allocation.allocate(
                demand.pk,
                data.get("fabric"),
                data.get("color"),
                data.get("target_quantity"),
                actor=request.user,
                authorized=is_production_manager(request.user),
            )
        except NoAvailableStock as exc:
            demand.refresh_from_db()
            return Response(
                {
                    "demand": DemandSerializer(demand).data,
                    "allocated": "0.00",
                    "allocations": [],
                    "code": exc.code,
                }
            )
        return Response(_allocation_payload(result))

    @action(detail=True, methods=["post"], url_path="manual-allocate")
    @maps_production_errors
    def manual_allocate(self, request, pk=None):
        demand = self.get_object()
        ser = ManualAllocateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        result = allocation.manual_allocate(
            demand.pk,
            ser.selections(),
            actor=request.user,
            authorized=is_production_manager(request.user),
        )
        return Response(_allocation_payload(result))


class StockAggregateViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockAggregate.objects.select_related("fabric")
    serializer_class = StockAggregateSerializer
    permission_classes = [IsProductionManagerOrReadOnly]

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        if params.get("fabric"):
            qs = qs.filter(fabric_id=params["fabric"])
        if "color" in params:
            qs = qs.filter(color=params["color"])
        return qs


class StockMovementViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockMovement.objects.all()
    serializer_class = StockMovementSerializer
    permission_classes = [IsProductionManagerOrReadOnly]

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        if params.get("fabric"):
            qs = qs.filter(fabric_id=params["fabric"])
        if "color" in params:
            qs = qs.filter(color=params["color"])
        if params.get("movement_type"):
            qs = qs.filter(movement_type=params["movement_type"])
        if params.get("reference_type"):
            qs = qs.filter(reference_type=params["reference_type"])
        if params.get("reference_id"):
            qs = qs.filter(reference_id=params["reference_id"])
        return qs.order_by("-created_at", "-id")
