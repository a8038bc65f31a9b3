from rest_framework.routers import DefaultRouter

from . import views

router = DefaultRouter()
router.register("fabrics", views.FabricViewSet)
router.register("rolls", views.RollViewSet, basename="roll")
router.register("batches", views.ProductionBatchViewSet)
router.register("production-orders", views.ProductionOrderViewSet)
router.register("demands", views.DemandViewSet)
router.register("stock-aggregates", views.StockAggregateViewSet)
router.register("stock-movements", views.StockMovementViewSet)

urlpatterns = router.urls
