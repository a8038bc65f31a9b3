from django.core.management.base import BaseCommand, CommandError

from production.exceptions import ConcurrencyConflict
from production.models import Fabric
from production.services import allocation


class Command(BaseCommand):
    help = "Allocates in-stock rolls of a fabric to its open demands, oldest demand first."

    def add_arguments(self, parser):
        parser.add_argument("fabric_id", type=int)

    def handle(self, *args, **opts):
        fabric_id = opts["fabric_id"]
        if not Fabric.objects.filter(pk=fabric_id).exists():
            raise CommandError(f"Fabric {fabric_id} does not exist")
        try:
            results = allocation.sweep_pending_demand(fabric_id, authorized=True)
        except ConcurrencyConflict as exc:
            raise CommandError(f"Sweep gave up after repeated conflicts: {exc}")
        for result in results:
            self.stdout.write(
                f"Demand {result.demand.pk}: +{result.total}m "
                f"({result.demand.quantity_allocated}/{result.demand.quantity_requested}m, "
                f"{result.demand.status})"
            )
        self.stdout.write(self.style.SUCCESS(f"Served {len(results)} demands."))
