from django.core.management.base import BaseCommand, CommandError

from production.models import Fabric
from production.services import rolls, stock_ledger


class Command(BaseCommand):
    help = (
        "Compares cached stock aggregates with the totals derived from in-stock "
        "rolls and, with --commit, overwrites the divergent ones."
    )

    def add_arguments(self, parser):
        parser.add_argument("--fabric", dest="fabric", type=int, default=None, help="Fabric id")
        parser.add_argument(
            "--commit",
            action="store_true",
            dest="commit",
            help="Apply changes. Without this flag the command runs in dry-run mode.",
        )

    def handle(self, *args, **opts):
        fabric = None
        if opts.get("fabric") is not None:
            try:
                fabric = Fabric.objects.get(pk=opts["fabric"])
            except Fabric.DoesNotExist:
                raise CommandError(f"Fabric {opts['fabric']} does not exist")

        qs = None if fabric is None else fabric.rolls.all()
        bad_rolls = rolls.check_roll_consistency(qs)
        for roll, errors in bad_rolls:
            self.stderr.write(f"Roll {roll.roll_number}: {'; '.join(errors)}")

        divergent = stock_ledger.find_divergent_aggregates(fabric)
        for fabric_id, color, have, want in divergent:
            self.stdout.write(
                f"fabric={fabric_id} color={color or '-'} cached={have} derived={want}"
            )
        self.stdout.write(
            f"Divergent aggregates: {len(divergent)} | inconsistent rolls: {len(bad_rolls)}"
        )

        if not opts.get("commit"):
            self.stdout.write("Dry-run complete. Re-run with --commit to apply.")
            return
        fixed = stock_ledger.rebuild_aggregates(fabric)
        self.stdout.write(self.style.SUCCESS(f"Rebuilt {len(fixed)} stock aggregates."))
