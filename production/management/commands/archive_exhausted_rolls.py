from django.core.management.base import BaseCommand

from production.services import rolls


class Command(BaseCommand):
    help = "Archives allocated/used rolls with nothing remaining so listings stay short."

    def add_arguments(self, parser):
        parser.add_argument(
            "--commit",
            action="store_true",
            dest="commit",
            help="Apply changes. Without this flag the command runs in dry-run mode.",
        )

    def handle(self, *args, **opts):
        commit = opts.get("commit")
        count = rolls.archive_exhausted_rolls(commit=commit)
        if commit:
            self.stdout.write(self.style.SUCCESS(f"Archived {count} rolls."))
        else:
            self.stdout.write(f"Would archive {count} rolls. Re-run with --commit to apply.")
