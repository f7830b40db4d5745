from django.core.management.base import BaseCommand
from django.utils import timezone
from datetime import timedelta
from drivers import registry


class Command(BaseCommand):
    help = "Take drivers off duty whose last heartbeat is older than the freshness window."

    def add_arguments(self, parser):
        parser.add_argument(
            "--seconds",
            type=int,
            default=None,
            help="Freshness window in seconds (default: DISPATCH_CONFIG['DRIVER_FRESHNESS_SECONDS']).",
        )

    def handle(self, *args, **options):
        freshness = None
        if options["seconds"] is not None:
            freshness = timedelta(seconds=options["seconds"])

        expired = registry.expire_stale(now=timezone.now(), freshness=freshness)
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} stale driver(s)."))
