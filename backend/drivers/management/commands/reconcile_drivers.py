from django.core.management.base import BaseCommand
from drivers import registry


class Command(BaseCommand):
    help = "Re-derive driver availability from the state of their rides."

    def handle(self, *args, **options):
        result = registry.reconcile()
        self.stdout.write(
            self.style.SUCCESS(
                f"Locked {result['locked']} driver(s) on active rides, released {result['released']} idle driver(s)."
            )
        )
