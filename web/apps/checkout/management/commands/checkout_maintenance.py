"""Periodic checkout housekeeping.

Expires unpaid checkouts past their deadline (releasing their stock) and
re-dispatches fulfillment for paid orders that never completed it (a
failed receipt email, or a worker that died mid-run). Meant to run from
cron every minute or so:

    python manage.py checkout_maintenance
"""

from django.core.management.base import BaseCommand

from apps.checkout.providers import get_checkout_service


class Command(BaseCommand):
    help = "Expire stale checkouts and resume pending fulfillment."

    def add_arguments(self, parser):
        parser.add_argument("--skip-fulfillment", action="store_true", help="Only run the expiry sweep")

    def handle(self, *args, **options):
        service = get_checkout_service()
        expired = service.expire_stale()
        self.stdout.write(f"expired {expired} checkout(s)")
        if not options["skip_fulfillment"]:
            resumed = service.resume_fulfillment()
            self.stdout.write(f"re-dispatched fulfillment for {resumed} order(s)")
