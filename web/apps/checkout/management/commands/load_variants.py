"""Load or update catalog variants from a JSON file.

The file holds a list of objects with the ``Variant`` fields::

    [{"sku": "TEE-M-BLK", "product_id": "tee", "size": "M", "color": "black",
      "name": "Basic tee", "price_cents": 10000, "on_hand": 5}]
"""

import json

from django.core.management.base import BaseCommand, CommandError

from apps.checkout.domain import Variant
from apps.checkout.repository import LedgerRepository


class Command(BaseCommand):
    help = "Upsert catalog variants (price and stock) from a JSON file."

    def add_arguments(self, parser):
        parser.add_argument("path")

    def handle(self, *args, **options):
        try:
            with open(options["path"], encoding="utf-8") as fh:
                rows = json.load(fh)
        except (OSError, ValueError) as exc:
            raise CommandError(f"cannot read {options['path']}: {exc}")

        ledger = LedgerRepository()
        for row in rows:
            try:
                ledger.upsert(Variant(**row))
            except (TypeError, ValueError) as exc:
                raise CommandError(f"invalid variant {row.get('sku')!r}: {exc}")
        self.stdout.write(f"loaded {len(rows)} variant(s)")
