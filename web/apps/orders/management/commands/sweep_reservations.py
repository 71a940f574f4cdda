"""
Management command releasing expired stock holds and abandoned checkouts.

Each cycle cancels provisional orders whose payment window closed (which
also releases their holds and voids the authorization), then releases any
held reservation that expired without an order to cancel.

Usage:
    python manage.py sweep_reservations
    python manage.py sweep_reservations --loop --interval 30
"""

import time

from django.core.management.base import BaseCommand

from apps.orders.providers import get_coordinator, get_ledger


class Command(BaseCommand):
    help = "Release expired reservations and cancel checkouts nobody paid for"

    def add_arguments(self, parser):
        parser.add_argument(
            "--loop",
            action="store_true",
            help="Keep sweeping every --interval seconds until interrupted",
        )
        parser.add_argument(
            "--interval",
            type=float,
            default=30.0,
            help="Seconds between sweeps when --loop is given (default: 30)",
        )

    def sweep_once(self):
        expired = get_coordinator().expire_stale()
        released = get_ledger().sweep()
        return expired, released

    def handle(self, *args, **options):
        interval = max(1.0, options["interval"])
        while True:
            expired, released = self.sweep_once()
            self.stdout.write(f"expired_orders={expired} released_reservations={released}")
            if not options["loop"]:
                return
            time.sleep(interval)
