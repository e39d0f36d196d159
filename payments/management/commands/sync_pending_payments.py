from django.core.management.base import BaseCommand, CommandError

from payments.exceptions import GatewayConfigError
from payments.gateway import get_client
from payments.reconciliation import sync_pending_orders


class Command(BaseCommand):
    help = "Settle pending orders paid on Razorpay and cancel ones past the grace period"

    def add_arguments(self, parser):
        parser.add_argument("--grace-hours", type=int, default=None, help="Cancel unpaid orders older than this (default: PAYMENTS_SYNC_GRACE_HOURS)")
        parser.add_argument("--sleep", type=float, default=0.2)

    def handle(self, *args, **opts):
        try:
            client = get_client()
        except GatewayConfigError as e:
            raise CommandError(str(e))

        counts = sync_pending_orders(client=client, grace_hours=opts["grace_hours"], delay=opts["sleep"])
        if not counts["checked"]:
            self.stdout.write(self.style.SUCCESS("No pending orders to sync."))
            return
        if counts["errors"] or counts["mismatched"]:
            self.stdout.write(self.style.WARNING(
                f"{counts['errors']} errors, {counts['mismatched']} amount mismatches; see logs."
            ))
        self.stdout.write(self.style.SUCCESS(
            f"Checked {counts['checked']}: {counts['paid']} paid, {counts['cancelled']} cancelled, "
            f"{counts['waiting']} still waiting."
        ))
