from django.core.management.base import BaseCommand, CommandError

from payments.exceptions import GatewayConfigError
from payments.gateway import get_client
from payments.reconciliation import reconcile_paid_orders


class Command(BaseCommand):
    help = "Compare recent paid orders against Razorpay and report discrepancies"

    def add_arguments(self, parser):
        parser.add_argument("--limit", type=int, default=None, help="Max paid orders to check (default: PAYMENTS_RECONCILE_LIMIT)")
        parser.add_argument("--sleep", type=float, default=None, help="Seconds between gateway calls")

    def handle(self, *args, **opts):
        try:
            client = get_client()
        except GatewayConfigError as e:
            raise CommandError(str(e))

        report = reconcile_paid_orders(client=client, limit=opts["limit"], delay=opts["sleep"])
        data, summary = report["data"], report["summary"]

        for d in data["discrepancies"]:
            line = f"{d['orderNumber']}: {d['issue']} (severity={d['severity']})"
            if "razorpayAmount" in d:
                line += f" DB ₹{d['dbTotal']:.2f} vs Razorpay ₹{d['razorpayAmount']:.2f}, status {d['razorpayStatus']}"
            self.stdout.write(self.style.WARNING(line))
        for e in data["errors"]:
            self.stdout.write(self.style.ERROR(f"{e['orderNumber']}: payment {e['paymentId']} error {e['error']}"))

        self.stdout.write(self.style.SUCCESS(
            f"Checked {summary['total']}: {summary['matches']} matches, "
            f"{summary['discrepancies']} discrepancies, {summary['errors']} errors "
            f"({summary['matchPercentage']}% matched)."
        ))
