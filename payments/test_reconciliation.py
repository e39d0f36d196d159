from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from orders.models import Order, OrderItem, Product, ProductSize

from .exceptions import GatewayError
from .gateway import RazorpayClient
from .reconciliation import reconcile_paid_orders, sync_pending_orders, verify_order
from .tests import make_order


def paid_order(total="500.00", payment_id="pay_1", **kwargs):
    return make_order(total, payment_status=Order.PAYMENT_PAID, status=Order.STATUS_PROCESSING,
                      payment_id=payment_id, **kwargs)


class FakeGateway:
    """Serves canned payments keyed by id; unknown ids fail like the real API."""

    def __init__(self, payments=None, order_payments=None):
        self.payments = payments or {}
        self.order_payments = order_payments or {}
        self.calls = []

    def fetch_payment(self, payment_id):
        self.calls.append(payment_id)
        if payment_id not in self.payments:
            raise GatewayError("The id provided does not exist", code="BAD_REQUEST_ERROR", status=400)
        return self.payments[payment_id]

    def fetch_order_payments(self, gateway_order_id):
        self.calls.append(gateway_order_id)
        if gateway_order_id not in self.order_payments:
            raise GatewayError("The id provided does not exist", code="BAD_REQUEST_ERROR", status=400)
        return self.order_payments[gateway_order_id]


class ReconcilePaidOrdersTests(TestCase):
    def test_classifies_match_amount_discrepancy_and_missing_payment_id(self):
        paid_order("500.00", payment_id="pay_ok", customer_name="Asha")
        paid_order("500.00", payment_id="pay_over")
        paid_order("500.00", payment_id=None)
        gateway = FakeGateway({
            "pay_ok": {"id": "pay_ok", "amount": 50000, "status": "captured", "method": "card"},
            "pay_over": {"id": "pay_over", "amount": 50550, "status": "captured", "method": "upi"},
        })

        report = reconcile_paid_orders(client=gateway, delay=0)

        summary = report["summary"]
        self.assertEqual(summary["total"], 3)
        self.assertEqual(summary["matches"], 1)
        self.assertEqual(summary["discrepancies"], 2)
        self.assertEqual(summary["errors"], 0)
        self.assertAlmostEqual(summary["matchPercentage"], 33.33)

        issues = {d["issue"]: d for d in report["data"]["discrepancies"]}
        self.assertEqual(issues["Amount mismatch"]["severity"], "high")
        self.assertAlmostEqual(issues["Amount mismatch"]["amountDifference"], -5.5)
        self.assertEqual(issues["Missing payment ID in database"]["severity"], "high")
        self.assertEqual(report["data"]["matches"][0]["customer"], "Asha")
        # No gateway call for the order without a payment id
        self.assertEqual(sorted(gateway.calls), ["pay_ok", "pay_over"])

    def test_status_mismatch_is_medium(self):
        paid_order(payment_id="pay_refunded")
        gateway = FakeGateway({"pay_refunded": {"id": "pay_refunded", "amount": 50000, "status": "refunded"}})

        report = reconcile_paid_orders(client=gateway, delay=0)

        [disc] = report["data"]["discrepancies"]
        self.assertEqual(disc["issue"], "Status mismatch")
        self.assertEqual(disc["severity"], "medium")

    def test_gateway_failures_are_errors_not_discrepancies(self):
        paid_order(payment_id="pay_gone")
        report = reconcile_paid_orders(client=FakeGateway(), delay=0)
        self.assertEqual(report["summary"]["errors"], 1)
        self.assertEqual(report["summary"]["discrepancies"], 0)
        self.assertEqual(report["data"]["errors"][0]["errorCode"], "BAD_REQUEST_ERROR")

    def test_sleeps_between_gateway_calls_and_honours_limit(self):
        for i in range(3):
            paid_order(payment_id=f"pay_{i}")
        gateway = FakeGateway({f"pay_{i}": {"amount": 50000, "status": "captured"} for i in range(3)})
        sleep = Mock()

        report = reconcile_paid_orders(client=gateway, limit=2, delay=0.1, sleep=sleep)

        self.assertEqual(report["summary"]["total"], 2)
        sleep.assert_called_once_with(0.1)

    def test_ignores_unpaid_orders(self):
        make_order(payment_id="pay_x")
        report = reconcile_paid_orders(client=FakeGateway(), delay=0)
        self.assertEqual(report["summary"], {"total": 0, "matches": 0, "discrepancies": 0, "errors": 0, "matchPercentage": 0})


class VerifyOrderTests(TestCase):
    def test_reports_issues_for_single_order(self):
        order = paid_order(payment_id="pay_1")
        gateway = FakeGateway({"pay_1": {"id": "pay_1", "amount": 40000, "status": "captured", "created_at": 1700000000}})

        result = verify_order(client=gateway, order_id=order.pk)

        self.assertFalse(result["verification"]["amountMatch"])
        self.assertTrue(result["verification"]["statusMatch"])
        self.assertEqual(result["razorpay"]["amount"], 400.0)
        self.assertIn("Amount mismatch", result["verification"]["issues"][0])

    def test_missing_payment_id(self):
        order = paid_order(payment_id=None)
        result = verify_order(client=FakeGateway(), order_id=order.pk)
        self.assertEqual(result["verification"]["issues"], ["No payment ID in database"])
        self.assertIsNone(result["razorpay"])

    def test_gateway_error_becomes_issue(self):
        order = paid_order(payment_id="pay_gone")
        result = verify_order(client=FakeGateway(), order_id=order.pk)
        self.assertTrue(result["verification"]["issues"][0].startswith("Razorpay API error"))


class SyncPendingOrdersTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(name="Kurta", slug="kurta", price=Decimal("500.00"))
        self.size = ProductSize.objects.create(product=self.product, size="L", stock=1)

    def _pending(self, gw_id, age_hours=0):
        order = make_order("500.00", razorpay_order_id=gw_id)
        OrderItem.objects.create(order=order, product=self.product, name="Kurta", price=Decimal("500.00"), quantity=1, size="L")
        Order.objects.filter(pk=order.pk).update(created_at=timezone.now() - timedelta(hours=age_hours))
        return order

    def test_settles_expires_and_waits(self):
        paid = self._pending("order_paid")
        expired = self._pending("order_old", age_hours=30)
        fresh = self._pending("order_new", age_hours=1)
        gateway = FakeGateway(order_payments={
            "order_paid": [{"id": "pay_f", "status": "failed", "amount": 50000},
                           {"id": "pay_c", "status": "captured", "amount": 50000}],
            "order_old": [],
            "order_new": [],
        })

        counts = sync_pending_orders(client=gateway, grace_hours=24, delay=0)

        self.assertEqual(counts["checked"], 3)
        self.assertEqual((counts["paid"], counts["cancelled"], counts["waiting"]), (1, 1, 1))
        paid.refresh_from_db()
        self.assertEqual((paid.payment_status, paid.payment_id), (Order.PAYMENT_PAID, "pay_c"))
        expired.refresh_from_db()
        self.assertEqual((expired.payment_status, expired.status), (Order.PAYMENT_FAILED, Order.STATUS_CANCELLED))
        fresh.refresh_from_db()
        self.assertEqual(fresh.payment_status, Order.PAYMENT_PENDING)
        self.size.refresh_from_db()
        self.assertEqual(self.size.stock, 2)

    def test_failed_attempts_are_expired_and_restocked(self):
        order = self._pending("order_failed", age_hours=30)
        Order.objects.filter(pk=order.pk).update(payment_status=Order.PAYMENT_FAILED)
        gateway = FakeGateway(order_payments={"order_failed": [{"id": "pay_f", "status": "failed", "amount": 50000}]})

        counts = sync_pending_orders(client=gateway, grace_hours=24, delay=0)

        self.assertEqual((counts["checked"], counts["cancelled"]), (1, 1))
        order.refresh_from_db()
        self.assertEqual((order.payment_status, order.status), (Order.PAYMENT_FAILED, Order.STATUS_CANCELLED))
        self.size.refresh_from_db()
        self.assertEqual(self.size.stock, 2)

    def test_failed_attempt_settles_on_captured_retry(self):
        order = self._pending("order_retry", age_hours=2)
        Order.objects.filter(pk=order.pk).update(payment_status=Order.PAYMENT_FAILED, payment_id="pay_f")
        gateway = FakeGateway(order_payments={"order_retry": [
            {"id": "pay_f", "status": "failed", "amount": 50000},
            {"id": "pay_ok", "status": "captured", "amount": 50000},
        ]})

        counts = sync_pending_orders(client=gateway, delay=0)

        self.assertEqual(counts["paid"], 1)
        order.refresh_from_db()
        self.assertEqual((order.payment_status, order.payment_id), (Order.PAYMENT_PAID, "pay_ok"))

    def test_amount_mismatch_is_not_settled(self):
        order = self._pending("order_short")
        gateway = FakeGateway(order_payments={"order_short": [{"id": "pay_c", "status": "captured", "amount": 100}]})
        counts = sync_pending_orders(client=gateway, delay=0)
        self.assertEqual(counts["mismatched"], 1)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, Order.PAYMENT_PENDING)


class AdminVerifyPaymentsViewTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.staff = User.objects.create_user("ops", password="x", is_staff=True)
        self.gateway = RazorpayClient("rzp_test_key", "test-secret")
        patcher = patch("payments.views.get_client", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_requires_login(self):
        resp = self.client.get("/api/admin/verify-payments")
        self.assertEqual(resp.status_code, 401)
        self.assertFalse(resp.json()["success"])

    def test_requires_staff(self):
        self.client.force_login(get_user_model().objects.create_user("shopper", password="x"))
        resp = self.client.get("/api/admin/verify-payments")
        self.assertEqual(resp.status_code, 403)

    def test_bulk_report(self):
        paid_order(payment_id="pay_1")
        self.client.force_login(self.staff)
        with patch.object(self.gateway, "fetch_payment", return_value={"id": "pay_1", "amount": 50000, "status": "captured"}):
            resp = self.client.get("/api/admin/verify-payments")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["summary"]["matches"], 1)
        self.assertEqual(body["summary"]["matchPercentage"], 100.0)

    def test_single_order(self):
        order = paid_order(payment_id="pay_1")
        self.client.force_login(self.staff)
        with patch.object(self.gateway, "fetch_payment", return_value={"id": "pay_1", "amount": 50000, "status": "authorized"}):
            resp = self.client.get(f"/api/admin/verify-payments/{order.pk}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["verification"]["issues"], [])

    def test_single_order_not_found(self):
        self.client.force_login(self.staff)
        resp = self.client.get("/api/admin/verify-payments/4b0c5d1e-0000-4000-8000-000000000000")
        self.assertEqual(resp.status_code, 404)


class ReconcileCommandTests(TestCase):
    def test_reconcile_payments_prints_summary(self):
        paid_order(payment_id="pay_1")
        paid_order(payment_id=None)
        gateway = FakeGateway({"pay_1": {"amount": 50000, "status": "captured"}})
        out = StringIO()
        with patch("payments.management.commands.reconcile_payments.get_client", return_value=gateway):
            call_command("reconcile_payments", "--sleep", "0", stdout=out)
        output = out.getvalue()
        self.assertIn("Missing payment ID in database", output)
        self.assertIn("1 matches, 1 discrepancies, 0 errors", output)

    def test_sync_pending_payments_with_nothing_pending(self):
        out = StringIO()
        with patch("payments.management.commands.sync_pending_payments.get_client", return_value=FakeGateway()):
            call_command("sync_pending_payments", "--sleep", "0", stdout=out)
        self.assertIn("No pending orders to sync.", out.getvalue())
