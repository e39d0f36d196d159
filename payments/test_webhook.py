import json
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase

from orders.models import Order

from .gateway import RazorpayClient, compute_signature
from .services import normalize_webhook_status
from .tests import make_order

WEBHOOK_SECRET = "test-webhook-secret"


def envelope(event="payment.captured", status="captured", order_id="order_GW1", payment_id="pay_1"):
    return {
        "entity": "event",
        "event": event,
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id, "status": status, "amount": 50000}}},
    }


class RazorpayWebhookTests(TestCase):
    def setUp(self):
        self.gateway = RazorpayClient("rzp_test_key", "test-secret", webhook_secret=WEBHOOK_SECRET)
        patcher = patch("payments.views.get_client", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.order = make_order("500.00", razorpay_order_id="order_GW1")

    def _post(self, payload: dict, signature: str | None = None):
        raw = json.dumps(payload, separators=(",", ":"))
        sig = signature if signature is not None else compute_signature(WEBHOOK_SECRET, raw)
        return self.client.post(
            "/api/payments/webhook",
            data=raw,
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=sig,
        )

    def test_captured_event_marks_order_paid(self):
        resp = self._post(envelope())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outcome"], "processed")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(self.order.status, Order.STATUS_PROCESSING)
        self.assertEqual(self.order.payment_id, "pay_1")

    def test_duplicate_event_is_acknowledged_once(self):
        self._post(envelope())
        self.order.refresh_from_db()
        first_update = self.order.updated_at

        resp = self._post(envelope())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outcome"], "duplicate")
        self.order.refresh_from_db()
        self.assertEqual(self.order.updated_at, first_update)

    def test_bad_signature_is_unauthorized(self):
        with self.assertLogs("payments.services", level="WARNING"):
            resp = self._post(envelope(), signature="deadbeef")
        self.assertEqual(resp.status_code, 401)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_signature_covers_raw_bytes(self):
        raw = json.dumps(envelope(), separators=(",", ":"))
        # Same JSON, different bytes: must not validate with the compact signature
        resp = self.client.post(
            "/api/payments/webhook",
            data=json.dumps(envelope(), indent=2),
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=compute_signature(WEBHOOK_SECRET, raw),
        )
        self.assertEqual(resp.status_code, 401)

    def test_non_ascii_signature_is_unauthorized(self):
        with self.assertLogs("payments.services", level="WARNING"):
            resp = self._post(envelope(), signature="é")
        self.assertEqual(resp.status_code, 401)
        self.assertFalse(resp.json()["success"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_unknown_gateway_order_is_acknowledged(self):
        resp = self._post(envelope(order_id="order_UNKNOWN"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outcome"], "order_not_found")

    def test_failed_event_keeps_order_open_for_retry(self):
        resp = self._post(envelope(event="payment.failed", status="failed"))
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_FAILED)
        self.assertEqual(self.order.status, Order.STATUS_PENDING)

        # A later successful attempt on the same gateway order still settles it
        self._post(envelope(payment_id="pay_2"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(self.order.payment_id, "pay_2")

    def test_stale_failure_never_overwrites_paid(self):
        self._post(envelope())
        resp = self._post(envelope(event="payment.failed", status="failed", payment_id="pay_old"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outcome"], "stale")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(self.order.payment_id, "pay_1")

    def test_other_events_are_ignored(self):
        resp = self._post(envelope(event="order.paid", status="created"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outcome"], "ignored")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_webhook_secret_falls_back_to_key_secret(self):
        gateway = RazorpayClient("rzp_test_key", "test-secret")
        with patch("payments.views.get_client", return_value=gateway):
            raw = json.dumps(envelope(), separators=(",", ":"))
            resp = self.client.post(
                "/api/payments/webhook", data=raw, content_type="application/json",
                HTTP_X_RAZORPAY_SIGNATURE=compute_signature("test-secret", raw),
            )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outcome"], "processed")


class NormalizeWebhookStatusTests(SimpleTestCase):
    def test_mapping(self):
        self.assertEqual(normalize_webhook_status("payment.captured", "captured"), "paid")
        self.assertEqual(normalize_webhook_status("payment.authorized", "authorized"), "paid")
        self.assertEqual(normalize_webhook_status("payment.failed", "failed"), "failed")
        self.assertEqual(normalize_webhook_status("order.paid", "created"), "pending")
