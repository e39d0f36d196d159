import json
from decimal import Decimal
from unittest.mock import Mock, patch

import requests
from django.apps import apps
from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase, TestCase, override_settings

from orders.models import Order, OrderItem, Product, ProductSize

from .exceptions import GatewayConfigError, GatewayError
from .gateway import RazorpayClient, compute_signature, from_minor_units, get_client, to_minor_units


def make_order(total="500.00", **kwargs) -> Order:
    total = Decimal(total)
    return Order.objects.create(subtotal=total, total=total, **kwargs)


def signed(gateway_order_id, payment_id, secret="test-secret"):
    return compute_signature(secret, f"{gateway_order_id}|{payment_id}")


class MinorUnitTests(SimpleTestCase):
    def test_rupees_to_paise_rounds_half_up(self):
        self.assertEqual(to_minor_units("499.99"), 49999)
        self.assertEqual(to_minor_units(10.005), 1001)
        self.assertEqual(to_minor_units(Decimal("1")), 100)

    def test_paise_to_rupees(self):
        self.assertEqual(from_minor_units(50050), Decimal("500.50"))


class RazorpayClientTests(SimpleTestCase):
    def setUp(self):
        self.client_ = RazorpayClient("rzp_test_key", "test-secret", base_url="https://api.example.test/v1/")

    def test_missing_credentials_refuse_to_initialize(self):
        with self.assertRaises(GatewayConfigError) as cm:
            RazorpayClient("rzp_test_key", "")
        self.assertIn("RAZORPAY_SECRET_KEY", str(cm.exception))
        self.assertEqual(cm.exception.message, "Payment service is not configured")

    def test_webhook_secret_falls_back_to_key_secret(self):
        body = b'{"event":"payment.captured"}'
        self.assertEqual(self.client_.webhook_signature(body), compute_signature("test-secret", body))

    def test_payment_signature_round_trip(self):
        sig = signed("order_1", "pay_1")
        self.assertTrue(self.client_.verify_payment_signature("order_1", "pay_1", sig))
        self.assertFalse(self.client_.verify_payment_signature("order_1", "pay_2", sig))

    def test_create_order_posts_with_basic_auth(self):
        resp = Mock(status_code=200)
        resp.json.return_value = {"id": "order_X", "amount": 1000, "currency": "INR", "receipt": "r"}
        with patch("payments.gateway.requests.request", return_value=resp) as req:
            data = self.client_.create_order(amount_minor=1000, currency="INR", receipt="r")

        self.assertEqual(data["id"], "order_X")
        args, kwargs = req.call_args
        self.assertEqual(args, ("POST", "https://api.example.test/v1/orders"))
        self.assertEqual(kwargs["json"], {"amount": 1000, "currency": "INR", "receipt": "r"})
        self.assertEqual(kwargs["auth"].username, "rzp_test_key")
        self.assertEqual(kwargs["timeout"], 30)

    def test_upstream_error_is_raised_with_description(self):
        resp = Mock(status_code=400)
        resp.json.return_value = {"error": {"code": "BAD_REQUEST_ERROR", "description": "The id provided does not exist"}}
        with patch("payments.gateway.requests.request", return_value=resp):
            with self.assertRaises(GatewayError) as cm:
                self.client_.fetch_payment("pay_missing")
        self.assertEqual(cm.exception.code, "BAD_REQUEST_ERROR")
        self.assertIn("does not exist", str(cm.exception))

    def test_network_failure_is_a_gateway_error(self):
        with patch("payments.gateway.requests.request", side_effect=requests.ConnectionError("boom")):
            with self.assertRaises(GatewayError):
                self.client_.fetch_order_payments("order_1")


class StartupValidationTests(SimpleTestCase):
    def tearDown(self):
        get_client.cache_clear()

    def test_missing_credentials_fail_fast_when_required(self):
        get_client.cache_clear()
        with override_settings(RAZORPAY_KEY_ID="", RAZORPAY_REQUIRED=True):
            with self.assertRaises(ImproperlyConfigured):
                apps.get_app_config("payments").ready()

    def test_missing_credentials_only_logged_when_optional(self):
        get_client.cache_clear()
        with override_settings(RAZORPAY_KEY_ID="", RAZORPAY_REQUIRED=False):
            with self.assertLogs("payments", level="ERROR"):
                apps.get_app_config("payments").ready()


class PaymentViewTestCase(TestCase):
    def setUp(self):
        self.gateway = RazorpayClient("rzp_test_key", "test-secret", webhook_secret="test-webhook-secret")
        patcher = patch("payments.views.get_client", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _post(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type="application/json")


class CreatePaymentOrderTests(PaymentViewTestCase):
    def test_creates_gateway_order_and_links_it(self):
        order = make_order("499.99")
        with patch.object(self.gateway, "create_order", return_value={
            "id": "order_GW1", "amount": 49999, "currency": "INR", "receipt": f"order_{order.pk.hex}",
        }) as create:
            resp = self._post("/api/payments/create-order", {"orderId": str(order.pk), "amount": "499.99"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"], {
            "id": "order_GW1", "amount": 49999, "currency": "INR", "receipt": f"order_{order.pk.hex}",
        })
        self.assertEqual(create.call_args.kwargs["amount_minor"], 49999)
        order.refresh_from_db()
        self.assertEqual(order.razorpay_order_id, "order_GW1")

    def test_gateway_order_id_is_assigned_once(self):
        order = make_order(razorpay_order_id="order_GW1")
        with patch.object(self.gateway, "create_order") as create:
            resp = self._post("/api/payments/create-order", {"orderId": str(order.pk), "amount": 500})
        self.assertEqual(resp.status_code, 400)
        create.assert_not_called()
        order.refresh_from_db()
        self.assertEqual(order.razorpay_order_id, "order_GW1")

    def test_amount_must_match_order_total(self):
        order = make_order("500.00")
        with patch.object(self.gateway, "create_order") as create:
            resp = self._post("/api/payments/create-order", {"orderId": str(order.pk), "amount": "1.00"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Amount does not match order total")
        create.assert_not_called()
        order.refresh_from_db()
        self.assertIsNone(order.razorpay_order_id)

    def test_missing_fields(self):
        resp = self._post("/api/payments/create-order", {"amount": 10})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])

    def test_unknown_order(self):
        resp = self._post("/api/payments/create-order", {"orderId": "not-a-uuid", "amount": 10})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["message"], "Order not found")

    def test_configuration_error_is_distinct_from_gateway_error(self):
        order = make_order()
        with patch("payments.views.get_client", side_effect=GatewayConfigError("Razorpay is not configured.")):
            resp = self._post("/api/payments/create-order", {"orderId": str(order.pk), "amount": 500})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["message"], "Payment service is not configured")

        with patch.object(self.gateway, "create_order", side_effect=GatewayError("Gateway request failed: timeout")):
            resp = self._post("/api/payments/create-order", {"orderId": str(order.pk), "amount": 500})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["message"], "Payment gateway request failed")
        self.assertIn("timeout", resp.json()["error"])


class VerifyPaymentTests(PaymentViewTestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order("500.00", razorpay_order_id="order_GW1")
        self.payload = {
            "orderId": str(self.order.pk),
            "razorpayPaymentId": "pay_1",
            "razorpayOrderId": "order_GW1",
            "razorpaySignature": signed("order_GW1", "pay_1"),
        }
        self.captured = {"id": "pay_1", "order_id": "order_GW1", "amount": 50000, "status": "captured"}

    def test_valid_payment_marks_order_paid(self):
        with patch.object(self.gateway, "fetch_payment", return_value=self.captured):
            resp = self._post("/api/payments/verify", self.payload)

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["message"], "Payment verified successfully")
        self.assertEqual(body["data"]["paymentStatus"], "paid")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PAID)
        self.assertEqual(self.order.status, Order.STATUS_PROCESSING)
        self.assertEqual(self.order.payment_id, "pay_1")

    def test_second_verification_is_a_no_op(self):
        with patch.object(self.gateway, "fetch_payment", return_value=self.captured) as fetch:
            self._post("/api/payments/verify", self.payload)
            self.order.refresh_from_db()
            first_update = self.order.updated_at
            resp = self._post("/api/payments/verify", self.payload)

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["message"], "Payment already processed")
        self.assertEqual(fetch.call_count, 1)
        self.order.refresh_from_db()
        self.assertEqual(self.order.updated_at, first_update)

    def test_tampered_signature_is_rejected_without_mutation(self):
        self.payload["razorpaySignature"] = "0" * 64
        with patch.object(self.gateway, "fetch_payment") as fetch:
            with self.assertLogs("payments.services", level="WARNING"):
                resp = self._post("/api/payments/verify", self.payload)

        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["message"], "Invalid payment signature")
        fetch.assert_not_called()
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_amount_mismatch_keeps_order_pending(self):
        self.captured["amount"] = 49000
        with patch.object(self.gateway, "fetch_payment", return_value=self.captured):
            resp = self._post("/api/payments/verify", self.payload)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Payment amount does not match order total")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_one_paisa_rounding_is_tolerated(self):
        self.captured["amount"] = 50001
        with patch.object(self.gateway, "fetch_payment", return_value=self.captured):
            resp = self._post("/api/payments/verify", self.payload)
        self.assertEqual(resp.status_code, 200)

    def test_gateway_order_id_must_match_linked_order(self):
        self.payload["razorpayOrderId"] = "order_OTHER"
        self.payload["razorpaySignature"] = signed("order_OTHER", "pay_1")
        resp = self._post("/api/payments/verify", self.payload)
        self.assertEqual(resp.status_code, 400)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_order_without_gateway_order_cannot_be_settled(self):
        unlinked = make_order("500.00")
        self.payload["orderId"] = str(unlinked.pk)
        with patch.object(self.gateway, "fetch_payment", return_value=self.captured) as fetch:
            resp = self._post("/api/payments/verify", self.payload)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Payment order has not been created for this order")
        fetch.assert_not_called()
        unlinked.refresh_from_db()
        self.assertEqual(unlinked.payment_status, Order.PAYMENT_PENDING)
        self.assertIsNone(unlinked.payment_id)

    def test_payment_cannot_settle_a_second_order(self):
        make_order("500.00", payment_status=Order.PAYMENT_PAID, status=Order.STATUS_PROCESSING, payment_id="pay_reused")
        other = make_order("500.00", razorpay_order_id="order_GW2")
        payload = {
            "orderId": str(other.pk),
            "razorpayPaymentId": "pay_reused",
            "razorpayOrderId": "order_GW2",
            "razorpaySignature": signed("order_GW2", "pay_reused"),
        }
        with patch.object(self.gateway, "fetch_payment") as fetch:
            resp = self._post("/api/payments/verify", payload)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Payment has already been used for another order")
        fetch.assert_not_called()
        other.refresh_from_db()
        self.assertEqual(other.payment_status, Order.PAYMENT_PENDING)

    def test_non_ascii_signature_is_unauthorized(self):
        self.payload["razorpaySignature"] = "é"
        with self.assertLogs("payments.services", level="WARNING"):
            resp = self._post("/api/payments/verify", self.payload)
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["message"], "Invalid payment signature")

    def test_non_string_signature_is_unauthorized(self):
        self.payload["razorpaySignature"] = 12345
        with self.assertLogs("payments.services", level="WARNING"):
            resp = self._post("/api/payments/verify", self.payload)
        self.assertEqual(resp.status_code, 401)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_uncaptured_payment_is_not_settled(self):
        self.captured["status"] = "failed"
        with patch.object(self.gateway, "fetch_payment", return_value=self.captured):
            resp = self._post("/api/payments/verify", self.payload)
        self.assertEqual(resp.status_code, 400)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_PENDING)

    def test_cancelled_order_cannot_be_settled(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=Order.PAYMENT_FAILED, status=Order.STATUS_CANCELLED)
        with patch.object(self.gateway, "fetch_payment", return_value=self.captured):
            resp = self._post("/api/payments/verify", self.payload)
        self.assertEqual(resp.status_code, 400)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PAYMENT_FAILED)

    def test_missing_fields(self):
        del self.payload["razorpaySignature"]
        resp = self._post("/api/payments/verify", self.payload)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Missing required payment details")


class PaymentFailureTests(PaymentViewTestCase):
    def setUp(self):
        super().setUp()
        self.product = Product.objects.create(name="Linen Shirt", slug="linen-shirt", price=Decimal("250.00"))
        self.size_m = ProductSize.objects.create(product=self.product, size="M", stock=3)
        self.order = make_order("500.00")
        OrderItem.objects.create(order=self.order, product=self.product, name="Linen Shirt",
                                 price=Decimal("250.00"), quantity=2, size="M")

    def test_failure_restores_stock_and_cancels(self):
        resp = self._post("/api/payments/failure", {"orderId": str(self.order.pk), "razorpayPaymentId": "pay_9", "reason": "declined"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["restockedItems"], 1)
        self.size_m.refresh_from_db()
        self.assertEqual(self.size_m.stock, 5)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_CANCELLED)
        self.assertEqual(self.order.payment_status, Order.PAYMENT_FAILED)
        self.assertEqual(self.order.payment_id, "pay_9")
        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 5)

    def test_repeated_failure_restocks_once(self):
        self._post("/api/payments/failure", {"orderId": str(self.order.pk)})
        resp = self._post("/api/payments/failure", {"orderId": str(self.order.pk)})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["restockedItems"], 0)
        self.size_m.refresh_from_db()
        self.assertEqual(self.size_m.stock, 5)

    def test_paid_order_cannot_be_failed(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status=Order.PAYMENT_PAID, status=Order.STATUS_PROCESSING)
        resp = self._post("/api/payments/failure", {"orderId": str(self.order.pk)})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Cannot mark a paid order as failed")
        self.size_m.refresh_from_db()
        self.assertEqual(self.size_m.stock, 3)

    def test_partial_restock_when_product_is_gone(self):
        other = Product.objects.create(name="Scarf", slug="scarf", price=Decimal("100.00"))
        OrderItem.objects.create(order=self.order, product=other, name="Scarf", price=Decimal("100.00"), quantity=1, size="OS")
        other.delete()

        with self.assertLogs("orders.inventory", level="WARNING"):
            resp = self._post("/api/payments/failure", {"orderId": str(self.order.pk)})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["restockedItems"], 1)
        self.size_m.refresh_from_db()
        self.assertEqual(self.size_m.stock, 5)


class PaymentDetailsTests(PaymentViewTestCase):
    def test_proxies_gateway_payment(self):
        payment = {"id": "pay_1", "amount": 50000, "currency": "INR", "status": "captured", "method": "upi",
                   "email": "a@example.com", "contact": "+919999999999", "receipt": "r1", "created_at": 1700000000}
        with patch.object(self.gateway, "fetch_payment", return_value=payment):
            resp = self.client.get("/api/payments/details/pay_1")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["amount"], 50000)
        self.assertEqual(data["method"], "upi")
        self.assertEqual(data["receiptId"], "r1")

    def test_upstream_error(self):
        with patch.object(self.gateway, "fetch_payment", side_effect=GatewayError("The id provided does not exist")):
            resp = self.client.get("/api/payments/details/pay_x")
        self.assertEqual(resp.status_code, 500)
        self.assertIn("does not exist", resp.json()["error"])
