import json
import re
from decimal import Decimal

from django.test import SimpleTestCase, TestCase

from .inventory import OutOfStock, reserve_stock, restore_stock
from .models import Order, OrderItem, Product, ProductSize
from .utils import generate_order_number


class OrderNumberTests(SimpleTestCase):
    def test_format(self):
        self.assertRegex(generate_order_number(), r"^ORD-\d{13}-\d{1,3}$")


class CheckoutTests(TestCase):
    def setUp(self):
        self.shirt = Product.objects.create(name="Oxford Shirt", slug="oxford-shirt", price=Decimal("799.50"))
        self.shirt_m = ProductSize.objects.create(product=self.shirt, size="M", stock=3)
        self.shirt_l = ProductSize.objects.create(product=self.shirt, size="L", stock=1)
        self.shirt.recompute_total_stock()

    def _post(self, payload):
        return self.client.post("/api/orders/", data=json.dumps(payload), content_type="application/json")

    def test_creates_order_priced_from_catalog(self):
        resp = self._post({
            "items": [{"productId": self.shirt.pk, "size": "M", "quantity": 2}],
            "customer": {"name": "Meera", "email": "meera@example.com"},
            "shippingAddress": {"fullName": "Meera", "city": "Pune"},
            "tax": "143.91",
            "shipping": 50,
        })

        self.assertEqual(resp.status_code, 201)
        data = resp.json()["data"]
        self.assertEqual(data["subtotal"], 1599.0)
        self.assertEqual(data["total"], 1792.91)
        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["paymentStatus"], "pending")
        self.assertIsNone(data["razorpayOrderId"])
        self.assertTrue(re.match(r"^ORD-\d+-\d+$", data["orderNumber"]))
        self.assertEqual(data["items"][0]["name"], "Oxford Shirt")

        self.shirt_m.refresh_from_db()
        self.assertEqual(self.shirt_m.stock, 1)
        self.shirt.refresh_from_db()
        self.assertEqual(self.shirt.total_stock, 2)

    def test_insufficient_stock_rolls_back_every_line(self):
        resp = self._post({"items": [
            {"productId": self.shirt.pk, "size": "M", "quantity": 1},
            {"productId": self.shirt.pk, "size": "L", "quantity": 2},
        ]})

        self.assertEqual(resp.status_code, 400)
        self.assertIn("Insufficient stock for Oxford Shirt (size: L)", resp.json()["error"])
        self.shirt_m.refresh_from_db()
        self.assertEqual(self.shirt_m.stock, 3)
        self.assertFalse(Order.objects.exists())

    def test_rejects_unknown_product_and_bad_quantity(self):
        self.assertEqual(self._post({"items": [{"productId": 999, "size": "M", "quantity": 1}]}).status_code, 400)
        self.assertEqual(self._post({"items": [{"productId": self.shirt.pk, "size": "M", "quantity": 0}]}).status_code, 400)
        self.assertEqual(self._post({"items": []}).status_code, 400)

    def test_detail(self):
        order = Order.objects.create(subtotal=Decimal("10.00"), total=Decimal("10.00"))
        resp = self.client.get(f"/api/orders/{order.pk}/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["id"], str(order.pk))

        self.assertEqual(self.client.get("/api/orders/not-a-uuid/").status_code, 404)


class InventoryTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(name="Chinos", slug="chinos", price=Decimal("1200.00"))
        self.size_32 = ProductSize.objects.create(product=self.product, size="32", stock=2)

    def test_reserve_never_goes_negative(self):
        reserve_stock([(self.product, "32", 2)])
        with self.assertRaises(OutOfStock):
            reserve_stock([(self.product, "32", 1)])
        self.size_32.refresh_from_db()
        self.assertEqual(self.size_32.stock, 0)

    def test_restore_skips_missing_size(self):
        order = Order.objects.create(subtotal=Decimal("2400.00"), total=Decimal("2400.00"))
        OrderItem.objects.create(order=order, product=self.product, name="Chinos", price=Decimal("1200.00"), quantity=1, size="32")
        OrderItem.objects.create(order=order, product=self.product, name="Chinos", price=Decimal("1200.00"), quantity=1, size="40")

        with self.assertLogs("orders.inventory", level="WARNING") as cm:
            restored = restore_stock(order)

        self.assertEqual(restored, 1)
        self.assertIn("size '40' not found", cm.output[0])
        self.size_32.refresh_from_db()
        self.assertEqual(self.size_32.stock, 3)
