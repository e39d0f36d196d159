from decimal import Decimal, InvalidOperation

from django.db import transaction

from .inventory import CheckoutError, reserve_stock
from .models import Order, OrderItem, Product


def _money(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value if value is not None else "0")).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        raise CheckoutError(f"Invalid {field}")
    if amount < 0:
        raise CheckoutError(f"{field} must be >= 0")
    return amount


def _parse_lines(items):
    if not items or not isinstance(items, list):
        raise CheckoutError("At least one item is required")
    lines = []
    for raw in items:
        try:
            product_id = int(raw.get("productId"))
            quantity = int(raw.get("quantity") or 0)
        except (AttributeError, TypeError, ValueError):
            raise CheckoutError("Each item needs a productId and quantity")
        if quantity < 1:
            raise CheckoutError("Quantity must be >= 1")
        size = str(raw.get("size") or "").strip()
        product = Product.objects.filter(pk=product_id, is_active=True).first()
        if product is None:
            raise CheckoutError(f"Product {product_id} not found")
        lines.append((product, size, quantity))
    return lines


@transaction.atomic
def create_order(*, items, customer=None, shipping_address=None, tax=0, shipping=0) -> Order:
    """Reserve stock and persist a pending order priced from the catalog."""
    lines = _parse_lines(items)
    tax = _money(tax, "tax")
    shipping = _money(shipping, "shipping")

    reserve_stock(lines)

    subtotal = sum((product.price * quantity for product, _, quantity in lines), Decimal("0.00"))
    customer = customer or {}
    order = Order.objects.create(
        customer_name=customer.get("name", "") or "",
        customer_email=customer.get("email", "") or "",
        customer_phone=customer.get("phone", "") or "",
        shipping_address=shipping_address,
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=subtotal + tax + shipping,
    )
    OrderItem.objects.bulk_create([
        OrderItem(order=order, product=product, name=product.name, price=product.price, quantity=quantity, size=size)
        for product, size, quantity in lines
    ])
    return order
