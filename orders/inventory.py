"""Per-size stock counters.

Decrements use a conditional UPDATE (``stock >= quantity``) so two
concurrent checkouts can never drive a counter below zero. Restores are
best effort: a line whose product or size no longer exists is logged and
skipped.
"""
import logging

from django.db import transaction
from django.db.models import F

from .models import Product, ProductSize

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    status_code = 400


class OutOfStock(CheckoutError):
    def __init__(self, product_name: str, size: str):
        self.product_name = product_name
        self.size = size
        super().__init__(f"Insufficient stock for {product_name} (size: {size})")


def _refresh_totals(product_ids) -> None:
    for product in Product.objects.filter(pk__in=set(product_ids)):
        product.recompute_total_stock()


@transaction.atomic
def reserve_stock(lines) -> None:
    """Decrement stock for ``(product, size, quantity)`` lines or raise ``OutOfStock``.

    Must run inside the checkout transaction so a failure on a later line
    rolls back the earlier decrements.
    """
    touched = []
    for product, size, quantity in lines:
        updated = ProductSize.objects.filter(
            product=product, size=size, stock__gte=quantity
        ).update(stock=F("stock") - quantity)
        if not updated:
            raise OutOfStock(product.name, size)
        touched.append(product.pk)
    _refresh_totals(touched)


def restore_stock(order) -> int:
    """Give the order's quantities back to their size counters.

    Returns the number of line items restored; skipped lines are logged.
    """
    restored = 0
    touched = []
    for item in order.items.all():
        if item.product_id is None:
            logger.warning(
                "Restock skipped for order %s: product for line %r no longer exists",
                order.order_number, item.name,
            )
            continue
        updated = ProductSize.objects.filter(
            product_id=item.product_id, size=item.size
        ).update(stock=F("stock") + item.quantity)
        if not updated:
            logger.warning(
                "Restock skipped for order %s: size %r not found on product %s",
                order.order_number, item.size, item.product_id,
            )
            continue
        restored += 1
        touched.append(item.product_id)
    _refresh_totals(touched)
    return restored
