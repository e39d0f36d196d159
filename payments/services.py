# payments/services.py
"""Order payment state transitions.

Every transition is a single conditional ``UPDATE`` guarded on the current
payment state, so the browser-driven verifier, the gateway webhook and the
sync job can race on the same order without double-applying side effects.
"""
import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from orders.inventory import restore_stock
from orders.models import Order

from .exceptions import (
    AmountMismatch, GatewayError, OrderNotFound, PaymentConflict,
    PaymentValidationError, SignatureMismatch,
)
from .gateway import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"captured", "authorized"}

# Webhook outcomes; all of them are acknowledged with HTTP 200
WEBHOOK_PROCESSED = "processed"
WEBHOOK_DUPLICATE = "duplicate"
WEBHOOK_ORDER_NOT_FOUND = "order_not_found"
WEBHOOK_IGNORED = "ignored"
WEBHOOK_STALE = "stale"


def amount_tolerance() -> Decimal:
    return Decimal(str(getattr(settings, "PAYMENTS_AMOUNT_TOLERANCE", "0.01")))


def amounts_match(order_total, gateway_amount_minor) -> bool:
    """Compare an order total (rupees) with a gateway amount (paise)."""
    diff = Decimal(str(order_total)) - from_minor_units(gateway_amount_minor)
    return abs(diff) <= amount_tolerance()


def get_order(order_id) -> Order:
    try:
        return Order.objects.get(pk=order_id)
    except (Order.DoesNotExist, ValidationError, ValueError):
        raise OrderNotFound(f"No order with id {order_id}")


def mark_paid(order: Order, payment_id: str) -> tuple[Order, bool]:
    """Move ``order`` to paid/processing. Returns ``(order, changed)``.

    Only pending or failed (retryable) payments on a non-cancelled order can
    settle. An order that is already paid is returned unchanged.
    """
    changed = (
        Order.objects.filter(pk=order.pk, payment_status__in=[Order.PAYMENT_PENDING, Order.PAYMENT_FAILED])
        .exclude(status=Order.STATUS_CANCELLED)
        .update(
            payment_status=Order.PAYMENT_PAID,
            payment_id=payment_id,
            status=Order.STATUS_PROCESSING,
            updated_at=timezone.now(),
        )
    )
    order.refresh_from_db()
    if changed:
        logger.info("Order %s marked paid (payment %s)", order.order_number, payment_id)
        return order, True
    if order.is_paid:
        return order, False
    raise PaymentConflict(
        f"Order {order.order_number} is {order.payment_status}/{order.status}",
        message="Order can no longer be marked as paid",
    )


# ---------- Payment intent ----------
def create_payment_order(*, client, order_id, amount, currency="INR") -> dict:
    """Mint a gateway order for ``order_id`` and link it to the order."""
    order = get_order(order_id)
    if order.razorpay_order_id:
        raise PaymentConflict(
            f"Order {order.order_number} is linked to {order.razorpay_order_id}",
            message="Payment order already created for this order",
        )
    if order.payment_status != Order.PAYMENT_PENDING:
        raise PaymentConflict(f"Order {order.order_number} payment is {order.payment_status}")

    try:
        amount_minor = to_minor_units(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise PaymentValidationError("Invalid amount value")
    if amount_minor <= 0:
        raise PaymentValidationError("Amount must be > 0")
    if not amounts_match(order.total, amount_minor):
        raise AmountMismatch(
            f"Requested {from_minor_units(amount_minor)} for order total {order.total}",
            message="Amount does not match order total",
        )

    receipt = f"order_{order.pk.hex}"  # gateway caps receipts at 40 chars
    gw_order = client.create_order(
        amount_minor=amount_minor,
        currency=currency or "INR",
        receipt=receipt,
        notes={"orderId": str(order.pk), "orderNumber": order.order_number},
    )
    gw_order_id = gw_order.get("id")
    if not gw_order_id:
        raise GatewayError("Gateway response missing order id")

    linked = Order.objects.filter(pk=order.pk, razorpay_order_id__isnull=True).update(
        razorpay_order_id=gw_order_id, updated_at=timezone.now()
    )
    if not linked:
        logger.warning("Gateway order %s orphaned: order %s was linked concurrently", gw_order_id, order.order_number)
        raise PaymentConflict(message="Payment order already created for this order")

    logger.info("Gateway order %s created for %s (%s paise)", gw_order_id, order.order_number, amount_minor)
    return {
        "id": gw_order_id,
        "amount": gw_order.get("amount", amount_minor),
        "currency": gw_order.get("currency", currency),
        "receipt": gw_order.get("receipt", receipt),
    }


# ---------- Synchronous verification ----------
def verify_payment(*, client, order_id, payment_id, gateway_order_id, signature) -> tuple[Order, bool]:
    """Verify a checkout confirmation and settle the order.

    Returns ``(order, already_processed)``. Nothing is written unless the
    signature, the gateway amount and the gateway status all check out.
    """
    order = get_order(order_id)
    if order.is_paid:
        return order, True

    if not order.razorpay_order_id:
        raise PaymentValidationError(
            f"Order {order.order_number} has no gateway order",
            message="Payment order has not been created for this order",
        )
    if order.razorpay_order_id != gateway_order_id:
        raise PaymentValidationError(
            f"Order {order.order_number} is linked to {order.razorpay_order_id}, got {gateway_order_id}",
            message="Gateway order id does not match this order",
        )

    if not client.verify_payment_signature(gateway_order_id, payment_id, signature):
        logger.warning(
            "Payment signature mismatch for order %s: expected=%s received=%s",
            order.order_number, client.payment_signature(gateway_order_id, payment_id), signature,
        )
        raise SignatureMismatch(f"Signature check failed for payment {payment_id}")

    if Order.objects.filter(payment_id=payment_id, payment_status=Order.PAYMENT_PAID).exclude(pk=order.pk).exists():
        raise PaymentConflict(
            f"Payment {payment_id} already settles another order",
            message="Payment has already been used for another order",
        )

    payment = client.fetch_payment(payment_id)
    if payment.get("order_id") and payment["order_id"] != gateway_order_id:
        raise PaymentValidationError(
            f"Payment {payment_id} belongs to {payment['order_id']}",
            message="Payment does not belong to this order",
        )

    if not amounts_match(order.total, payment.get("amount", 0)):
        gw_amount = from_minor_units(payment.get("amount", 0))
        logger.warning("Amount mismatch for order %s: total=%s gateway=%s", order.order_number, order.total, gw_amount)
        raise AmountMismatch(f"Order total {order.total} vs gateway amount {gw_amount}")

    status = str(payment.get("status") or "").lower()
    if status not in SUCCESS_STATUSES:
        raise PaymentValidationError(
            f"Payment {payment_id} status is {status or 'unknown'}",
            message="Payment has not been completed",
        )

    order, changed = mark_paid(order, payment_id)
    return order, not changed


# ---------- Webhook ----------
def normalize_webhook_status(event: str, gateway_status: str) -> str:
    if gateway_status == "captured" or event == "payment.authorized":
        return Order.PAYMENT_PAID
    if gateway_status == "failed" or event == "payment.failed":
        return Order.PAYMENT_FAILED
    return Order.PAYMENT_PENDING


def handle_webhook(*, client, raw_body: bytes, signature: str, payload) -> str:
    """Apply a gateway event. Returns one of the ``WEBHOOK_*`` outcomes.

    Only a bad signature or a malformed envelope raise; every other case is
    acknowledged so the gateway does not keep retrying.
    """
    if not client.verify_webhook_signature(raw_body, signature):
        logger.warning(
            "Webhook signature mismatch: expected=%s received=%s",
            client.webhook_signature(raw_body), signature,
        )
        raise SignatureMismatch("Webhook signature check failed", message="Invalid webhook signature")

    if not isinstance(payload, dict):
        raise PaymentValidationError("Webhook body is not a JSON object")

    event = str(payload.get("event") or "")
    entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    payment_id = entity.get("id")
    gw_order_id = entity.get("order_id")
    new_status = normalize_webhook_status(event, str(entity.get("status") or "").lower())

    order = Order.objects.filter(razorpay_order_id=gw_order_id).first() if gw_order_id else None
    if order is None:
        logger.info("Webhook %s for unknown gateway order %s acknowledged", event, gw_order_id)
        return WEBHOOK_ORDER_NOT_FOUND

    if new_status == Order.PAYMENT_PENDING:
        return WEBHOOK_IGNORED

    if order.is_paid and new_status == Order.PAYMENT_PAID:
        logger.info("Duplicate webhook %s for paid order %s", event, order.order_number)
        return WEBHOOK_DUPLICATE

    if new_status == Order.PAYMENT_PAID:
        try:
            _, changed = mark_paid(order, payment_id)
        except PaymentConflict as e:
            logger.warning("Webhook %s not applied: %s", event, e)
            return WEBHOOK_STALE
        return WEBHOOK_PROCESSED if changed else WEBHOOK_DUPLICATE

    # A failed attempt leaves the order open for a retry on the same gateway order
    changed = Order.objects.filter(pk=order.pk, payment_status=Order.PAYMENT_PENDING).update(
        payment_status=Order.PAYMENT_FAILED,
        payment_id=payment_id,
        status=Order.STATUS_PENDING,
        updated_at=timezone.now(),
    )
    if not changed:
        logger.info("Webhook %s ignored for order %s in state %s", event, order.order_number, order.payment_status)
        return WEBHOOK_STALE
    logger.info("Order %s payment failed (payment %s)", order.order_number, payment_id)
    return WEBHOOK_PROCESSED


# ---------- Failure ----------
def record_failure(*, order_id, payment_id=None, reason="") -> tuple[Order, int]:
    """Fail and cancel an unpaid order, then give its stock back.

    Returns ``(order, restored_line_count)``. Repeating the call on an
    already cancelled order restores nothing.
    """
    order = get_order(order_id)
    if order.is_paid:
        raise PaymentConflict(
            f"Order {order.order_number} is already paid",
            message="Cannot mark a paid order as failed",
        )

    updates = {
        "payment_status": Order.PAYMENT_FAILED,
        "status": Order.STATUS_CANCELLED,
        "updated_at": timezone.now(),
    }
    if payment_id:
        updates["payment_id"] = payment_id

    with transaction.atomic():
        changed = Order.objects.filter(
            pk=order.pk,
            payment_status__in=[Order.PAYMENT_PENDING, Order.PAYMENT_FAILED],
            status=Order.STATUS_PENDING,
        ).update(**updates)
        order.refresh_from_db()
        if not changed:
            if order.is_paid:
                raise PaymentConflict(message="Cannot mark a paid order as failed")
            return order, 0
        restored = restore_stock(order)

    logger.info(
        "Order %s payment failed (%s); restocked %s/%s lines",
        order.order_number, reason or "no reason given", restored, order.items.count(),
    )
    return order, restored


def fetch_payment_details(*, client, payment_id: str) -> dict:
    payment = client.fetch_payment(payment_id)
    return {
        "id": payment.get("id"),
        "amount": payment.get("amount"),
        "currency": payment.get("currency"),
        "status": payment.get("status"),
        "method": payment.get("method"),
        "email": payment.get("email"),
        "contact": payment.get("contact"),
        "description": payment.get("description"),
        "fee": payment.get("fee"),
        "tax": payment.get("tax"),
        "receiptId": payment.get("receipt"),
        "createdAt": payment.get("created_at"),
    }
