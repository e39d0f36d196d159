# payments/reconciliation.py
"""Audit local payment state against Razorpay.

Reports only: ``reconcile_paid_orders`` and ``verify_order`` never change an
order. ``sync_pending_orders`` is the one job here that writes, settling or
expiring pending orders the browser never confirmed.
"""
import logging
import time
from datetime import datetime, timedelta, timezone as dt_timezone

from django.conf import settings
from django.utils import timezone

from orders.models import Order

from .exceptions import GatewayError, PaymentConflict
from .gateway import from_minor_units
from .services import SUCCESS_STATUSES, amounts_match, get_order, mark_paid, record_failure

logger = logging.getLogger(__name__)

SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"


def _iso(dt):
    return dt.isoformat() if dt else None


def _order_info(order: Order) -> dict:
    return {
        "orderNumber": order.order_number,
        "orderId": str(order.pk),
        "customer": order.customer_name or (order.shipping_address or {}).get("fullName") or "Guest",
        "email": order.customer_email or "N/A",
        "dbTotal": float(order.total),
        "dbPaymentStatus": order.payment_status,
        "paymentId": order.payment_id,
        "razorpayOrderId": order.razorpay_order_id,
        "createdAt": _iso(order.created_at),
    }


def compare_payment(order: Order, payment: dict) -> dict:
    gw_amount = from_minor_units(payment.get("amount") or 0)
    gw_status = str(payment.get("status") or "").lower()
    return {
        "razorpayAmount": float(gw_amount),
        "razorpayStatus": gw_status,
        "razorpayMethod": payment.get("method"),
        "razorpayEmail": payment.get("email"),
        "razorpayContact": payment.get("contact"),
        "razorpayCaptured": payment.get("captured"),
        "amountMatch": amounts_match(order.total, payment.get("amount") or 0),
        "statusMatch": order.is_paid and gw_status in SUCCESS_STATUSES,
        "amountDifference": float(order.total - gw_amount),
    }


def _delay(value):
    if value is None:
        value = getattr(settings, "PAYMENTS_RECONCILE_DELAY", 0.1)
    return value


def reconcile_paid_orders(*, client, limit=None, delay=None, sleep=time.sleep) -> dict:
    """Check the most recent paid orders against the gateway.

    Returns ``{"data": {totalOrders, matches, discrepancies, errors}, "summary": {...}}``.
    """
    if limit is None:
        limit = getattr(settings, "PAYMENTS_RECONCILE_LIMIT", 100)
    delay = _delay(delay)

    orders = list(Order.objects.filter(payment_status=Order.PAYMENT_PAID).order_by("-created_at")[:limit])
    logger.info("Reconciling %s paid orders", len(orders))

    results = {"totalOrders": len(orders), "matches": [], "discrepancies": [], "errors": []}
    calls = 0
    for order in orders:
        info = _order_info(order)
        if not order.payment_id:
            results["discrepancies"].append({**info, "issue": "Missing payment ID in database", "severity": SEVERITY_HIGH})
            continue

        # Space out gateway calls to stay under the provider's rate limit
        if calls and delay:
            sleep(delay)
        calls += 1

        try:
            payment = client.fetch_payment(order.payment_id)
        except GatewayError as e:
            results["errors"].append({**info, "error": str(e), "errorCode": e.code})
            continue

        check = {**info, **compare_payment(order, payment)}
        if not check["amountMatch"]:
            results["discrepancies"].append({**check, "issue": "Amount mismatch", "severity": SEVERITY_HIGH})
        elif not check["statusMatch"]:
            results["discrepancies"].append({**check, "issue": "Status mismatch", "severity": SEVERITY_MEDIUM})
        else:
            results["matches"].append(check)

    total = results["totalOrders"]
    summary = {
        "total": total,
        "matches": len(results["matches"]),
        "discrepancies": len(results["discrepancies"]),
        "errors": len(results["errors"]),
        "matchPercentage": round(len(results["matches"]) / total * 100, 2) if total else 0,
    }
    logger.info(
        "Reconciliation complete: %s matches, %s discrepancies, %s errors",
        summary["matches"], summary["discrepancies"], summary["errors"],
    )
    return {"data": results, "summary": summary}


def verify_order(*, client, order_id) -> dict:
    """Single-order variant of the audit. Problems are reported as issues."""
    order = get_order(order_id)
    result = {
        "order": {
            "orderNumber": order.order_number,
            "orderId": str(order.pk),
            "customer": order.customer_name or (order.shipping_address or {}).get("fullName"),
            "email": order.customer_email,
            "total": float(order.total),
            "paymentStatus": order.payment_status,
            "paymentId": order.payment_id,
            "razorpayOrderId": order.razorpay_order_id,
            "createdAt": _iso(order.created_at),
        },
        "razorpay": None,
        "verification": {"amountMatch": False, "statusMatch": False, "issues": []},
    }
    issues = result["verification"]["issues"]

    if not order.payment_id:
        issues.append("No payment ID in database")
        return result

    try:
        payment = client.fetch_payment(order.payment_id)
    except GatewayError as e:
        issues.append(f"Razorpay API error: {e}")
        return result

    check = compare_payment(order, payment)
    created = payment.get("created_at")
    result["razorpay"] = {
        "paymentId": payment.get("id"),
        "amount": check["razorpayAmount"],
        "status": check["razorpayStatus"],
        "method": check["razorpayMethod"],
        "email": check["razorpayEmail"],
        "contact": check["razorpayContact"],
        "captured": check["razorpayCaptured"],
        "createdAt": _iso(datetime.fromtimestamp(created, tz=dt_timezone.utc)) if created else None,
    }
    result["verification"]["amountMatch"] = check["amountMatch"]
    result["verification"]["statusMatch"] = check["statusMatch"]
    if not check["amountMatch"]:
        issues.append(f"Amount mismatch: DB ₹{order.total} vs Razorpay ₹{check['razorpayAmount']:.2f}")
    if not check["statusMatch"]:
        issues.append(f"Status mismatch: DB {order.payment_status} vs Razorpay {check['razorpayStatus']}")
    return result


def sync_pending_orders(*, client, grace_hours=None, delay=None, sleep=time.sleep, now=None) -> dict:
    """Settle pending orders the gateway has a payment for; expire stale ones.

    Open orders whose last attempt failed are included, since the gateway may
    still capture a retry. Orders older than the grace period with no
    successful payment are failed, cancelled and restocked through
    ``record_failure``.
    """
    if grace_hours is None:
        grace_hours = getattr(settings, "PAYMENTS_SYNC_GRACE_HOURS", 24)
    delay = _delay(delay)
    cutoff = (now or timezone.now()) - timedelta(hours=grace_hours)

    qs = Order.objects.filter(
        payment_status__in=[Order.PAYMENT_PENDING, Order.PAYMENT_FAILED],
        status=Order.STATUS_PENDING,
        razorpay_order_id__isnull=False,
    ).order_by("created_at")

    counts = {"checked": 0, "paid": 0, "cancelled": 0, "waiting": 0, "mismatched": 0, "errors": 0}
    for order in qs:
        if counts["checked"] and delay:
            sleep(delay)
        counts["checked"] += 1

        try:
            payments = client.fetch_order_payments(order.razorpay_order_id)
        except GatewayError as e:
            logger.warning("Sync failed for order %s: %s", order.order_number, e)
            counts["errors"] += 1
            continue

        success = next((p for p in payments if str(p.get("status") or "").lower() in SUCCESS_STATUSES), None)
        if success:
            if not amounts_match(order.total, success.get("amount") or 0):
                logger.warning(
                    "Sync skipped order %s: payment %s amount %s does not match total %s",
                    order.order_number, success.get("id"), success.get("amount"), order.total,
                )
                counts["mismatched"] += 1
                continue
            try:
                _, changed = mark_paid(order, success["id"])
            except PaymentConflict as e:
                logger.warning("Sync could not settle order %s: %s", order.order_number, e)
                counts["errors"] += 1
                continue
            if changed:
                counts["paid"] += 1
        elif order.created_at < cutoff:
            logger.info("Order %s has no payment after %sh, cancelling", order.order_number, grace_hours)
            try:
                record_failure(order_id=order.pk, reason="No payment within grace period")
            except PaymentConflict as e:
                logger.warning("Sync could not cancel order %s: %s", order.order_number, e)
                counts["errors"] += 1
                continue
            counts["cancelled"] += 1
        else:
            counts["waiting"] += 1

    logger.info("Pending payment sync: %s", counts)
    return counts
