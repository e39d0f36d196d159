import json
import logging
from functools import wraps

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from orders.serializers import serialize_order

from . import reconciliation, services
from .auth import staff_required
from .exceptions import PaymentError, PaymentValidationError
from .gateway import get_client

logger = logging.getLogger(__name__)

WEBHOOK_MESSAGES = {
    services.WEBHOOK_PROCESSED: "Webhook processed",
    services.WEBHOOK_DUPLICATE: "Payment already processed",
    services.WEBHOOK_ORDER_NOT_FOUND: "Order not found, acknowledged",
    services.WEBHOOK_IGNORED: "Event acknowledged without changes",
    services.WEBHOOK_STALE: "Event acknowledged without changes",
}


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _require(body, *fields):
    if not isinstance(body, dict):
        raise PaymentValidationError(message="Invalid JSON body")
    missing = [f for f in fields if not body.get(f)]
    if missing:
        raise PaymentValidationError(f"Missing fields: {', '.join(missing)}", message="Missing required payment details")
    return body


def _error(e: PaymentError) -> JsonResponse:
    data = {"success": False, "message": e.message}
    if e.detail:
        data["error"] = e.detail
    return JsonResponse(data, status=e.status_code)


def payment_endpoint(failure_message):
    """Render ``PaymentError`` and unexpected exceptions as the JSON error envelope."""

    def decorator(view):
        @wraps(view)
        def wrapper(request, *args, **kwargs):
            try:
                return view(request, *args, **kwargs)
            except PaymentError as e:
                if e.status_code >= 500:
                    logger.error("%s: %s", failure_message, e)
                return _error(e)
            except Exception as e:
                logger.exception(failure_message)
                return JsonResponse({"success": False, "message": failure_message, "error": str(e)}, status=500)

        return wrapper

    return decorator


@csrf_exempt
@require_POST
@payment_endpoint("Failed to create payment order")
def create_order_view(request):
    body = _require(_json_body(request), "orderId", "amount")
    data = services.create_payment_order(
        client=get_client(),
        order_id=body["orderId"],
        amount=body["amount"],
        currency=body.get("currency") or "INR",
    )
    return JsonResponse({"success": True, "data": data})


@csrf_exempt
@require_POST
@payment_endpoint("Failed to verify payment")
def verify_view(request):
    body = _require(_json_body(request), "orderId", "razorpayPaymentId", "razorpayOrderId", "razorpaySignature")
    order, already = services.verify_payment(
        client=get_client(),
        order_id=body["orderId"],
        payment_id=body["razorpayPaymentId"],
        gateway_order_id=body["razorpayOrderId"],
        signature=body["razorpaySignature"],
    )
    message = "Payment already processed" if already else "Payment verified successfully"
    return JsonResponse({"success": True, "message": message, "data": serialize_order(order)})


@csrf_exempt
@require_POST
@payment_endpoint("Failed to record payment failure")
def failure_view(request):
    body = _require(_json_body(request), "orderId")
    order, restored = services.record_failure(
        order_id=body["orderId"],
        payment_id=body.get("razorpayPaymentId"),
        reason=body.get("reason") or "",
    )
    return JsonResponse({
        "success": True,
        "message": "Payment failure recorded",
        "data": serialize_order(order),
        "restockedItems": restored,
    })


@csrf_exempt
@require_POST
@payment_endpoint("Failed to process webhook")
def webhook_view(request):
    # Signatures cover the exact bytes sent, so verify against request.body
    raw_body = request.body
    outcome = services.handle_webhook(
        client=get_client(),
        raw_body=raw_body,
        signature=request.headers.get("X-Razorpay-Signature", ""),
        payload=_json_body(request),
    )
    return JsonResponse({"success": True, "message": WEBHOOK_MESSAGES[outcome], "outcome": outcome})


@require_GET
@payment_endpoint("Failed to fetch payment details")
def payment_details_view(request, payment_id: str):
    data = services.fetch_payment_details(client=get_client(), payment_id=payment_id)
    return JsonResponse({"success": True, "data": data})


@require_GET
@staff_required
@payment_endpoint("Failed to verify payments")
def verify_payments_view(request):
    report = reconciliation.reconcile_paid_orders(client=get_client())
    return JsonResponse({"success": True, **report})


@require_GET
@staff_required
@payment_endpoint("Failed to verify order")
def verify_order_view(request, order_id: str):
    data = reconciliation.verify_order(client=get_client(), order_id=order_id)
    return JsonResponse({"success": True, "data": data})
