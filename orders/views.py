import json
import logging

from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .inventory import CheckoutError
from .models import Order
from .serializers import serialize_order
from .services import create_order

logger = logging.getLogger(__name__)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


@csrf_exempt
@require_POST
def create_order_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return JsonResponse({"success": False, "message": "Invalid JSON body"}, status=400)

    try:
        order = create_order(
            items=body.get("items"),
            customer=body.get("customer"),
            shipping_address=body.get("shippingAddress"),
            tax=body.get("tax", 0),
            shipping=body.get("shipping", 0),
        )
    except CheckoutError as e:
        return JsonResponse({"success": False, "message": "Invalid order data", "error": str(e)}, status=e.status_code)

    logger.info("Order %s created, total=%s", order.order_number, order.total)
    return JsonResponse({"success": True, "data": serialize_order(order)}, status=201)


@require_GET
def order_detail_view(request, order_id):
    try:
        order = Order.objects.get(pk=order_id)
    except (Order.DoesNotExist, ValidationError):
        return JsonResponse({"success": False, "message": "Order not found"}, status=404)
    return JsonResponse({"success": True, "data": serialize_order(order)})
