def _money(value):
    return None if value is None else float(value)


def serialize_item(item) -> dict:
    return {
        "productId": item.product_id,
        "name": item.name,
        "price": _money(item.price),
        "quantity": item.quantity,
        "size": item.size,
    }


def serialize_order(order) -> dict:
    return {
        "id": str(order.pk),
        "orderNumber": order.order_number,
        "customer": {
            "name": order.customer_name,
            "email": order.customer_email,
            "phone": order.customer_phone,
        },
        "shippingAddress": order.shipping_address,
        "items": [serialize_item(i) for i in order.items.all()],
        "subtotal": _money(order.subtotal),
        "tax": _money(order.tax),
        "shipping": _money(order.shipping),
        "total": _money(order.total),
        "status": order.status,
        "paymentStatus": order.payment_status,
        "paymentId": order.payment_id,
        "razorpayOrderId": order.razorpay_order_id,
        "trackingNumber": order.tracking_number,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
    }
