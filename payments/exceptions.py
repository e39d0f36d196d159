class PaymentError(Exception):
    """Base for errors surfaced to API callers as ``{"success": false, ...}``."""

    status_code = 500
    message = "Payment processing failed"

    def __init__(self, detail: str = "", *, message: str | None = None):
        super().__init__(detail or message or self.message)
        self.detail = detail
        if message:
            self.message = message


class PaymentValidationError(PaymentError):
    status_code = 400
    message = "Invalid payment request"


class OrderNotFound(PaymentError):
    status_code = 404
    message = "Order not found"


class SignatureMismatch(PaymentError):
    status_code = 401
    message = "Invalid payment signature"


class AmountMismatch(PaymentError):
    status_code = 400
    message = "Payment amount does not match order total"


class PaymentConflict(PaymentError):
    status_code = 400
    message = "Order payment state does not allow this operation"


class GatewayConfigError(PaymentError):
    status_code = 500
    message = "Payment service is not configured"


class GatewayError(PaymentError):
    status_code = 500
    message = "Payment gateway request failed"

    def __init__(self, detail: str = "", *, message: str | None = None, code: str = "unknown", status: int | None = None):
        super().__init__(detail, message=message)
        self.code = code
        self.upstream_status = status
