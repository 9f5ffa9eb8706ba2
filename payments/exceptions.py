"""
Error taxonomy for the payment service.

Every error carries the HTTP status the API layer answers with and a
client-safe ``detail`` string, mirroring ``HTTPException``.
"""


class PaymentError(Exception):
    status_code = 500
    default_detail = "Payment service error"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(PaymentError):
    status_code = 400
    default_detail = "Invalid request"


class ConflictError(PaymentError):
    status_code = 409
    default_detail = "Conflict"


class NotFoundError(PaymentError):
    status_code = 404
    default_detail = "Payment not found"


class InvalidStateError(PaymentError):
    status_code = 400
    default_detail = "Payment is not in a valid state for this operation"


class GatewayError(PaymentError):
    """The payment gateway call failed (network, auth, rate limit, rejected request)."""

    status_code = 502
    default_detail = "Payment gateway error"

    def __init__(self, detail=None, status_code=None, retryable=True):
        super().__init__(detail)
        if status_code is not None:
            self.status_code = status_code
        self.retryable = retryable


class BadSignatureError(PaymentError):
    status_code = 400
    default_detail = "Invalid webhook signature"


class WebhookProcessingError(PaymentError):
    """Raised after a verified webhook failed to apply; the gateway will redeliver."""

    status_code = 500
    default_detail = "Webhook processing failed"
