"""Domain errors raised by the order lifecycle engine.

Each error carries the HTTP status the API answers with, a stable ``code``
for clients, and whether retrying the same request may succeed.
"""

from typing import Optional


class OrderServiceError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFound(OrderServiceError):
    status_code = 404
    code = "not_found"


class InsufficientStock(OrderServiceError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, message: str, *, product_id: Optional[int] = None):
        super().__init__(message)
        self.product_id = product_id


class VerificationFailed(OrderServiceError):
    status_code = 400
    code = "verification_failed"


class InvalidStatusTransition(OrderServiceError):
    status_code = 409
    code = "invalid_status_transition"


class InvalidRefundAmount(OrderServiceError):
    status_code = 400
    code = "invalid_refund_amount"


class PaymentStateConflict(OrderServiceError):
    status_code = 409
    code = "payment_state_conflict"


class ConcurrentModification(OrderServiceError):
    status_code = 409
    code = "concurrent_modification"
    retryable = True


class GatewayError(OrderServiceError):
    """The payment gateway rejected the request."""
    status_code = 502
    code = "gateway_error"


class GatewayUnavailable(GatewayError):
    """The payment gateway could not be reached or failed on its side."""
    status_code = 503
    code = "gateway_unavailable"
    retryable = True
