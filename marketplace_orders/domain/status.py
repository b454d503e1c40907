"""Order and payment status lifecycle.

Order status follows the fulfillment pipeline, payment status follows the
financial instrument. ``ORDER_TRANSITIONS`` lists every legal order edge and
``PAYMENT_ORDER_STATES`` lists which order statuses may coexist with each
payment status.
"""

from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    FAILED = "failed"
    CAPTURED = "captured"
    REFUNDED = "refunded"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURNED,
})

_FORWARD_EDGES = {
    OrderStatus.PENDING: OrderStatus.PROCESSING,
    OrderStatus.PROCESSING: OrderStatus.SHIPPED,
    OrderStatus.SHIPPED: OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.OUT_FOR_DELIVERY: OrderStatus.DELIVERED,
}

ORDER_TRANSITIONS = {
    status: (
        frozenset()
        if status in TERMINAL_ORDER_STATUSES
        else frozenset({_FORWARD_EDGES[status], OrderStatus.CANCELLED, OrderStatus.RETURNED})
    )
    for status in OrderStatus
}

PAYMENT_ORDER_STATES = {
    PaymentStatus.CREATED: frozenset({OrderStatus.PENDING, OrderStatus.CANCELLED}),
    PaymentStatus.AUTHORIZED: frozenset({OrderStatus.PENDING}),
    PaymentStatus.FAILED: frozenset({OrderStatus.CANCELLED}),
    PaymentStatus.CAPTURED: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.RETURNED,
    }),
    PaymentStatus.REFUNDED: frozenset({OrderStatus.RETURNED, OrderStatus.CANCELLED}),
}


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_ORDER_STATUSES


def can_transition(current, target) -> bool:
    """True when ``current -> target`` is an edge of the lifecycle."""
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]


def is_compatible(payment_status: Optional[str], order_status) -> bool:
    # Orders without a payment row only exist mid-creation
    if payment_status is None:
        return True
    return OrderStatus(order_status) in PAYMENT_ORDER_STATES[PaymentStatus(payment_status)]
