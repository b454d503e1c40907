from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import USER_ID, VENDOR_ID, SHIPPING_ADDRESS
from marketplace_orders.domain.models import Order, OrderItem, Payment


def new_order(total="100.00"):
    return Order(
        user_id=USER_ID,
        vendor_id=VENDOR_ID,
        total_amount=Decimal(total),
        status="pending",
        shipping_address=SHIPPING_ADDRESS,
    )


def test_negative_order_total_is_refused(db):
    db.add(new_order(total="-1.00"))

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_zero_quantity_line_is_refused(db):
    order = new_order()
    order.items.append(OrderItem(product_id=1, quantity=0, unit_price=Decimal("100.00")))
    db.add(order)

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_refund_above_payment_amount_is_refused(db):
    order = new_order()
    db.add(order)
    db.flush()
    db.add(Payment(
        order_id=order.id,
        amount=Decimal("100.00"),
        currency="INR",
        gateway_order_id="order_test_1",
        status="refunded",
        refund_amount=Decimal("100.01"),
    ))

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
