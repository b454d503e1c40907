import pytest

from conftest import USER_ID, order_request
from marketplace_orders.application.errors import (
    NotFound,
    VerificationFailed,
    PaymentStateConflict,
    GatewayUnavailable,
    InvalidStatusTransition,
)
from marketplace_orders.application.schemas import PaymentVerify, StatusUpdate
from marketplace_orders.domain.models import Order


@pytest.fixture
def placed_order(service, make_product):
    product = make_product(price="500.00", stock=10)
    return service.create_order(USER_ID, order_request((product.id, 2)))


def verify_request(created, payment_id="pay_test_1", signature=None, gateway=None, gateway_order_id=None):
    gateway_order_id = gateway_order_id or created.gateway_order_id
    if signature is None:
        signature = gateway.sign(gateway_order_id, payment_id)
    return PaymentVerify(
        order_id=created.order_id,
        gateway_payment_id=payment_id,
        gateway_order_id=gateway_order_id,
        signature=signature,
    )


def test_valid_signature_captures_payment(service, gateway, placed_order):
    order, payment = service.verify_payment(verify_request(placed_order, gateway=gateway))

    assert order.status == "processing"
    assert payment.status == "captured"
    assert payment.payment_method == "upi"
    assert payment.gateway_payment_id == "pay_test_1"
    assert payment.attempts == 1
    assert payment.last_attempt_at is not None
    assert gateway.fetched == ["pay_test_1"]
    assert [(e.status, e.notes) for e in order.tracking_history][-1] == ("processing", "Payment successful")
    assert len(order.tracking_history) == 2


def test_invalid_signature_cancels_order_without_fetching(service, db, gateway, placed_order):
    request = verify_request(placed_order, signature="0" * 64)

    with pytest.raises(VerificationFailed):
        service.verify_payment(request)

    db.expire_all()
    order = db.get(Order, placed_order.order_id)
    assert order.status == "cancelled"
    assert order.payment.status == "failed"
    assert order.payment.attempts == 1
    assert order.payment.last_attempt_at is not None
    assert [(e.status, e.notes) for e in order.tracking_history][-1] == ("cancelled", "Payment verification failed")
    assert gateway.fetched == []


def test_signature_for_other_payment_is_rejected(service, gateway, placed_order):
    signature = gateway.sign(placed_order.gateway_order_id, "pay_someone_else")

    with pytest.raises(VerificationFailed):
        service.verify_payment(verify_request(placed_order, payment_id="pay_test_1", signature=signature))


def test_repeated_success_is_not_reapplied(service, db, gateway, placed_order):
    request = verify_request(placed_order, gateway=gateway)
    service.verify_payment(request)

    order, payment = service.verify_payment(request)

    assert order.status == "processing"
    assert payment.attempts == 1
    assert len(order.tracking_history) == 2
    assert gateway.fetched == ["pay_test_1"]


def test_repeated_failure_is_not_reapplied(service, db, gateway, placed_order):
    request = verify_request(placed_order, signature="bad")
    with pytest.raises(VerificationFailed):
        service.verify_payment(request)

    with pytest.raises(VerificationFailed):
        service.verify_payment(request)

    db.expire_all()
    order = db.get(Order, placed_order.order_id)
    assert order.payment.attempts == 1
    assert len(order.tracking_history) == 2


def test_failed_payment_cannot_be_captured_later(service, db, gateway, placed_order):
    with pytest.raises(VerificationFailed):
        service.verify_payment(verify_request(placed_order, signature="bad"))

    with pytest.raises(VerificationFailed):
        service.verify_payment(verify_request(placed_order, gateway=gateway))

    db.expire_all()
    assert db.get(Order, placed_order.order_id).status == "cancelled"
    assert gateway.fetched == []


def test_second_payment_for_settled_order_conflicts(service, gateway, placed_order):
    service.verify_payment(verify_request(placed_order, gateway=gateway))

    with pytest.raises(PaymentStateConflict):
        service.verify_payment(verify_request(placed_order, payment_id="pay_test_2", gateway=gateway))


def test_unknown_gateway_order_is_not_found(service, gateway, placed_order):
    with pytest.raises(NotFound):
        service.verify_payment(verify_request(placed_order, gateway=gateway, gateway_order_id="order_unknown"))


def test_payment_of_another_order_is_not_found(service, gateway, make_product):
    product = make_product(stock=10)
    first = service.create_order(USER_ID, order_request((product.id, 1)))
    second = service.create_order(USER_ID, order_request((product.id, 1)))

    request = PaymentVerify(
        order_id=first.order_id,
        gateway_payment_id="pay_test_1",
        gateway_order_id=second.gateway_order_id,
        signature=gateway.sign(second.gateway_order_id, "pay_test_1"),
    )
    with pytest.raises(NotFound):
        service.verify_payment(request)


def test_gateway_outage_during_fetch_changes_nothing(service, db, gateway, placed_order):
    gateway.fail_fetch = True

    with pytest.raises(GatewayUnavailable):
        service.verify_payment(verify_request(placed_order, gateway=gateway))

    db.rollback()
    db.expire_all()
    order = db.get(Order, placed_order.order_id)
    assert order.status == "pending"
    assert order.payment.status == "created"
    assert order.payment.attempts == 0
    assert len(order.tracking_history) == 1


def test_cancelled_order_cannot_be_paid(service, gateway, placed_order):
    service.update_status(StatusUpdate(order_id=placed_order.order_id, status="cancelled"))

    with pytest.raises(InvalidStatusTransition):
        service.verify_payment(verify_request(placed_order, gateway=gateway))
    assert gateway.fetched == []


def test_success_notifies_user(service, gateway, dispatcher, notifier, settings_store, placed_order, enable_push):
    dispatcher.drain()
    enable_push()
    settings_store.invalidate(USER_ID)

    service.verify_payment(verify_request(placed_order, gateway=gateway))
    dispatcher.drain()

    titles = [payload["title"] for _, payload in notifier.pushed]
    assert "Payment Successful" in titles
