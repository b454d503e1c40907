from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, List

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from marketplace_orders.core_settings import get_settings
from marketplace_orders.domain.models import Order, OrderItem, Payment, TrackingEntry, NotificationSettings
from marketplace_orders.domain.status import (
    OrderStatus,
    PaymentStatus,
    can_transition,
    is_compatible,
    is_terminal,
)
from marketplace_orders.infrastructure.catalog import Catalog
from marketplace_orders.infrastructure.gateway import to_minor_units
from marketplace_orders.infrastructure.ledger import LedgerStore, UserProfiles
from marketplace_orders.infrastructure.notifications import OrderEvent
from shared.core import get_logger, set_request_context
from .errors import (
    ConcurrentModification,
    InsufficientStock,
    InvalidRefundAmount,
    InvalidStatusTransition,
    NotFound,
    PaymentStateConflict,
    VerificationFailed,
)
from .schemas import (
    OrderCreate,
    PaymentVerify,
    StatusUpdate,
    RefundCreate,
    TrackingRead,
    NotificationSettingsUpdate,
)

logger = get_logger(__name__)

_CENT = Decimal("0.01")

def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

@dataclass(frozen=True)
class CreatedOrder:
    order_id: int
    gateway_order_id: str
    amount: Decimal
    gateway_key: str

@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    order_id: int
    payment_id: int
    amount: Decimal
    currency: str
    status: str

class OrderLifecycleService:
    """Places orders, settles their payments and moves them through fulfillment.

    The gateway client, notification dispatcher and order locks live for the
    whole process and are shared; the session belongs to one request.
    """

    def __init__(self, db: Session, gateway, dispatcher, locks, settings=None):
        self.db = db
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.locks = locks
        self.settings = settings or get_settings()
        self.catalog = Catalog(db)
        self.ledger = LedgerStore(db)
        self.profiles = UserProfiles(db)

    # -- creation --------------------------------------------------------

    def create_order(self, user_id: int, data: OrderCreate) -> CreatedOrder:
        """Reserve stock, record the order and open a gateway intent in one transaction.

        Any failure rolls back every reservation made for the order, so stock
        is only consumed by orders that also have a payment.
        """
        try:
            order = self._reserve_and_record(user_id, data)
            intent = self.gateway.create_intent(
                to_minor_units(order.total_amount),
                self.settings.GATEWAY_CURRENCY,
                receipt=str(order.id),
            )
            payment = Payment(
                order_id=order.id,
                amount=order.total_amount,
                currency=intent.currency,
                gateway_order_id=intent.gateway_order_id,
                status=PaymentStatus.CREATED.value,
                attempts=0,
            )
            order.payment = payment
            self.ledger.add(payment)
            self.profiles.append_purchase(user_id, order.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        set_request_context(order_id=str(order.id))
        logger.info(
            f"Order {order.id} created",
            extra={'extra_fields': {
                'order_id': order.id,
                'user_id': user_id,
                'total_amount': str(order.total_amount),
                'gateway_order_id': intent.gateway_order_id,
            }}
        )
        self._publish(OrderEvent(
            user_id=user_id,
            title="Order Created",
            message=f"Your order #{order.id} has been created. Amount: {payment.currency} {order.total_amount}",
            delivery_status=OrderStatus.PENDING.value,
            order_id=order.id,
        ))
        return CreatedOrder(
            order_id=order.id,
            gateway_order_id=intent.gateway_order_id,
            amount=order.total_amount,
            gateway_key=intent.client_handle,
        )

    def _reserve_and_record(self, user_id: int, data: OrderCreate) -> Order:
        total = Decimal("0")
        items = []
        for line in data.products:
            product = self.catalog.get(line.product_id)
            if product is None:
                raise NotFound(f"Product {line.product_id} not found")
            if product.stock < line.quantity:
                raise InsufficientStock(f"Product {product.name} unavailable", product_id=product.id)
            # Another checkout may have taken the stock since the read above
            if not self.catalog.decrement_stock(product.id, line.quantity):
                raise InsufficientStock(f"Product {product.name} unavailable", product_id=product.id)
            total += product.price * line.quantity
            items.append(OrderItem(
                product_id=product.id,
                quantity=line.quantity,
                unit_price=product.price,
                product_name_snapshot=product.name,
            ))

        now = datetime.utcnow()
        order = Order(
            user_id=user_id,
            vendor_id=data.vendor,
            total_amount=total,
            status=OrderStatus.PENDING.value,
            shipping_address=data.shipping_address.model_dump(),
            estimated_delivery=now + timedelta(days=self.settings.ESTIMATED_DELIVERY_DAYS),
            created_at=now,
            updated_at=now,
            items=items,
            tracking_history=[TrackingEntry(status=OrderStatus.PENDING.value, notes="Order created", timestamp=now)],
        )
        self.ledger.add(order)
        self.db.flush()  # assign id
        return order

    # -- payment verification -------------------------------------------

    def verify_payment(self, data: PaymentVerify):
        """Check the gateway's callback signature and settle or cancel the order.

        Returns ``(order, payment)``. A callback that was already processed is
        answered from the stored state without touching it again.
        """
        with self.locks.hold(data.order_id):
            payment = self.ledger.get_payment_by_gateway_order(data.gateway_order_id, for_update=True)
            if payment is None:
                raise NotFound("Payment not found")
            order = self.ledger.get_order_for_update(data.order_id)
            if order is None:
                raise NotFound("Order not found")
            if payment.order_id != order.id:
                raise NotFound(f"Payment not found for order {order.id}")

            if self._already_settled(payment, data.gateway_payment_id):
                return order, payment
            if order.status != OrderStatus.PENDING.value:
                raise InvalidStatusTransition(
                    f"Order {order.id} is {order.status}; payment can only settle a pending order"
                )

            now = datetime.utcnow()
            if not self.gateway.verify_signature(data.gateway_order_id, data.gateway_payment_id, data.signature):
                payment.status = PaymentStatus.FAILED.value
                payment.attempts += 1
                payment.last_attempt_at = now
                order.status = OrderStatus.CANCELLED.value
                self._append_tracking(order, OrderStatus.CANCELLED, "Payment verification failed", now=now)
                self._commit()
                logger.warning(
                    f"Payment signature mismatch for order {order.id}",
                    extra={'extra_fields': {
                        'order_id': order.id,
                        'gateway_order_id': data.gateway_order_id,
                        'attempts': payment.attempts,
                    }}
                )
                raise VerificationFailed("Invalid payment signature")

            details = self.gateway.fetch_payment(data.gateway_payment_id)

            payment.gateway_payment_id = data.gateway_payment_id
            payment.gateway_signature = data.signature
            payment.status = PaymentStatus.CAPTURED.value
            payment.payment_method = details.method
            payment.attempts += 1
            payment.last_attempt_at = now
            order.status = OrderStatus.PROCESSING.value
            self._append_tracking(order, OrderStatus.PROCESSING, "Payment successful", now=now)
            self._commit()

        logger.info(
            f"Payment captured for order {order.id}",
            extra={'extra_fields': {'order_id': order.id, 'payment_method': details.method}}
        )
        self._publish(OrderEvent(
            user_id=order.user_id,
            title="Payment Successful",
            message=f"Payment for order #{order.id} was successful. Amount: {payment.currency} {payment.amount}",
            delivery_status=OrderStatus.PROCESSING.value,
            order_id=order.id,
        ))
        return order, payment

    def _already_settled(self, payment: Payment, gateway_payment_id: str) -> bool:
        if payment.status in (PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value):
            if payment.gateway_payment_id == gateway_payment_id:
                logger.info(f"Payment {payment.id} already {payment.status}, ignoring repeated verification")
                return True
            raise PaymentStateConflict(f"Payment for order {payment.order_id} was already settled by another payment")
        if payment.status == PaymentStatus.FAILED.value:
            raise VerificationFailed(f"Payment verification for order {payment.order_id} already failed")
        return False

    # -- status / tracking ----------------------------------------------

    def update_status(self, data: StatusUpdate) -> Order:
        with self.locks.hold(data.order_id):
            order = self.ledger.get_order_for_update(data.order_id)
            if order is None:
                raise NotFound("Order not found")

            current = OrderStatus(order.status)
            if is_terminal(current):
                raise InvalidStatusTransition(f"Order {order.id} is {current.value} and can no longer change")
            target = OrderStatus(data.status) if data.status is not None else current
            if target != current and not can_transition(current, target):
                raise InvalidStatusTransition(f"Cannot move order {order.id} from {current.value} to {target.value}")
            if not is_compatible(order.payment_status, target):
                raise InvalidStatusTransition(
                    f"Order {order.id} cannot be {target.value} while its payment is {order.payment_status}"
                )

            now = datetime.utcnow()
            order.status = target.value
            if data.tracking_number:
                order.tracking_number = data.tracking_number
            if data.estimated_delivery:
                order.estimated_delivery = _naive_utc(data.estimated_delivery)
            if target == OrderStatus.DELIVERED:
                order.actual_delivery = now

            location = None
            if data.latitude is not None and data.longitude is not None:
                location = {
                    "latitude": data.latitude,
                    "longitude": data.longitude,
                    "address": data.address or (order.shipping_address or {}).get("street"),
                }
            notes = data.notes or f"Status updated to {target.value}"
            self._append_tracking(order, target, notes, location=location, now=now)
            self._commit()

        logger.info(
            f"Order {order.id} status {current.value} -> {target.value}",
            extra={'extra_fields': {'order_id': order.id, 'tracking_number': order.tracking_number}}
        )
        self._publish(OrderEvent(
            user_id=order.user_id,
            title="Order Update",
            message=f"Order #{order.id} is now {target.value}.",
            delivery_status=target.value,
            order_id=order.id,
            location=location,
        ))
        return order

    # -- refunds -----------------------------------------------------------

    def refund(self, data: RefundCreate) -> RefundResult:
        with self.locks.hold(data.order_id):
            order = self.ledger.get_order_for_update(data.order_id)
            payment = self.ledger.get_payment_for_order(data.order_id, for_update=True) if order else None
            if order is None or payment is None:
                raise NotFound("Order or payment not found")
            if payment.status != PaymentStatus.CAPTURED.value:
                raise PaymentStateConflict(
                    f"Payment for order {order.id} is {payment.status}; only captured payments can be refunded"
                )

            amount = payment.amount if data.amount is None else Decimal(data.amount)
            minor = to_minor_units(amount)
            # The gateway only moves whole minor units (paise)
            if Decimal(minor) / 100 != amount:
                raise InvalidRefundAmount(f"Refund amount {amount} has more than two decimal places")
            if minor <= 0 or amount > payment.amount:
                raise InvalidRefundAmount(f"Refund amount must be greater than 0 and at most {payment.amount}")
            amount = amount.quantize(_CENT)

            # A cancelled order keeps its status; anything else becomes returned
            target = OrderStatus.CANCELLED if order.status == OrderStatus.CANCELLED.value else OrderStatus.RETURNED

            refund = self.gateway.refund(
                payment.gateway_payment_id,
                minor,
                idempotency_key=f"refund-{payment.id}",
            )

            payment.status = PaymentStatus.REFUNDED.value
            payment.refund_id = refund.refund_id
            payment.refund_amount = amount
            order.status = target.value
            self._append_tracking(order, target, f"Refunded amount: {amount}")
            try:
                self._commit()
            except Exception:
                logger.error(
                    f"Refund {refund.refund_id} accepted by gateway but not recorded for order {order.id}",
                    exc_info=True,
                    extra={'extra_fields': {'order_id': order.id, 'refund_id': refund.refund_id}}
                )
                raise

        logger.info(
            f"Refund processed for order {order.id}",
            extra={'extra_fields': {'order_id': order.id, 'refund_id': refund.refund_id, 'amount': str(amount)}}
        )
        self._publish(OrderEvent(
            user_id=order.user_id,
            title="Refund Processed",
            message=f"Refund of {payment.currency} {amount} processed for order #{order.id}",
            delivery_status=target.value,
            order_id=order.id,
        ))
        return RefundResult(
            refund_id=refund.refund_id,
            order_id=order.id,
            payment_id=payment.id,
            amount=amount,
            currency=payment.currency,
            status=payment.status,
        )

    # -- reads -----------------------------------------------------------

    def get(self, order_id: int) -> Order:
        order = self.ledger.get_order(order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    def get_tracking(self, order_id: int) -> TrackingRead:
        order = self.get(order_id)
        return TrackingRead.model_validate({
            "order_id": order.id,
            "status": order.status,
            "tracking_number": order.tracking_number,
            "tracking_history": order.tracking_history,
            "payment_status": order.payment_status,
            "estimated_delivery": order.estimated_delivery,
            "actual_delivery": order.actual_delivery,
            "shipping_address": order.shipping_address,
        }, from_attributes=True)

    def list_orders(
        self,
        user_id: int,
        status: Optional[OrderStatus] = None,
        created_at_start: Optional[datetime] = None,
        created_at_end: Optional[datetime] = None,
        amount_min: Optional[Decimal] = None,
        amount_max: Optional[Decimal] = None,
    ) -> List[Order]:
        return self.ledger.list_orders(
            user_id,
            status=OrderStatus(status).value if status else None,
            created_at_start=_naive_utc(created_at_start),
            created_at_end=_naive_utc(created_at_end),
            amount_min=amount_min,
            amount_max=amount_max,
        )

    # -- helpers ---------------------------------------------------------

    def _append_tracking(self, order: Order, status: OrderStatus, notes: str,
                         location: Optional[dict] = None, now: Optional[datetime] = None) -> TrackingEntry:
        if not is_compatible(order.payment_status, status):
            raise InvalidStatusTransition(
                f"Order {order.id} cannot be {status.value} while its payment is {order.payment_status}"
            )
        entry = TrackingEntry(status=status.value, notes=notes, timestamp=now or datetime.utcnow())
        if location:
            entry.latitude = location["latitude"]
            entry.longitude = location["longitude"]
            entry.address = location.get("address")
        order.tracking_history.append(entry)
        return entry

    def _commit(self):
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConcurrentModification("Order was modified concurrently, retry the request") from e

    def _publish(self, event: OrderEvent):
        if self.dispatcher is None:
            return
        self.dispatcher.publish(event)

class NotificationSettingsService:
    def __init__(self, db: Session, settings_store=None):
        self.db = db
        self.settings_store = settings_store

    def get(self, user_id: int) -> NotificationSettings:
        settings = self.db.get(NotificationSettings, user_id)
        if settings is None:
            settings = NotificationSettings(
                user_id=user_id,
                email_notifications=True,
                sms_notifications=False,
                push_notifications=False,
                order_notifications=True,
            )
        return settings

    def update(self, user_id: int, data: NotificationSettingsUpdate) -> NotificationSettings:
        settings = self.db.get(NotificationSettings, user_id)
        if settings is None:
            settings = self.get(user_id)
            self.db.add(settings)
        for key, value in data.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(settings, key, value)
        self.db.commit()
        self.db.refresh(settings)
        if self.settings_store is not None:
            self.settings_store.invalidate(user_id)
        return settings
