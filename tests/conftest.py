import os
import tempfile
import threading
from decimal import Decimal

_db_dir = tempfile.mkdtemp(prefix="marketplace-orders-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_db_dir, 'orders.db')}")
os.environ.setdefault("GATEWAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("GATEWAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RUN_MIGRATIONS", "false")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest

from marketplace_orders.core_settings import get_settings
from marketplace_orders.domain.models import Base, Product, NotificationSettings
from marketplace_orders.infrastructure.db import engine, SessionLocal
from marketplace_orders.infrastructure.gateway import (
    GatewayIntent,
    GatewayPayment,
    GatewayRefund,
    compute_signature,
    signature_matches,
)
from marketplace_orders.infrastructure.locks import OrderLocks
from marketplace_orders.infrastructure.notifications import NotificationDispatcher, NotificationSettingsStore
from marketplace_orders.application.errors import GatewayUnavailable
from marketplace_orders.application.schemas import OrderCreate
from marketplace_orders.application.service import OrderLifecycleService

USER_ID = 42
VENDOR_ID = 7

SHIPPING_ADDRESS = {
    "street": "123 Main St",
    "city": "Mumbai",
    "state": "MH",
    "postalCode": "400001",
    "country": "India",
}

class FakeGateway:
    """In-memory stand-in for the payment gateway."""

    def __init__(self, key_id="rzp_test_key", key_secret="rzp_test_secret"):
        self.key_id = key_id
        self.key_secret = key_secret
        self.intents = []
        self.fetched = []
        self.refunds = []
        self.fail_create = False
        self.fail_fetch = False
        self.fail_refund = False
        self.payment_method = "upi"
        self._lock = threading.Lock()

    def create_intent(self, amount_minor, currency, receipt):
        if self.fail_create:
            raise GatewayUnavailable("gateway down")
        with self._lock:
            intent = GatewayIntent(
                gateway_order_id=f"order_test_{len(self.intents) + 1}",
                amount_minor=amount_minor,
                currency=currency,
                client_handle=self.key_id,
            )
            self.intents.append((amount_minor, currency, receipt))
        return intent

    def fetch_payment(self, gateway_payment_id):
        self.fetched.append(gateway_payment_id)
        if self.fail_fetch:
            raise GatewayUnavailable("gateway down")
        return GatewayPayment(gateway_payment_id=gateway_payment_id, method=self.payment_method, status="captured")

    def refund(self, gateway_payment_id, amount_minor, idempotency_key=None):
        if self.fail_refund:
            raise GatewayUnavailable("gateway down")
        self.refunds.append((gateway_payment_id, amount_minor, idempotency_key))
        return GatewayRefund(refund_id=f"rfnd_test_{len(self.refunds)}", amount_minor=amount_minor)

    def verify_signature(self, gateway_order_id, gateway_payment_id, signature):
        return signature_matches(gateway_order_id, gateway_payment_id, signature, self.key_secret)

    def sign(self, gateway_order_id, gateway_payment_id):
        return compute_signature(gateway_order_id, gateway_payment_id, self.key_secret)

    def close(self):
        pass

class RecordingNotifier:
    def __init__(self):
        self.pushed = []
        self.delivery_updates = []

    def push(self, user_id, payload):
        self.pushed.append((user_id, payload))

    def push_delivery_update(self, user_id, order_id, status, location):
        self.delivery_updates.append((user_id, order_id, status, location))

@pytest.fixture(autouse=True)
def database():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine

@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def gateway():
    return FakeGateway()

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture
def settings_store():
    return NotificationSettingsStore(SessionLocal, ttl=60)

@pytest.fixture
def dispatcher(notifier, settings_store):
    dispatcher = NotificationDispatcher(notifier, settings_store, maxsize=100)
    dispatcher.start()
    yield dispatcher
    dispatcher.stop()

@pytest.fixture
def locks():
    return OrderLocks(timeout=5)

@pytest.fixture
def service(db, gateway, dispatcher, locks):
    return OrderLifecycleService(db, gateway, dispatcher, locks, get_settings())

@pytest.fixture
def make_service(gateway, dispatcher, locks):
    """Services with their own sessions, for use from separate threads."""
    sessions = []

    def _make():
        session = SessionLocal()
        sessions.append(session)
        return OrderLifecycleService(session, gateway, dispatcher, locks, get_settings())
    yield _make
    for session in sessions:
        session.close()

@pytest.fixture
def make_product(db):
    def _make(price="500.00", stock=10, name="Brass Lamp"):
        product = Product(name=name, price=Decimal(price), stock=stock)
        db.add(product)
        db.commit()
        return product
    return _make

@pytest.fixture
def enable_push(db):
    def _enable(user_id=USER_ID):
        db.add(NotificationSettings(user_id=user_id, push_notifications=True, order_notifications=True))
        db.commit()
    return _enable

def order_request(*lines, vendor=VENDOR_ID):
    return OrderCreate.model_validate({
        "products": [{"productId": product_id, "quantity": quantity} for product_id, quantity in lines],
        "vendor": vendor,
        "shippingAddress": SHIPPING_ADDRESS,
    })

def stock_of(db, product_id):
    db.expire_all()
    return db.get(Product, product_id).stock
