from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, ForeignKey, Numeric, DateTime, Integer, Boolean, Float, JSON, Text, CheckConstraint
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .status import OrderStatus, PaymentStatus

class Base(DeclarativeBase):
    pass

class Product(Base):
    """Catalog entry. Owned by the catalog; orders only read price and reserve stock."""
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    stock: Mapped[int] = mapped_column(Integer, default=0)
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    # User and vendor live in other services (no FK)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    vendor_id: Mapped[int] = mapped_column(Integer, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value, index=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_address: Mapped[dict] = mapped_column(JSON)
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    actual_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    tracking_history: Mapped[list["TrackingEntry"]] = relationship(
        "TrackingEntry", back_populates="order", cascade="all, delete-orphan", order_by="TrackingEntry.id"
    )
    payment: Mapped[Optional["Payment"]] = relationship("Payment", back_populates="order", uselist=False)

    __table_args__ = (CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),)
    __mapper_args__ = {"version_id_col": version}

    @property
    def payment_status(self) -> Optional[str]:
        return self.payment.status if self.payment else None

class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    product_id: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int] = mapped_column(Integer)
    # Price and name captured when the order was placed
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    product_name_snapshot: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    order: Mapped[Order] = relationship("Order", back_populates="items")
    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),)

class TrackingEntry(Base):
    __tablename__ = "tracking_entries"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    status: Mapped[str] = mapped_column(String(30))
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order: Mapped[Order] = relationship("Order", back_populates="tracking_history")

    @property
    def location(self) -> Optional[dict]:
        if self.latitude is None or self.longitude is None:
            return None
        return {"latitude": self.latitude, "longitude": self.longitude, "address": self.address}

class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    gateway_order_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.CREATED.value)
    payment_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    order: Mapped[Order] = relationship("Order", back_populates="payment")

    __table_args__ = (
        CheckConstraint("refund_amount IS NULL OR refund_amount <= amount", name="ck_payments_refund_within_amount"),
    )
    __mapper_args__ = {"version_id_col": version}

class NotificationSettings(Base):
    __tablename__ = "notification_settings"
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    sms_notifications: Mapped[bool] = mapped_column(Boolean, default=False)
    push_notifications: Mapped[bool] = mapped_column(Boolean, default=False)
    order_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class UserPurchase(Base):
    __tablename__ = "user_purchases"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
