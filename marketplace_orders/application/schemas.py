from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from decimal import Decimal
from typing import Optional

from marketplace_orders.domain.status import OrderStatus, PaymentStatus

class ApiModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

class ShippingAddress(ApiModel):
    street: str
    city: str
    state: str
    postal_code: str
    country: str

class LineItemCreate(ApiModel):
    product_id: int
    quantity: int = Field(ge=1)

class OrderCreate(ApiModel):
    products: list[LineItemCreate] = Field(min_length=1)
    vendor: int
    shipping_address: ShippingAddress

class OrderCreated(ApiModel):
    order_id: int
    gateway_order_id: str
    amount: Decimal
    gateway_key: str

class PaymentVerify(ApiModel):
    order_id: int
    gateway_payment_id: str = Field(min_length=1)
    gateway_order_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)

class StatusUpdate(ApiModel):
    order_id: int
    status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    address: Optional[str] = None
    notes: Optional[str] = None
    estimated_delivery: Optional[datetime] = None

class RefundCreate(ApiModel):
    order_id: int
    amount: Optional[Decimal] = None

class Location(ApiModel):
    latitude: float
    longitude: float
    address: Optional[str] = None

class TrackingEntryRead(ApiModel):
    status: OrderStatus
    location: Optional[Location] = None
    timestamp: datetime
    notes: Optional[str] = None

class OrderItemRead(ApiModel):
    product_id: int
    quantity: int
    unit_price: Decimal
    product_name_snapshot: Optional[str] = None

class PaymentRead(ApiModel):
    id: int
    order_id: int
    amount: Decimal
    currency: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    status: PaymentStatus
    payment_method: Optional[str] = None
    attempts: int
    last_attempt_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None

class OrderRead(ApiModel):
    id: int
    user_id: int
    vendor_id: int
    items: list[OrderItemRead]
    total_amount: Decimal
    status: OrderStatus
    payment_status: Optional[PaymentStatus] = None
    tracking_number: Optional[str] = None
    tracking_history: list[TrackingEntryRead]
    shipping_address: ShippingAddress
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

class PaymentVerified(ApiModel):
    message: str
    order: OrderRead
    payment: PaymentRead

class TrackingRead(ApiModel):
    order_id: int
    status: OrderStatus
    tracking_number: Optional[str] = None
    tracking_history: list[TrackingEntryRead]
    payment_status: Optional[PaymentStatus] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    shipping_address: ShippingAddress

class RefundRead(ApiModel):
    refund_id: str
    order_id: int
    payment_id: int
    amount: Decimal
    currency: str
    status: PaymentStatus

class RefundProcessed(ApiModel):
    message: str
    refund: RefundRead

class NotificationSettingsRead(ApiModel):
    user_id: int
    email_notifications: bool
    sms_notifications: bool
    push_notifications: bool
    order_notifications: bool

class NotificationSettingsUpdate(ApiModel):
    email_notifications: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    order_notifications: Optional[bool] = None
