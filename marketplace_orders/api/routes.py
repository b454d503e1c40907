from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from marketplace_orders.infrastructure.db import get_db
from marketplace_orders.application.service import OrderLifecycleService, NotificationSettingsService
from marketplace_orders.application.schemas import (
    OrderCreate,
    OrderCreated,
    OrderRead,
    PaymentVerify,
    PaymentVerified,
    PaymentRead,
    StatusUpdate,
    TrackingRead,
    RefundCreate,
    RefundProcessed,
    RefundRead,
    NotificationSettingsRead,
    NotificationSettingsUpdate,
)
from marketplace_orders.domain.status import OrderStatus

router = APIRouter(prefix="/orders", tags=["orders"])
notifications_router = APIRouter(tags=["notifications"])

def get_current_user_id(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    """Caller identity, set by the authenticating gateway in front of this service."""
    return x_user_id

def get_order_service(request: Request, db: Session = Depends(get_db)) -> OrderLifecycleService:
    state = request.app.state
    return OrderLifecycleService(db, state.gateway, state.dispatcher, state.order_locks, state.settings)

@router.post("", response_model=OrderCreated, status_code=201)
def create_order(payload: OrderCreate, user_id: int = Depends(get_current_user_id),
                 service: OrderLifecycleService = Depends(get_order_service)):
    return service.create_order(user_id, payload)

@router.post("/verify-payment", response_model=PaymentVerified)
def verify_payment(payload: PaymentVerify, service: OrderLifecycleService = Depends(get_order_service)):
    order, payment = service.verify_payment(payload)
    return PaymentVerified(
        message="Payment verified successfully",
        order=OrderRead.model_validate(order),
        payment=PaymentRead.model_validate(payment),
    )

@router.put("/status", response_model=OrderRead)
def update_order_status(payload: StatusUpdate, service: OrderLifecycleService = Depends(get_order_service)):
    return service.update_status(payload)

@router.get("/{order_id}/tracking", response_model=TrackingRead)
def get_order_tracking(order_id: int, service: OrderLifecycleService = Depends(get_order_service)):
    return service.get_tracking(order_id)

@router.get("", response_model=list[OrderRead])
def list_orders(
    status: Optional[OrderStatus] = Query(None),
    created_at_start: Optional[datetime] = Query(None, alias="createdAtStart"),
    created_at_end: Optional[datetime] = Query(None, alias="createdAtEnd"),
    amount_min: Optional[Decimal] = Query(None, alias="amountMin"),
    amount_max: Optional[Decimal] = Query(None, alias="amountMax"),
    user_id: int = Depends(get_current_user_id),
    service: OrderLifecycleService = Depends(get_order_service),
):
    """List the caller's orders, newest first."""
    return service.list_orders(
        user_id,
        status=status,
        created_at_start=created_at_start,
        created_at_end=created_at_end,
        amount_min=amount_min,
        amount_max=amount_max,
    )

@router.post("/refund", response_model=RefundProcessed)
def refund_payment(payload: RefundCreate, service: OrderLifecycleService = Depends(get_order_service)):
    refund = service.refund(payload)
    return RefundProcessed(message="Refund processed successfully", refund=RefundRead.model_validate(refund))

@notifications_router.get("/notifications/settings", response_model=NotificationSettingsRead)
def get_notification_settings(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return NotificationSettingsService(db).get(user_id)

@notifications_router.put("/notifications/settings", response_model=NotificationSettingsRead)
def update_notification_settings(
    payload: NotificationSettingsUpdate,
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return NotificationSettingsService(db, request.app.state.settings_store).update(user_id, payload)

@notifications_router.websocket("/ws/notifications/{user_id}")
async def notifications_websocket(websocket: WebSocket, user_id: int):
    """Push channel for order notifications and delivery updates"""
    notifier = websocket.app.state.notifier
    await notifier.connect(user_id, websocket)
    try:
        while True:
            # Client messages are only keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        notifier.disconnect(user_id, websocket)
