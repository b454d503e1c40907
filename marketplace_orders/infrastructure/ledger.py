from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from marketplace_orders.domain.models import Order, Payment, UserPurchase

class LedgerStore:
    """Durable reads and writes of Order and Payment records."""

    def __init__(self, db: Session):
        self.db = db

    def _order_query(self):
        return select(Order).options(
            selectinload(Order.items),
            selectinload(Order.tracking_history),
            selectinload(Order.payment),
        )

    def get_order(self, order_id: int) -> Optional[Order]:
        return self.db.execute(self._order_query().where(Order.id == order_id)).scalars().first()

    def get_order_for_update(self, order_id: int) -> Optional[Order]:
        # FOR UPDATE is dropped by dialects without row locks (SQLite)
        stmt = self._order_query().where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalars().first()

    def get_payment_by_gateway_order(self, gateway_order_id: str, for_update: bool = False) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.gateway_order_id == gateway_order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalars().first()

    def get_payment_for_order(self, order_id: int, for_update: bool = False) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalars().first()

    def add(self, obj):
        self.db.add(obj)
        return obj

    def list_orders(
        self,
        user_id: int,
        status: Optional[str] = None,
        created_at_start: Optional[datetime] = None,
        created_at_end: Optional[datetime] = None,
        amount_min: Optional[Decimal] = None,
        amount_max: Optional[Decimal] = None,
    ) -> List[Order]:
        stmt = self._order_query().where(Order.user_id == user_id)
        if status:
            stmt = stmt.where(Order.status == status)
        if created_at_start is not None:
            stmt = stmt.where(Order.created_at >= created_at_start)
        if created_at_end is not None:
            stmt = stmt.where(Order.created_at <= created_at_end)
        if amount_min is not None:
            stmt = stmt.where(Order.total_amount >= amount_min)
        if amount_max is not None:
            stmt = stmt.where(Order.total_amount <= amount_max)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
        return list(self.db.execute(stmt).scalars().all())

class UserProfiles:
    def __init__(self, db: Session):
        self.db = db

    def append_purchase(self, user_id: int, order_id: int) -> UserPurchase:
        purchase = UserPurchase(user_id=user_id, order_id=order_id)
        self.db.add(purchase)
        return purchase

    def purchase_history(self, user_id: int) -> List[int]:
        stmt = select(UserPurchase.order_id).where(UserPurchase.user_id == user_id).order_by(UserPurchase.id)
        return list(self.db.execute(stmt).scalars().all())
