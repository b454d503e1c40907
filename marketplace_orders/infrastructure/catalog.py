from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace_orders.domain.models import Product


@dataclass(frozen=True)
class ProductSnapshot:
    id: int
    name: str
    price: Decimal
    stock: int


class Catalog:
    """Read prices and reserve stock in the product catalog.

    Reservations run inside the caller's transaction, so rolling the session
    back releases every unit reserved through it.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, product_id: int) -> Optional[ProductSnapshot]:
        row = self.db.execute(
            select(Product.id, Product.name, Product.price, Product.stock).where(Product.id == product_id)
        ).first()
        if row is None:
            return None
        return ProductSnapshot(id=row.id, name=row.name, price=Decimal(row.price), stock=row.stock)

    def decrement_stock(self, product_id: int, quantity: int) -> bool:
        """Take ``quantity`` units if that many are available.

        Returns False, leaving stock untouched, when fewer remain.
        """
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
