"""Product catalog and the stock ledger."""

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .database import Database, ProductRow
from .errors import InsufficientStockError, ProductNotFoundError, ValidationError
from .models import Product, _utc_now, to_cents

logger = logging.getLogger(__name__)

# Fields an admin may edit directly. Stock is excluded: it moves only through
# reserve/release/adjust.
EDITABLE_FIELDS = ("name", "description", "price", "image_url", "supplier", "cost", "active")


class InventoryLedger:
    """Catalog lookups plus atomic stock reservation and release."""

    def __init__(self, db: Database):
        self.db = db

    # --- Catalog ---

    def create_product(
        self,
        name: str,
        price: Decimal,
        stock: int = 0,
        description: str | None = None,
        image_url: str | None = None,
        supplier: str | None = None,
        cost: Decimal | None = None,
        active: bool = True,
        session: Session | None = None,
    ) -> Product:
        """
        Add a product to the catalog.

        Raises:
            ValidationError: If price or stock is negative or name is blank.
        """
        if not name or not name.strip():
            raise ValidationError("Product name is required")
        if Decimal(str(price)) < 0:
            raise ValidationError("Price must not be negative")
        if stock < 0:
            raise ValidationError("Stock must not be negative")

        now = _utc_now()
        row = ProductRow(
            name=name.strip(),
            description=description,
            price_cents=to_cents(price),
            stock=stock,
            image_url=image_url,
            supplier=supplier,
            cost_cents=to_cents(cost) if cost is not None else None,
            active=active,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction(session) as s:
            s.add(row)
            s.flush()
            product = row.to_domain()

        logger.info("Created product %s (%s) with stock %d", product.id, product.name, stock)
        return product

    def _get_row(self, s: Session, product_id: int) -> ProductRow:
        row = s.get(ProductRow, product_id, populate_existing=True)
        if row is None:
            raise ProductNotFoundError(product_id)
        return row

    def get_product(self, product_id: int, session: Session | None = None) -> Product:
        """
        Get a product by ID.

        Raises:
            ProductNotFoundError: If product doesn't exist.
        """
        with self.db.transaction(session) as s:
            return self._get_row(s, product_id).to_domain()

    def list_products(
        self, include_inactive: bool = False, session: Session | None = None
    ) -> list[Product]:
        """
        List products.

        Args:
            include_inactive: If True, include deactivated products.
        """
        stmt = select(ProductRow).order_by(ProductRow.id)
        if not include_inactive:
            stmt = stmt.where(ProductRow.active.is_(True))
        with self.db.transaction(session) as s:
            return [row.to_domain() for row in s.scalars(stmt)]

    def update_product(
        self, product_id: int, changes: dict[str, Any], session: Session | None = None
    ) -> Product:
        """
        Update editable product fields.

        Existing orders keep the unit price captured when they were placed.

        Raises:
            ProductNotFoundError: If product doesn't exist.
            ValidationError: If an unknown or invalid field is given.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        with self.db.transaction(session) as s:
            row = self._get_row(s, product_id)
            for key, value in changes.items():
                if key == "price":
                    if value is None or Decimal(str(value)) < 0:
                        raise ValidationError("Price must not be negative")
                    row.price_cents = to_cents(value)
                elif key == "cost":
                    row.cost_cents = to_cents(value) if value is not None else None
                elif key == "name":
                    if not value or not str(value).strip():
                        raise ValidationError("Product name is required")
                    row.name = str(value).strip()
                elif key == "active":
                    if value is None:
                        raise ValidationError("Active must be true or false")
                    row.active = bool(value)
                else:
                    setattr(row, key, value)
            row.updated_at = _utc_now()
            s.flush()
            return row.to_domain()

    def deactivate_product(self, product_id: int, session: Session | None = None) -> Product:
        """Soft-delete a product. Products are never removed."""
        product = self.update_product(product_id, {"active": False}, session=session)
        logger.info("Deactivated product %s", product_id)
        return product

    # --- Ledger ---

    def reserve(self, product_id: int, quantity: int, session: Session | None = None) -> int:
        """
        Take quantity units out of available stock.

        The availability check and the decrement are a single conditional
        UPDATE, so two concurrent reservations can never both succeed against
        stock that only covers one of them.

        Returns:
            The new stock level.

        Raises:
            ValidationError: If quantity is less than 1.
            ProductNotFoundError: If product doesn't exist.
            InsufficientStockError: If available stock is below quantity.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        with self.db.transaction(session) as s:
            result = s.execute(
                update(ProductRow)
                .where(ProductRow.id == product_id, ProductRow.stock >= quantity)
                .values(stock=ProductRow.stock - quantity, updated_at=_utc_now())
                .execution_options(synchronize_session=False)
            )
            current = s.execute(
                select(ProductRow.stock, ProductRow.name).where(ProductRow.id == product_id)
            ).first()

            if current is None:
                raise ProductNotFoundError(product_id)
            if result.rowcount != 1:
                raise InsufficientStockError(product_id, quantity, current.stock, current.name)

            logger.debug("Reserved %d of product %s, %d left", quantity, product_id, current.stock)
            return current.stock

    def release(self, product_id: int, quantity: int, session: Session | None = None) -> int:
        """
        Return quantity units to available stock (inverse of reserve).

        Returns:
            The new stock level.

        Raises:
            ValidationError: If quantity is less than 1.
            ProductNotFoundError: If product doesn't exist.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")

        with self.db.transaction(session) as s:
            result = s.execute(
                update(ProductRow)
                .where(ProductRow.id == product_id)
                .values(stock=ProductRow.stock + quantity, updated_at=_utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ProductNotFoundError(product_id)

            stock = s.scalar(select(ProductRow.stock).where(ProductRow.id == product_id))
            logger.debug("Released %d of product %s, now %d", quantity, product_id, stock)
            return stock

    def adjust(self, product_id: int, delta: int, session: Session | None = None) -> int:
        """
        Apply a signed stock correction.

        Negative deltas go through reserve and so can't drive stock below zero.

        Returns:
            The new stock level.
        """
        if delta == 0:
            return self.get_product(product_id, session=session).stock
        if delta < 0:
            return self.reserve(product_id, -delta, session=session)
        return self.release(product_id, delta, session=session)
