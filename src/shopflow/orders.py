"""Order aggregate: creation with stock reservation, status updates, cancellation."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .database import Database, OrderItemRow, OrderRow
from .errors import InvalidTransitionError, OrderNotFoundError, ValidationError
from .inventory import InventoryLedger
from .models import (
    FulfillmentStatus,
    Order,
    PaymentStatus,
    _utc_now,
    can_transition_fulfillment,
    parse_enum,
    to_cents,
    to_money,
)

logger = logging.getLogger(__name__)


@dataclass
class OrderLine:
    """A requested line item before prices are captured."""

    product_id: int
    quantity: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderLine":
        return cls(product_id=int(data["product_id"]), quantity=int(data["quantity"]))


class OrderStore:
    """Creates and mutates orders, delegating stock movements to the ledger."""

    def __init__(self, db: Database, inventory: InventoryLedger):
        self.db = db
        self.inventory = inventory

    def _get_row(self, s: Session, order_id: int) -> OrderRow:
        row = s.get(
            OrderRow,
            order_id,
            options=[selectinload(OrderRow.items)],
            populate_existing=True,
        )
        if row is None:
            raise OrderNotFoundError(order_id)
        return row

    def create(
        self,
        customer_id: int,
        lines: list[OrderLine],
        payment_method: str,
        address: str,
        phone: str,
        session: Session | None = None,
    ) -> Order:
        """
        Create an order, reserving stock for every line.

        All reservations and the order rows commit together; if any line fails
        (unknown product, inactive product, insufficient stock) nothing is kept.

        Raises:
            ValidationError: If input is incomplete or a product can't be ordered.
            ProductNotFoundError: If a line references an unknown product.
            InsufficientStockError: If a line asks for more than is available.
        """
        if not lines:
            raise ValidationError("An order needs at least one line item")
        if not payment_method:
            raise ValidationError("Payment method is required")
        if not address or not address.strip():
            raise ValidationError("Shipping address is required")
        if not phone or not phone.strip():
            raise ValidationError("Phone is required")
        for line in lines:
            if line.quantity < 1:
                raise ValidationError(
                    f"Quantity for product {line.product_id} must be at least 1"
                )

        with self.db.transaction(session) as s:
            total = Decimal("0.00")
            item_rows = []
            for line in lines:
                product = self.inventory.get_product(line.product_id, session=s)
                if not product.active:
                    raise ValidationError(f"Product {product.id} ({product.name}) is not available")

                self.inventory.reserve(line.product_id, line.quantity, session=s)

                item_rows.append(
                    OrderItemRow(
                        product_id=product.id,
                        quantity=line.quantity,
                        unit_price_cents=to_cents(product.price),
                    )
                )
                total += product.price * line.quantity

            now = _utc_now()
            row = OrderRow(
                customer_id=customer_id,
                total_cents=to_cents(to_money(total)),
                fulfillment_status=FulfillmentStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                payment_method=payment_method,
                address=address.strip(),
                phone=phone.strip(),
                created_at=now,
                updated_at=now,
                items=item_rows,
            )
            s.add(row)
            s.flush()
            order = row.to_domain()

        logger.info(
            "Order %s created for customer %s: %d line(s), total %s",
            order.id, customer_id, len(order.items), order.total,
        )
        return order

    def get(self, order_id: int, session: Session | None = None) -> Order:
        """
        Get an order by ID.

        Raises:
            OrderNotFoundError: If order doesn't exist.
        """
        with self.db.transaction(session) as s:
            return self._get_row(s, order_id).to_domain()

    def list_for_customer(self, customer_id: int, session: Session | None = None) -> list[Order]:
        """List a customer's orders, newest first."""
        stmt = (
            select(OrderRow)
            .where(OrderRow.customer_id == customer_id)
            .options(selectinload(OrderRow.items))
            .order_by(OrderRow.id.desc())
        )
        with self.db.transaction(session) as s:
            return [row.to_domain() for row in s.scalars(stmt)]

    def list_all(self, session: Session | None = None) -> list[Order]:
        """List every order, newest first."""
        stmt = select(OrderRow).options(selectinload(OrderRow.items)).order_by(OrderRow.id.desc())
        with self.db.transaction(session) as s:
            return [row.to_domain() for row in s.scalars(stmt)]

    def update_fulfillment_status(
        self,
        order_id: int,
        new_status: FulfillmentStatus | str,
        session: Session | None = None,
    ) -> Order:
        """
        Move an order forward through fulfillment.

        Moving to CANCELLED goes through cancel() so reserved stock is released.

        Raises:
            OrderNotFoundError: If order doesn't exist.
            InvalidStatusError: If new_status isn't a fulfillment status.
            InvalidTransitionError: If the move isn't allowed from the current status.
        """
        target = parse_enum(FulfillmentStatus, new_status)
        if target == FulfillmentStatus.CANCELLED:
            return self.cancel(order_id, session=session)

        with self.db.transaction(session) as s:
            row = self._get_row(s, order_id)
            current = FulfillmentStatus(row.fulfillment_status)
            if not can_transition_fulfillment(current, target):
                logger.warning(
                    "Rejected fulfillment move for order %s: %s -> %s",
                    order_id, current.value, target.value,
                )
                raise InvalidTransitionError("order", order_id, current.value, target.value)

            row.fulfillment_status = target.value
            row.updated_at = _utc_now()
            s.flush()
            return row.to_domain()

    def update_payment_status(
        self,
        order_id: int,
        new_status: PaymentStatus | str,
        session: Session | None = None,
    ) -> Order:
        """
        Set an order's payment status.

        A COMPLETED payment on a PENDING order advances fulfillment to PROCESSING.

        Raises:
            OrderNotFoundError: If order doesn't exist.
            InvalidStatusError: If new_status isn't a payment status.
            InvalidTransitionError: If a cancelled order is marked COMPLETED.
        """
        target = parse_enum(PaymentStatus, new_status)

        with self.db.transaction(session) as s:
            row = self._get_row(s, order_id)
            if (
                target == PaymentStatus.COMPLETED
                and row.fulfillment_status == FulfillmentStatus.CANCELLED.value
            ):
                raise InvalidTransitionError(
                    "order", order_id, row.fulfillment_status, PaymentStatus.COMPLETED.value
                )
            row.payment_status = target.value
            if (
                target == PaymentStatus.COMPLETED
                and row.fulfillment_status == FulfillmentStatus.PENDING.value
            ):
                row.fulfillment_status = FulfillmentStatus.PROCESSING.value
            row.updated_at = _utc_now()
            s.flush()
            return row.to_domain()

    def cancel(self, order_id: int, session: Session | None = None) -> Order:
        """
        Cancel an order and give its reserved stock back.

        Every release and the status change commit together.

        Raises:
            OrderNotFoundError: If order doesn't exist.
            InvalidTransitionError: If the order is shipped, delivered or already cancelled.
        """
        with self.db.transaction(session) as s:
            row = self._get_row(s, order_id)
            current = FulfillmentStatus(row.fulfillment_status)
            if not can_transition_fulfillment(current, FulfillmentStatus.CANCELLED):
                logger.warning("Rejected cancellation of order %s in %s", order_id, current.value)
                raise InvalidTransitionError(
                    "order", order_id, current.value, FulfillmentStatus.CANCELLED.value
                )

            for item in row.items:
                self.inventory.release(item.product_id, item.quantity, session=s)

            row.fulfillment_status = FulfillmentStatus.CANCELLED.value
            row.updated_at = _utc_now()
            s.flush()
            order = row.to_domain()

        logger.info("Order %s cancelled, %d line(s) restocked", order_id, len(order.items))
        return order
