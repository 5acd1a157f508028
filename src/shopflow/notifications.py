"""Outbound customer notifications."""

import logging

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .database import Database, NotificationRow
from .errors import NotificationNotFoundError, ValidationError
from .models import (
    FulfillmentStatus,
    Notification,
    NotificationCategory,
    PaymentStatus,
    _utc_now,
    parse_enum,
)

logger = logging.getLogger(__name__)

ORDER_STATUS_TEMPLATES: dict[str, str] = {
    FulfillmentStatus.PENDING.value: "Your order #{order_id} has been received and is awaiting payment.",
    FulfillmentStatus.PROCESSING.value: (
        "Your order #{order_id} is being processed. We'll let you know when it ships."
    ),
    FulfillmentStatus.SHIPPED.value: (
        "Your order #{order_id} has shipped and should arrive in 3-5 business days."
    ),
    FulfillmentStatus.DELIVERED.value: (
        "Your order #{order_id} has been delivered. Thank you for your purchase!"
    ),
    FulfillmentStatus.CANCELLED.value: (
        "Your order #{order_id} has been cancelled. Contact us for more information."
    ),
}

PAYMENT_STATUS_TEMPLATES: dict[str, str] = {
    PaymentStatus.PENDING.value: (
        "Your order #{order_id} is awaiting payment. Please complete the checkout."
    ),
    PaymentStatus.COMPLETED.value: "We have received the payment for your order #{order_id}. Thank you!",
    PaymentStatus.FAILED.value: (
        "The payment for your order #{order_id} failed. Please try again."
    ),
    PaymentStatus.REFUNDED.value: (
        "The refund for your order #{order_id} has been processed. "
        "It will be credited within 3-5 business days."
    ),
}

DEFAULT_TEMPLATE = "Update on order #{order_id}: status changed to {status}."

_TEMPLATES = {
    NotificationCategory.ORDER_STATUS: ORDER_STATUS_TEMPLATES,
    NotificationCategory.PAYMENT_STATUS: PAYMENT_STATUS_TEMPLATES,
}


def render_status_message(category: NotificationCategory, order_id: int, status: str) -> str:
    """Look up the message for a status change, falling back to a generic one."""
    template = _TEMPLATES.get(category, {}).get(status, DEFAULT_TEMPLATE)
    return template.format(order_id=order_id, status=status)


class NotificationEmitter:
    """Records notifications and their delivery state."""

    def __init__(self, db: Database):
        self.db = db

    def emit(
        self,
        customer_id: int | None,
        message: str,
        category: NotificationCategory | str,
        scheduled_at: str | None = None,
        order_id: int | None = None,
        sent: bool = False,
        session: Session | None = None,
    ) -> Notification:
        """
        Record a notification.

        Args:
            customer_id: Target customer, or None to broadcast.
            message: Text to deliver.
            category: order_status, payment_status or promotion.
            scheduled_at: ISO timestamp to deliver at (default: now).
            order_id: Order the notification is about, if any.
            sent: Record it as already delivered.

        Raises:
            ValidationError: If message is blank.
            InvalidStatusError: If category is unknown.
        """
        if not message or not message.strip():
            raise ValidationError("Notification message is required")
        category = parse_enum(NotificationCategory, category)

        now = _utc_now()
        row = NotificationRow(
            customer_id=customer_id,
            order_id=order_id,
            message=message,
            category=category.value,
            scheduled_at=scheduled_at or now,
            sent=sent,
            sent_at=now if sent else None,
        )
        with self.db.transaction(session) as s:
            s.add(row)
            s.flush()
            notification = row.to_domain()

        logger.debug(
            "Notification %s (%s) for %s",
            notification.id, category.value,
            customer_id if customer_id is not None else "everyone",
        )
        return notification

    def order_status(
        self, order_id: int, customer_id: int, status: str, session: Session | None = None
    ) -> Notification:
        """Record a delivered fulfillment-status message for an order."""
        message = render_status_message(NotificationCategory.ORDER_STATUS, order_id, status)
        return self.emit(
            customer_id, message, NotificationCategory.ORDER_STATUS,
            order_id=order_id, sent=True, session=session,
        )

    def payment_status(
        self, order_id: int, customer_id: int, status: str, session: Session | None = None
    ) -> Notification:
        """Record a delivered payment-status message for an order."""
        message = render_status_message(NotificationCategory.PAYMENT_STATUS, order_id, status)
        return self.emit(
            customer_id, message, NotificationCategory.PAYMENT_STATUS,
            order_id=order_id, sent=True, session=session,
        )

    def promotion(
        self,
        customer_id: int | None,
        message: str,
        scheduled_at: str | None = None,
        session: Session | None = None,
    ) -> Notification:
        """Schedule an undelivered promotional message."""
        return self.emit(
            customer_id, message, NotificationCategory.PROMOTION,
            scheduled_at=scheduled_at, session=session,
        )

    def mark_sent(self, notification_id: int, session: Session | None = None) -> Notification:
        """
        Flag a notification as delivered.

        The sent timestamp is only set the first time.

        Raises:
            NotificationNotFoundError: If notification doesn't exist.
        """
        with self.db.transaction(session) as s:
            row = s.get(NotificationRow, notification_id, populate_existing=True)
            if row is None:
                raise NotificationNotFoundError(notification_id)
            if not row.sent:
                row.sent = True
                row.sent_at = _utc_now()
                s.flush()
            return row.to_domain()

    def get(self, notification_id: int, session: Session | None = None) -> Notification:
        """
        Get a notification by ID.

        Raises:
            NotificationNotFoundError: If notification doesn't exist.
        """
        with self.db.transaction(session) as s:
            row = s.get(NotificationRow, notification_id, populate_existing=True)
            if row is None:
                raise NotificationNotFoundError(notification_id)
            return row.to_domain()

    def list_all(self, session: Session | None = None) -> list[Notification]:
        with self.db.transaction(session) as s:
            rows = s.scalars(select(NotificationRow).order_by(NotificationRow.id.desc()))
            return [row.to_domain() for row in rows]

    def list_for_customer(
        self,
        customer_id: int,
        include_broadcast: bool = True,
        session: Session | None = None,
    ) -> list[Notification]:
        """
        List a customer's notifications, newest first.

        Args:
            include_broadcast: Also include notifications sent to everyone.
        """
        condition = NotificationRow.customer_id == customer_id
        if include_broadcast:
            condition = or_(condition, NotificationRow.customer_id.is_(None))
        stmt = select(NotificationRow).where(condition).order_by(NotificationRow.id.desc())
        with self.db.transaction(session) as s:
            return [row.to_domain() for row in s.scalars(stmt)]
