"""Settlement workflow: placing, paying, cancelling and refunding orders.

Each operation keeps its database writes in one transaction. The provider
call happens outside that transaction, before any local state changes, so a
declined or timed-out call leaves nothing behind.

Payment-side operations are serialized per order and per payment within a
process, and the write transaction re-checks the state the provider call was
based on.

The unresolved case is a provider call that went through but could not be
recorded locally. It is reported as a ReconciliationError subclass carrying
the provider id; the provider side is not reversed.
"""

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Hashable

from sqlalchemy.orm import Session

from .config import Settings
from .database import Database
from .errors import (
    AlreadyPaidError,
    InvalidTransitionError,
    PostCancelPersistenceError,
    PostChargePersistenceError,
    PostRefundPersistenceError,
    RefundAmountError,
    UnsupportedGatewayError,
    ValidationError,
)
from .gateways import GatewayRegistry, RefundResult, RefundStatus, TransactionStatus
from .inventory import InventoryLedger
from .models import (
    FulfillmentStatus,
    Notification,
    Order,
    Payment,
    PaymentRecordStatus,
    PaymentStatus,
    can_transition_payment_record,
    to_money,
)
from .notifications import NotificationEmitter
from .orders import OrderLine, OrderStore
from .payments import PaymentStore

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self):
        self._locks: dict[Hashable, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


@dataclass
class Settlement:
    """Outcome of a payment-side operation."""

    payment: Payment
    order: Order
    refund: RefundResult | None = None


class SettlementWorkflow:
    """Coordinates the ledger, orders, payments, gateways and notifications."""

    def __init__(
        self,
        db: Database,
        gateways: GatewayRegistry,
        inventory: InventoryLedger | None = None,
        orders: OrderStore | None = None,
        payments: PaymentStore | None = None,
        notifications: NotificationEmitter | None = None,
    ):
        self.db = db
        self.gateways = gateways
        self.inventory = inventory or InventoryLedger(db)
        self.orders = orders or OrderStore(db, self.inventory)
        self.payments = payments or PaymentStore(db)
        self.notifications = notifications or NotificationEmitter(db)
        self._order_locks = KeyedLocks()
        self._payment_locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SettlementWorkflow":
        """Wire up a workflow against the configured database and gateways."""
        db = Database(settings.database_url)
        gateways = GatewayRegistry.from_names(
            settings.gateways,
            timeout=settings.gateway_timeout,
            success_rate=settings.gateway_success_rate,
        )
        return cls(db, gateways)

    def close(self) -> None:
        self.gateways.close()
        self.db.dispose()

    # --- Orders ---

    def place_order(
        self,
        customer_id: int,
        lines: list[OrderLine],
        payment_method: str,
        address: str,
        phone: str,
    ) -> Order:
        """
        Create an order with its stock reserved and tell the customer.

        Raises:
            UnsupportedGatewayError: If payment_method isn't a configured gateway.
            ValidationError, ProductNotFoundError, InsufficientStockError: From order creation.
        """
        if not self.gateways.supports(payment_method or ""):
            raise UnsupportedGatewayError(payment_method or "", self.gateways.names)

        with self.db.transaction() as s:
            order = self.orders.create(
                customer_id, lines, payment_method.lower(), address, phone, session=s
            )
            self.notifications.order_status(
                order.id, customer_id, order.fulfillment_status.value, session=s
            )
        return order

    def update_order_status(self, order_id: int, status: FulfillmentStatus | str) -> Order:
        """
        Admin fulfillment update; CANCELLED releases stock like cancel_order.

        Raises:
            OrderNotFoundError, InvalidStatusError, InvalidTransitionError
        """
        with self.db.transaction() as s:
            order = self.orders.update_fulfillment_status(order_id, status, session=s)
            self.notifications.order_status(
                order.id, order.customer_id, order.fulfillment_status.value, session=s
            )
        logger.info("Order %s moved to %s", order.id, order.fulfillment_status.value)
        return order

    def cancel_order(self, order_id: int) -> Order:
        """
        Cancel an order and restock every line.

        Raises:
            OrderNotFoundError: If order doesn't exist.
            InvalidTransitionError: If the order has shipped, been delivered or is already cancelled.
        """
        with self.db.transaction() as s:
            order = self.orders.cancel(order_id, session=s)
            self.notifications.order_status(
                order.id, order.customer_id, FulfillmentStatus.CANCELLED.value, session=s
            )
        return order

    def notify_order_status(self, order_id: int, status: str | None = None) -> Notification:
        """Send an order-status message, defaulting to the order's current status."""
        with self.db.transaction() as s:
            order = self.orders.get(order_id, session=s)
            return self.notifications.order_status(
                order.id, order.customer_id, status or order.fulfillment_status.value, session=s
            )

    # --- Payments ---

    def process_payment(self, order_id: int, gateway_name: str) -> Settlement:
        """
        Charge an order through gateway_name and record the result.

        Raises:
            UnsupportedGatewayError: If the gateway isn't configured.
            OrderNotFoundError: If order doesn't exist.
            AlreadyPaidError: If the order's payment is already COMPLETED.
            InvalidTransitionError: If the order is cancelled.
            GatewayDeclinedError, GatewayTimeoutError: From the provider; nothing is changed.
            PostChargePersistenceError: If the charge went through but couldn't be recorded,
                including when the order was paid or cancelled while the charge was in flight.
        """
        gateway = self.gateways.get(gateway_name)

        with self._order_locks.get(order_id):
            order = self.orders.get(order_id)
            self._check_payable(order)

            charge = gateway.charge(order)

            try:
                with self.db.transaction() as s:
                    # The order may have been cancelled or settled while we were charging.
                    self._check_payable(self.orders.get(order_id, session=s), session=s)
                    payment = self.payments.record(
                        order_id,
                        gateway.name,
                        order.total,
                        charge.transaction_id,
                        gateway_response=charge.message,
                        session=s,
                    )
                    order = self.orders.update_payment_status(
                        order_id, PaymentStatus.COMPLETED, session=s
                    )
                    self.notifications.payment_status(
                        order_id, order.customer_id, PaymentStatus.COMPLETED.value, session=s
                    )
            except Exception as exc:
                logger.exception(
                    "Charge %s for order %s via %s succeeded but was not recorded",
                    charge.transaction_id, order_id, gateway.name,
                )
                raise PostChargePersistenceError(
                    order_id, gateway.name, charge.transaction_id, str(exc)
                ) from exc

        logger.info(
            "Order %s paid via %s: payment %s, transaction %s",
            order_id, gateway.name, payment.id, charge.transaction_id,
        )
        return Settlement(payment=payment, order=order)

    def _check_payable(self, order: Order, session: Session | None = None) -> None:
        if (
            order.payment_status == PaymentStatus.COMPLETED
            or self.payments.has_completed(order.id, session=session)
        ):
            raise AlreadyPaidError(order.id)
        if order.fulfillment_status == FulfillmentStatus.CANCELLED:
            raise InvalidTransitionError(
                "order", order.id, order.fulfillment_status.value, "paid"
            )

    def cancel_payment(self, payment_id: int) -> Settlement:
        """
        Void a payment at its provider and mark it CANCELLED.

        The order goes back to awaiting payment.

        Raises:
            PaymentNotFoundError: If payment doesn't exist.
            InvalidTransitionError: If the payment is not PENDING or COMPLETED.
            GatewayError: If the provider can't cancel it.
            PostCancelPersistenceError: If the provider voided it but that couldn't be recorded.
        """
        with self._payment_locks.get(payment_id):
            payment = self.payments.get(payment_id)
            if not can_transition_payment_record(payment.status, PaymentRecordStatus.CANCELLED):
                raise InvalidTransitionError(
                    "payment", payment_id, payment.status.value,
                    PaymentRecordStatus.CANCELLED.value,
                )

            if not payment.transaction_id:
                return self._record_cancellation(payment_id)

            self.gateways.get(payment.gateway).cancel(payment.transaction_id)
            try:
                return self._record_cancellation(payment_id)
            except Exception as exc:
                logger.exception(
                    "Cancellation of %s for payment %s via %s went through but was not recorded",
                    payment.transaction_id, payment_id, payment.gateway,
                )
                raise PostCancelPersistenceError(
                    payment_id, payment.gateway, payment.transaction_id, str(exc)
                ) from exc

    def _record_cancellation(self, payment_id: int) -> Settlement:
        with self.db.transaction() as s:
            payment = self.payments.transition(
                payment_id,
                PaymentRecordStatus.CANCELLED,
                gateway_response="Payment cancelled by user",
                session=s,
            )
            order = self.orders.update_payment_status(
                payment.order_id, PaymentStatus.PENDING, session=s
            )
            self.notifications.payment_status(
                order.id, order.customer_id, PaymentStatus.PENDING.value, session=s
            )

        logger.info("Payment %s for order %s cancelled", payment_id, payment.order_id)
        return Settlement(payment=payment, order=order)

    def process_refund(self, payment_id: int, amount: Decimal | None = None) -> Settlement:
        """
        Refund a completed payment, in full when amount is None.

        Refunds and cancellations of the same payment run one at a time, so a
        second request sees the first one's result before reaching the provider.

        Raises:
            PaymentNotFoundError: If payment doesn't exist.
            InvalidTransitionError: If the payment isn't COMPLETED.
            RefundAmountError: If amount is not positive or exceeds the payment.
            GatewayError: If the provider can't refund it.
            PostRefundPersistenceError: If the provider refunded it but that couldn't be recorded.
        """
        with self._payment_locks.get(payment_id):
            payment = self.payments.get(payment_id)
            if payment.status != PaymentRecordStatus.COMPLETED:
                raise InvalidTransitionError(
                    "payment", payment_id, payment.status.value,
                    PaymentRecordStatus.REFUNDED.value,
                )

            refund_amount = payment.amount if amount is None else to_money(amount)
            if refund_amount <= 0 or refund_amount > payment.amount:
                raise RefundAmountError(refund_amount, payment.amount)

            refund = self.gateways.get(payment.gateway).refund(
                payment.transaction_id, refund_amount
            )

            try:
                with self.db.transaction() as s:
                    payment = self.payments.transition(
                        payment_id,
                        PaymentRecordStatus.REFUNDED,
                        gateway_response=f"Refund processed: {refund.message}",
                        refunded_amount=refund_amount,
                        refund_id=refund.refund_id,
                        session=s,
                    )
                    order = self.orders.update_payment_status(
                        payment.order_id, PaymentStatus.REFUNDED, session=s
                    )
                    self.notifications.payment_status(
                        order.id, order.customer_id, PaymentStatus.REFUNDED.value, session=s
                    )
            except Exception as exc:
                logger.exception(
                    "Refund %s for payment %s via %s was issued but not recorded",
                    refund.refund_id, payment_id, payment.gateway,
                )
                raise PostRefundPersistenceError(
                    payment_id, payment.gateway, refund.refund_id, str(exc)
                ) from exc

        logger.info("Refunded %s of payment %s (%s)", refund_amount, payment_id, refund.refund_id)
        return Settlement(payment=payment, order=order, refund=refund)

    def query_payment_status(self, payment_id: int) -> TransactionStatus:
        """Ask the provider for the current state of a payment's transaction."""
        payment = self.payments.get(payment_id)
        if not payment.transaction_id:
            raise ValidationError(f"Payment {payment_id} has no gateway transaction")
        return self.gateways.get(payment.gateway).query_status(payment.transaction_id)

    def query_refund_status(self, payment_id: int) -> RefundStatus:
        """Ask the provider for the current state of a payment's refund."""
        payment = self.payments.get(payment_id)
        if not payment.refund_id:
            raise ValidationError(f"Payment {payment_id} has not been refunded")
        return self.gateways.get(payment.gateway).query_refund_status(payment.refund_id)
