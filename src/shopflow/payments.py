"""Payment records."""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import Database, PaymentRow
from .errors import InvalidTransitionError, PaymentNotFoundError
from .models import (
    Payment,
    PaymentRecordStatus,
    _utc_now,
    can_transition_payment_record,
    to_cents,
)


class PaymentStore:
    """Stores settled charges. Amounts are fixed once recorded."""

    def __init__(self, db: Database):
        self.db = db

    def _get_row(self, s: Session, payment_id: int) -> PaymentRow:
        row = s.get(PaymentRow, payment_id, populate_existing=True)
        if row is None:
            raise PaymentNotFoundError(payment_id)
        return row

    def record(
        self,
        order_id: int,
        gateway: str,
        amount: Decimal,
        transaction_id: str,
        gateway_response: str | None = None,
        session: Session | None = None,
    ) -> Payment:
        """Record a successful charge as a COMPLETED payment."""
        now = _utc_now()
        row = PaymentRow(
            order_id=order_id,
            transaction_id=transaction_id,
            gateway=gateway,
            amount_cents=to_cents(amount),
            status=PaymentRecordStatus.COMPLETED.value,
            gateway_response=gateway_response,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction(session) as s:
            s.add(row)
            s.flush()
            return row.to_domain()

    def get(self, payment_id: int, session: Session | None = None) -> Payment:
        """
        Get a payment by ID.

        Raises:
            PaymentNotFoundError: If payment doesn't exist.
        """
        with self.db.transaction(session) as s:
            return self._get_row(s, payment_id).to_domain()

    def list_all(self, session: Session | None = None) -> list[Payment]:
        with self.db.transaction(session) as s:
            rows = s.scalars(select(PaymentRow).order_by(PaymentRow.id.desc()))
            return [row.to_domain() for row in rows]

    def list_for_order(self, order_id: int, session: Session | None = None) -> list[Payment]:
        stmt = select(PaymentRow).where(PaymentRow.order_id == order_id).order_by(PaymentRow.id.desc())
        with self.db.transaction(session) as s:
            return [row.to_domain() for row in s.scalars(stmt)]

    def has_completed(self, order_id: int, session: Session | None = None) -> bool:
        """True if the order already has a COMPLETED payment."""
        stmt = select(PaymentRow.id).where(
            PaymentRow.order_id == order_id,
            PaymentRow.status == PaymentRecordStatus.COMPLETED.value,
        )
        with self.db.transaction(session) as s:
            return s.scalar(stmt.limit(1)) is not None

    def transition(
        self,
        payment_id: int,
        target: PaymentRecordStatus,
        gateway_response: str | None = None,
        refunded_amount: Decimal | None = None,
        refund_id: str | None = None,
        session: Session | None = None,
    ) -> Payment:
        """
        Move a payment to target status.

        Only COMPLETED->REFUNDED and COMPLETED/PENDING->CANCELLED are allowed.

        Raises:
            PaymentNotFoundError: If payment doesn't exist.
            InvalidTransitionError: If the move isn't allowed.
        """
        with self.db.transaction(session) as s:
            row = self._get_row(s, payment_id)
            current = PaymentRecordStatus(row.status)
            if not can_transition_payment_record(current, target):
                raise InvalidTransitionError("payment", payment_id, current.value, target.value)

            row.status = target.value
            if gateway_response is not None:
                row.gateway_response = gateway_response
            if refunded_amount is not None:
                row.refunded_cents = to_cents(refunded_amount)
            if refund_id is not None:
                row.refund_id = refund_id
            row.updated_at = _utc_now()
            s.flush()
            return row.to_domain()
