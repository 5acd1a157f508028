"""Data models for shopflow."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, TypeVar

from .errors import InvalidStatusError

CENT = Decimal("0.01")


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Normalize a monetary value to a two-place Decimal."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Decimal | int | float | str) -> int:
    """Convert a monetary value to integer cents for storage."""
    return int(to_money(value) * 100)


def from_cents(cents: int) -> Decimal:
    """Convert stored integer cents back to a two-place Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)


class FulfillmentStatus(str, Enum):
    """Lifecycle stage of physical delivery."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Monetary settlement state of an order."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentRecordStatus(str, Enum):
    """State of a single Payment record."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class NotificationCategory(str, Enum):
    ORDER_STATUS = "order_status"
    PAYMENT_STATUS = "payment_status"
    PROMOTION = "promotion"


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: type[E], value: "str | E") -> E:
    """
    Parse a raw value into a member of enum_cls.

    Raises:
        InvalidStatusError: If the value isn't a member.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidStatusError(str(value), [m.value for m in enum_cls]) from None


# Forward order of fulfillment; CANCELLED sits outside the sequence.
_FULFILLMENT_RANK = {
    FulfillmentStatus.PENDING: 0,
    FulfillmentStatus.PROCESSING: 1,
    FulfillmentStatus.SHIPPED: 2,
    FulfillmentStatus.DELIVERED: 3,
}

NON_CANCELLABLE = frozenset({FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED})


def can_transition_fulfillment(current: FulfillmentStatus, target: FulfillmentStatus) -> bool:
    """Forward-only moves, plus CANCELLED from anything not yet shipped."""
    if current == FulfillmentStatus.CANCELLED:
        return False
    if target == FulfillmentStatus.CANCELLED:
        return current not in NON_CANCELLABLE
    return _FULFILLMENT_RANK[target] > _FULFILLMENT_RANK[current]


PAYMENT_RECORD_TRANSITIONS: dict[PaymentRecordStatus, frozenset[PaymentRecordStatus]] = {
    PaymentRecordStatus.PENDING: frozenset({PaymentRecordStatus.CANCELLED}),
    PaymentRecordStatus.COMPLETED: frozenset(
        {PaymentRecordStatus.REFUNDED, PaymentRecordStatus.CANCELLED}
    ),
}


def can_transition_payment_record(
    current: PaymentRecordStatus, target: PaymentRecordStatus
) -> bool:
    return target in PAYMENT_RECORD_TRANSITIONS.get(current, frozenset())


@dataclass
class Product:
    """A catalog entry with its mutable stock count."""

    id: int
    name: str
    price: Decimal
    stock: int
    active: bool = True
    description: str | None = None
    image_url: str | None = None
    supplier: str | None = None
    cost: Decimal | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": str(self.price),
            "stock": self.stock,
            "image_url": self.image_url,
            "supplier": self.supplier,
            "cost": str(self.cost) if self.cost is not None else None,
            "active": self.active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class LineItem:
    """One ordered product with the unit price captured at order time."""

    product_id: int
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "subtotal": str(self.subtotal),
        }


@dataclass
class Order:
    """An order with independent fulfillment and payment states."""

    id: int
    customer_id: int
    items: list[LineItem]
    total: Decimal
    fulfillment_status: FulfillmentStatus
    payment_status: PaymentStatus
    payment_method: str
    address: str
    phone: str
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def is_cancellable(self) -> bool:
        return can_transition_fulfillment(self.fulfillment_status, FulfillmentStatus.CANCELLED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "items": [i.to_dict() for i in self.items],
            "total": str(self.total),
            "fulfillment_status": self.fulfillment_status.value,
            "payment_status": self.payment_status.value,
            "payment_method": self.payment_method,
            "address": self.address,
            "phone": self.phone,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Payment:
    """A settled charge against an order."""

    id: int
    order_id: int
    gateway: str
    amount: Decimal
    status: PaymentRecordStatus
    transaction_id: str | None = None
    gateway_response: str | None = None
    refunded_amount: Decimal | None = None
    refund_id: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "transaction_id": self.transaction_id,
            "gateway": self.gateway,
            "amount": str(self.amount),
            "status": self.status.value,
            "gateway_response": self.gateway_response,
            "refunded_amount": (
                str(self.refunded_amount) if self.refunded_amount is not None else None
            ),
            "refund_id": self.refund_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Notification:
    """An outbound message; customer_id None means broadcast."""

    id: int
    customer_id: int | None
    message: str
    category: NotificationCategory
    scheduled_at: str
    sent: bool = False
    sent_at: str | None = None
    order_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "message": self.message,
            "category": self.category.value,
            "scheduled_at": self.scheduled_at,
            "sent": self.sent,
            "sent_at": self.sent_at,
        }
