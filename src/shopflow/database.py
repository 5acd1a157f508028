"""Relational storage for shopflow.

All persistent state lives in five tables managed through SQLAlchemy. Every
multi-row change runs inside Database.transaction(), which commits on success
and rolls back on any exception.

On SQLite each transaction is opened with BEGIN IMMEDIATE, so writers are
serialized by the database lock instead of discovering a conflict halfway
through a read-modify-write.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    sessionmaker,
)

from .models import (
    FulfillmentStatus,
    LineItem,
    Notification,
    NotificationCategory,
    Order,
    Payment,
    PaymentRecordStatus,
    PaymentStatus,
    Product,
    _utc_now,
    from_cents,
)

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT = 30.0


class Base(DeclarativeBase):
    pass


class ProductRow(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    image_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    supplier: Mapped[str | None] = mapped_column(String(200), nullable=True)
    cost_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[str] = mapped_column(String(40), default=_utc_now)
    updated_at: Mapped[str] = mapped_column(String(40), default=_utc_now)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("price_cents >= 0", name="ck_products_price_non_negative"),
    )

    def to_domain(self) -> Product:
        return Product(
            id=self.id,
            name=self.name,
            description=self.description,
            price=from_cents(self.price_cents),
            stock=self.stock,
            image_url=self.image_url,
            supplier=self.supplier,
            cost=from_cents(self.cost_cents) if self.cost_cents is not None else None,
            active=self.active,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class OrderRow(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(Integer, index=True)
    total_cents: Mapped[int] = mapped_column(Integer)
    fulfillment_status: Mapped[str] = mapped_column(
        String(20), default=FulfillmentStatus.PENDING.value
    )
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value)
    payment_method: Mapped[str] = mapped_column(String(50))
    address: Mapped[str] = mapped_column(Text)
    phone: Mapped[str] = mapped_column(String(20))
    created_at: Mapped[str] = mapped_column(String(40), default=_utc_now)
    updated_at: Mapped[str] = mapped_column(String(40), default=_utc_now)

    items: Mapped[list[OrderItemRow]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItemRow.id",
    )

    def to_domain(self) -> Order:
        return Order(
            id=self.id,
            customer_id=self.customer_id,
            items=[i.to_domain() for i in self.items],
            total=from_cents(self.total_cents),
            fulfillment_status=FulfillmentStatus(self.fulfillment_status),
            payment_status=PaymentStatus(self.payment_status),
            payment_method=self.payment_method,
            address=self.address,
            phone=self.phone,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class OrderItemRow(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(Integer)

    order: Mapped[OrderRow] = relationship(back_populates="items")

    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),)

    def to_domain(self) -> LineItem:
        return LineItem(
            product_id=self.product_id,
            quantity=self.quantity,
            unit_price=from_cents(self.unit_price_cents),
        )


class PaymentRow(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway: Mapped[str] = mapped_column(String(50))
    amount_cents: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20))
    gateway_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[str] = mapped_column(String(40), default=_utc_now)
    updated_at: Mapped[str] = mapped_column(String(40), default=_utc_now)

    def to_domain(self) -> Payment:
        return Payment(
            id=self.id,
            order_id=self.order_id,
            transaction_id=self.transaction_id,
            gateway=self.gateway,
            amount=from_cents(self.amount_cents),
            status=PaymentRecordStatus(self.status),
            gateway_response=self.gateway_response,
            refunded_amount=(
                from_cents(self.refunded_cents) if self.refunded_cents is not None else None
            ),
            refund_id=self.refund_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    order_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(30))
    scheduled_at: Mapped[str] = mapped_column(String(40), default=_utc_now)
    sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[str | None] = mapped_column(String(40), nullable=True)

    def to_domain(self) -> Notification:
        return Notification(
            id=self.id,
            customer_id=self.customer_id,
            order_id=self.order_id,
            message=self.message,
            category=NotificationCategory(self.category),
            scheduled_at=self.scheduled_at,
            sent=self.sent,
            sent_at=self.sent_at,
        )


def _configure_sqlite(engine: Engine) -> None:
    """Install connection hooks that make SQLite transactions take the write lock up front."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # pysqlite's implicit BEGIN is disabled; _on_begin issues our own.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for url, preparing SQLite files and connection hooks."""
    parsed = make_url(url)
    is_sqlite = parsed.get_backend_name() == "sqlite"

    connect_args: dict[str, Any] = {}
    if is_sqlite:
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}

    engine = create_engine(url, echo=echo, connect_args=connect_args)
    if is_sqlite:
        _configure_sqlite(engine)
    return engine


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, url: str, echo: bool = False):
        """
        Initialize Database.

        Args:
            url: SQLAlchemy database URL.
            echo: Log emitted SQL (for debugging).
        """
        self.url = url
        self.engine = create_db_engine(url, echo=echo)
        self._sessionmaker = sessionmaker(self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)
        logger.info("Schema ready at %s", self.engine.url.render_as_string(hide_password=True))

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self, session: Session | None = None) -> Iterator[Session]:
        """
        Yield a session bound to one transaction.

        If session is given, the caller already owns a transaction and the
        work simply joins it; commit and rollback stay with the caller.
        """
        if session is not None:
            yield session
            return

        with self._sessionmaker() as new_session:
            with new_session.begin():
                yield new_session

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False
