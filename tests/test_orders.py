"""Tests for the order aggregate."""

from decimal import Decimal

import pytest

from shopflow.errors import (
    InsufficientStockError,
    InvalidStatusError,
    InvalidTransitionError,
    OrderNotFoundError,
    ProductNotFoundError,
    StateConflictError,
    ValidationError,
)
from shopflow.models import FulfillmentStatus, PaymentStatus
from shopflow.orders import OrderLine


def create_order(order_store, lines, customer_id=42):
    return order_store.create(
        customer_id,
        [OrderLine(product_id=pid, quantity=qty) for pid, qty in lines],
        "paypal",
        "1 Main St",
        "555-0100",
    )


@pytest.fixture
def two_products(ledger):
    a = ledger.create_product(name="A", price=Decimal("2.50"), stock=10)
    b = ledger.create_product(name="B", price=Decimal("4.00"), stock=5)
    return a, b


class TestCreateOrder:
    def test_create_reserves_stock_and_computes_total(self, order_store, ledger, two_products):
        a, b = two_products

        order = create_order(order_store, [(a.id, 2), (b.id, 3)])

        assert order.total == Decimal("17.00")
        assert order.fulfillment_status == FulfillmentStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert [(i.product_id, i.quantity, i.unit_price) for i in order.items] == [
            (a.id, 2, Decimal("2.50")),
            (b.id, 3, Decimal("4.00")),
        ]
        assert ledger.get_product(a.id).stock == 8
        assert ledger.get_product(b.id).stock == 2

    def test_failed_line_rolls_back_earlier_reservations(self, order_store, ledger, two_products):
        """[(A,2),(B,999)] with B at 5 must leave A untouched."""
        a, b = two_products

        with pytest.raises(InsufficientStockError) as exc_info:
            create_order(order_store, [(a.id, 2), (b.id, 999)])

        assert exc_info.value.available == 5
        assert ledger.get_product(a.id).stock == 10
        assert ledger.get_product(b.id).stock == 5
        assert order_store.list_all() == []

    def test_unknown_product_rolls_back(self, order_store, ledger, two_products):
        a, _ = two_products

        with pytest.raises(ProductNotFoundError):
            create_order(order_store, [(a.id, 1), (9999, 1)])

        assert ledger.get_product(a.id).stock == 10

    def test_inactive_product_rejected(self, order_store, ledger, two_products):
        a, b = two_products
        ledger.deactivate_product(b.id)

        with pytest.raises(ValidationError):
            create_order(order_store, [(a.id, 1), (b.id, 1)])

        assert ledger.get_product(a.id).stock == 10

    def test_empty_order_rejected(self, order_store):
        with pytest.raises(ValidationError):
            create_order(order_store, [])

    def test_zero_quantity_rejected(self, order_store, two_products):
        a, _ = two_products
        with pytest.raises(ValidationError):
            create_order(order_store, [(a.id, 0)])

    def test_missing_address_rejected(self, order_store, two_products):
        a, _ = two_products
        with pytest.raises(ValidationError):
            order_store.create(42, [OrderLine(a.id, 1)], "paypal", "  ", "555-0100")

    def test_total_is_snapshot(self, order_store, ledger, two_products):
        """Later price changes don't touch existing orders."""
        a, _ = two_products
        order = create_order(order_store, [(a.id, 4)])

        ledger.update_product(a.id, {"price": Decimal("100.00")})

        reloaded = order_store.get(order.id)
        assert reloaded.total == Decimal("10.00")
        assert reloaded.items[0].unit_price == Decimal("2.50")

    def test_order_ids_increase(self, order_store, two_products):
        a, _ = two_products
        first = create_order(order_store, [(a.id, 1)])
        second = create_order(order_store, [(a.id, 1)])
        assert second.id > first.id


class TestListOrders:
    def test_list_for_customer(self, order_store, two_products):
        a, _ = two_products
        mine = create_order(order_store, [(a.id, 1)], customer_id=1)
        create_order(order_store, [(a.id, 1)], customer_id=2)
        newer = create_order(order_store, [(a.id, 1)], customer_id=1)

        orders = order_store.list_for_customer(1)

        assert [o.id for o in orders] == [newer.id, mine.id]

    def test_get_missing(self, order_store):
        with pytest.raises(OrderNotFoundError):
            order_store.get(404)


class TestFulfillmentStatus:
    def test_forward_moves(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])

        for status in ("PROCESSING", "SHIPPED", "DELIVERED"):
            order = order_store.update_fulfillment_status(order.id, status)
            assert order.fulfillment_status.value == status

    def test_skipping_forward_allowed(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])

        order = order_store.update_fulfillment_status(order.id, FulfillmentStatus.SHIPPED)

        assert order.fulfillment_status == FulfillmentStatus.SHIPPED

    def test_backward_move_rejected(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])
        order_store.update_fulfillment_status(order.id, "SHIPPED")

        with pytest.raises(InvalidTransitionError) as exc_info:
            order_store.update_fulfillment_status(order.id, "PROCESSING")

        assert exc_info.value.current == "SHIPPED"
        assert order_store.get(order.id).fulfillment_status == FulfillmentStatus.SHIPPED

    def test_same_status_rejected(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])

        with pytest.raises(InvalidTransitionError):
            order_store.update_fulfillment_status(order.id, "PENDING")

    def test_invalid_status_value(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])

        with pytest.raises(InvalidStatusError) as exc_info:
            order_store.update_fulfillment_status(order.id, "LOST")
        assert "PENDING" in exc_info.value.allowed

    def test_cancel_via_status_update_releases_stock(self, order_store, ledger, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 3)])

        order = order_store.update_fulfillment_status(order.id, "CANCELLED")

        assert order.fulfillment_status == FulfillmentStatus.CANCELLED
        assert ledger.get_product(a.id).stock == 10


class TestPaymentStatus:
    def test_completed_advances_pending_fulfillment(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])

        order = order_store.update_payment_status(order.id, "COMPLETED")

        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.fulfillment_status == FulfillmentStatus.PROCESSING

    def test_completed_leaves_later_fulfillment_alone(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])
        order_store.update_fulfillment_status(order.id, "SHIPPED")

        order = order_store.update_payment_status(order.id, PaymentStatus.COMPLETED)

        assert order.fulfillment_status == FulfillmentStatus.SHIPPED

    def test_failed_does_not_advance(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])

        order = order_store.update_payment_status(order.id, "FAILED")

        assert order.payment_status == PaymentStatus.FAILED
        assert order.fulfillment_status == FulfillmentStatus.PENDING

    def test_invalid_payment_status(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])

        with pytest.raises(InvalidStatusError):
            order_store.update_payment_status(order.id, "CANCELLED")

    def test_cancelled_order_cannot_complete_payment(self, order_store, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 1)])
        order_store.cancel(order.id)

        with pytest.raises(InvalidTransitionError):
            order_store.update_payment_status(order.id, PaymentStatus.COMPLETED)

        reloaded = order_store.get(order.id)
        assert reloaded.payment_status == PaymentStatus.PENDING
        assert reloaded.fulfillment_status == FulfillmentStatus.CANCELLED


class TestCancel:
    @pytest.mark.parametrize("status", ["PENDING", "PROCESSING"])
    def test_cancel_restores_reserved_quantities(self, order_store, ledger, two_products, status):
        a, b = two_products
        order = create_order(order_store, [(a.id, 2), (b.id, 5)])
        if status != "PENDING":
            order_store.update_fulfillment_status(order.id, status)

        order = order_store.cancel(order.id)

        assert order.fulfillment_status == FulfillmentStatus.CANCELLED
        assert ledger.get_product(a.id).stock == 10
        assert ledger.get_product(b.id).stock == 5

    @pytest.mark.parametrize("status", ["SHIPPED", "DELIVERED"])
    def test_cancel_after_shipping_fails(self, order_store, ledger, two_products, status):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 2)])
        order_store.update_fulfillment_status(order.id, status)

        with pytest.raises(StateConflictError):
            order_store.cancel(order.id)

        assert ledger.get_product(a.id).stock == 8
        assert order_store.get(order.id).fulfillment_status.value == status

    def test_cancel_twice_fails(self, order_store, ledger, two_products):
        a, _ = two_products
        order = create_order(order_store, [(a.id, 2)])
        order_store.cancel(order.id)

        with pytest.raises(InvalidTransitionError):
            order_store.cancel(order.id)

        assert ledger.get_product(a.id).stock == 10

    def test_failed_release_rolls_back_cancel(self, order_store, ledger, two_products, monkeypatch):
        """A failure partway through leaves neither releases nor the cancellation."""
        a, b = two_products
        order = create_order(order_store, [(a.id, 2), (b.id, 1)])

        real_release = ledger.release

        def flaky_release(product_id, quantity, session=None):
            if product_id == b.id:
                raise RuntimeError("disk on fire")
            return real_release(product_id, quantity, session=session)

        monkeypatch.setattr(ledger, "release", flaky_release)

        with pytest.raises(RuntimeError):
            order_store.cancel(order.id)

        assert ledger.get_product(a.id).stock == 8
        assert ledger.get_product(b.id).stock == 4
        assert order_store.get(order.id).fulfillment_status == FulfillmentStatus.PENDING
