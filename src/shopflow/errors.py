"""Custom exceptions for shopflow."""

from decimal import Decimal


class ShopflowError(Exception):
    """Base exception for all shopflow errors."""

    pass


# --- Not found ---


class NotFoundError(ShopflowError):
    """Raised when a referenced entity doesn't exist."""

    entity = "Entity"

    def __init__(self, entity_id: int | str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} not found: {entity_id}")


class ProductNotFoundError(NotFoundError):
    entity = "Product"


class OrderNotFoundError(NotFoundError):
    entity = "Order"


class PaymentNotFoundError(NotFoundError):
    entity = "Payment"


class NotificationNotFoundError(NotFoundError):
    entity = "Notification"


# --- Validation ---


class ValidationError(ShopflowError):
    """Raised when input is malformed or cannot be satisfied."""

    pass


class InsufficientStockError(ValidationError):
    """Raised when a reservation asks for more than is available."""

    def __init__(self, product_id: int, requested: int, available: int, name: str | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}: requested {requested}, available {available}"
        )


class InvalidStatusError(ValidationError):
    """Raised when a status value is not part of its enum."""

    def __init__(self, value: str, allowed: list[str]):
        self.value = value
        self.allowed = allowed
        super().__init__(f"Invalid status '{value}'. Allowed: {', '.join(allowed)}")


class AlreadyPaidError(ValidationError):
    """Raised when paying an order whose payment is already completed."""

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} has already been paid")


class RefundAmountError(ValidationError):
    """Raised when a refund amount is not positive or exceeds the payment."""

    def __init__(self, requested: Decimal, refundable: Decimal):
        self.requested = requested
        self.refundable = refundable
        super().__init__(
            f"Refund amount {requested} is invalid; refundable amount is {refundable}"
        )


# --- State conflicts ---


class StateConflictError(ShopflowError):
    """Raised when an operation is illegal for the entity's current state."""

    pass


class InvalidTransitionError(StateConflictError):
    """Raised when a status transition is not allowed."""

    def __init__(self, entity: str, entity_id: int, current: str, target: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {entity} {entity_id} from {current} to {target}"
        )


# --- Gateways ---


class UnsupportedGatewayError(ShopflowError):
    """Raised when a payment gateway name is not configured or not known."""

    def __init__(self, name: str, supported: list[str]):
        self.name = name
        self.supported = supported
        super().__init__(
            f"Unsupported payment gateway '{name}'. Supported: {', '.join(supported) or 'none'}"
        )


class GatewayError(ShopflowError):
    """Raised when a payment provider call fails."""

    def __init__(self, gateway: str, message: str):
        self.gateway = gateway
        super().__init__(f"[{gateway}] {message}")


class GatewayDeclinedError(GatewayError):
    """Raised when a provider declines a charge."""

    pass


class GatewayTimeoutError(GatewayError):
    """Raised when a provider doesn't answer within the configured timeout."""

    def __init__(self, gateway: str, timeout: float):
        self.timeout = timeout
        super().__init__(gateway, f"no response within {timeout:g}s")


class ReconciliationError(ShopflowError):
    """Raised when a provider call went through but local state doesn't reflect it."""

    pass


class PostChargePersistenceError(ReconciliationError):
    """Raised when a charge succeeded but recording it failed.

    The provider has taken the money and nothing was persisted locally. The
    charge is not reversed automatically; the transaction id is kept on the
    exception for manual reconciliation.
    """

    def __init__(self, order_id: int, gateway: str, transaction_id: str, reason: str):
        self.order_id = order_id
        self.gateway = gateway
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(
            f"Charge {transaction_id} via {gateway} for order {order_id} succeeded "
            f"but could not be recorded ({reason}); manual reconciliation required"
        )


class PostRefundPersistenceError(ReconciliationError):
    """Raised when a provider refund was issued but recording it failed."""

    def __init__(self, payment_id: int, gateway: str, refund_id: str, reason: str):
        self.payment_id = payment_id
        self.gateway = gateway
        self.refund_id = refund_id
        self.reason = reason
        super().__init__(
            f"Refund {refund_id} via {gateway} for payment {payment_id} was issued "
            f"but could not be recorded ({reason}); manual reconciliation required"
        )


class PostCancelPersistenceError(ReconciliationError):
    """Raised when a provider voided a transaction but recording it failed."""

    def __init__(self, payment_id: int, gateway: str, transaction_id: str, reason: str):
        self.payment_id = payment_id
        self.gateway = gateway
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(
            f"Cancellation of {transaction_id} via {gateway} for payment {payment_id} went "
            f"through but could not be recorded ({reason}); manual reconciliation required"
        )


# --- Authorization ---


class ForbiddenError(ShopflowError):
    """Raised when the caller's identity or role doesn't allow the request."""

    def __init__(self, reason: str = "Forbidden"):
        super().__init__(reason)
