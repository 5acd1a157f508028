"""FastAPI REST API for shopflow."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import load_settings
from .errors import (
    ForbiddenError,
    GatewayDeclinedError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    ReconciliationError,
    ShopflowError,
    StateConflictError,
    UnsupportedGatewayError,
    ValidationError,
)
from .models import Role
from .orders import OrderLine
from .settlement import Settlement, SettlementWorkflow

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class ProductSchema(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: str
    stock: int
    image_url: Optional[str] = None
    supplier: Optional[str] = None
    cost: Optional[str] = None
    active: bool
    created_at: str
    updated_at: str


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    stock: int = Field(default=0, ge=0)
    image_url: Optional[str] = None
    supplier: Optional[str] = None
    cost: Optional[Decimal] = Field(default=None, ge=0)
    active: bool = True


class ProductUpdateRequest(BaseModel):
    """Partial update. Stock is changed through the stock endpoint only."""

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    image_url: Optional[str] = None
    supplier: Optional[str] = None
    cost: Optional[Decimal] = Field(default=None, ge=0)
    active: Optional[bool] = None


class StockAdjustRequest(BaseModel):
    delta: int = Field(..., description="Units to add (positive) or remove (negative)")


class ProductEnvelope(BaseModel):
    status: str = "success"
    message: Optional[str] = None
    product: ProductSchema


class ProductListEnvelope(BaseModel):
    status: str = "success"
    products: list[ProductSchema]
    count: int


class LineItemSchema(BaseModel):
    product_id: int
    quantity: int
    unit_price: str
    subtotal: str


class OrderSchema(BaseModel):
    id: int
    customer_id: int
    items: list[LineItemSchema]
    total: str
    fulfillment_status: str
    payment_status: str
    payment_method: str
    address: str
    phone: str
    created_at: str
    updated_at: str


class OrderItemRequest(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)


class OrderCreateRequest(BaseModel):
    items: list[OrderItemRequest] = Field(..., min_length=1)
    payment_method: str = Field(..., description="Configured gateway name, e.g. 'paypal'")
    address: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)


class OrderStatusRequest(BaseModel):
    status: str = Field(..., description="Target fulfillment status")


class OrderEnvelope(BaseModel):
    status: str = "success"
    message: Optional[str] = None
    order: OrderSchema


class OrderListEnvelope(BaseModel):
    status: str = "success"
    orders: list[OrderSchema]
    count: int


class PaymentSchema(BaseModel):
    id: int
    order_id: int
    transaction_id: Optional[str] = None
    gateway: str
    amount: str
    status: str
    gateway_response: Optional[str] = None
    refunded_amount: Optional[str] = None
    refund_id: Optional[str] = None
    created_at: str
    updated_at: str


class RefundSchema(BaseModel):
    refund_id: str
    amount: str
    message: str


class PaymentProcessRequest(BaseModel):
    order_id: int
    gateway: str


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, description="Defaults to the full payment amount")


class PaymentEnvelope(BaseModel):
    status: str = "success"
    message: Optional[str] = None
    payment: PaymentSchema
    order: Optional[OrderSchema] = None
    refund: Optional[RefundSchema] = None


class PaymentListEnvelope(BaseModel):
    status: str = "success"
    payments: list[PaymentSchema]
    count: int


class TransactionStatusSchema(BaseModel):
    transaction_id: str
    status: str
    updated_at: str


class TransactionStatusEnvelope(BaseModel):
    status: str = "success"
    transaction: TransactionStatusSchema


class RefundStatusSchema(BaseModel):
    refund_id: str
    status: str
    processed_at: str


class RefundStatusEnvelope(BaseModel):
    status: str = "success"
    refund: RefundStatusSchema


class NotificationSchema(BaseModel):
    id: int
    customer_id: Optional[int] = None
    order_id: Optional[int] = None
    message: str
    category: str
    scheduled_at: str
    sent: bool
    sent_at: Optional[str] = None


class NotificationCreateRequest(BaseModel):
    customer_id: Optional[int] = None
    order_id: Optional[int] = None
    message: str = Field(..., min_length=1)
    category: str
    scheduled_at: Optional[str] = None


class PromotionRequest(BaseModel):
    customer_id: Optional[int] = Field(default=None, description="Omit to broadcast")
    message: str = Field(..., min_length=1)
    scheduled_at: Optional[str] = None


class OrderStatusNotificationRequest(BaseModel):
    order_id: int
    status: Optional[str] = Field(default=None, description="Defaults to the order's current status")


class NotificationEnvelope(BaseModel):
    status: str = "success"
    message: Optional[str] = None
    notification: NotificationSchema


class NotificationListEnvelope(BaseModel):
    status: str = "success"
    notifications: list[NotificationSchema]
    count: int


class ErrorEnvelope(BaseModel):
    status: str = "error"
    message: str
    error_type: str


# --- Services and identity ---


_workflow: SettlementWorkflow | None = None


def get_workflow() -> SettlementWorkflow:
    """Get the process-wide SettlementWorkflow, creating it on first use."""
    global _workflow
    if _workflow is None:
        _workflow = SettlementWorkflow.from_settings(load_settings())
        _workflow.db.create_all()
    return _workflow


@dataclass
class Identity:
    """Caller identity, already authenticated upstream."""

    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: str = Header(default=Role.CUSTOMER.value),
) -> Identity:
    """Read the caller identity from X-User-Id / X-User-Role headers."""
    if x_user_id is None:
        raise ForbiddenError("No authenticated user")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise ForbiddenError(f"Invalid user id: {x_user_id}") from None
    try:
        role = Role(x_user_role.lower())
    except ValueError:
        raise ForbiddenError(f"Unknown role: {x_user_role}") from None
    return Identity(user_id=user_id, role=role)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise ForbiddenError("Require admin role")
    return identity


def ensure_owner(identity: Identity, customer_id: int | None, what: str) -> None:
    """Allow admins and the owning customer only."""
    if identity.is_admin or customer_id == identity.user_id:
        return
    raise ForbiddenError(f"You don't have permission to access this {what}")


def settlement_to_envelope(result: Settlement, message: str) -> PaymentEnvelope:
    return PaymentEnvelope(
        message=message,
        payment=PaymentSchema(**result.payment.to_dict()),
        order=OrderSchema(**result.order.to_dict()),
        refund=RefundSchema(**result.refund.to_dict()) if result.refund else None,
    )


# --- App ---


app = FastAPI(
    title="shopflow API",
    description="Orders, stock, payments and notifications",
    version="0.1.0",
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handlers ---


# Map exception types to HTTP status codes; subclasses inherit their base's code.
ERROR_STATUS_CODES: dict[type, int] = {
    NotFoundError: 404,
    ValidationError: 400,
    StateConflictError: 400,
    UnsupportedGatewayError: 400,
    ForbiddenError: 403,
    GatewayError: 502,
    GatewayDeclinedError: 402,
    GatewayTimeoutError: 504,
    ReconciliationError: 500,
}


def status_code_for(exc: ShopflowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


def error_response(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "message": message, "error_type": error_type},
    )


@app.exception_handler(ShopflowError)
async def shopflow_error_handler(request: Request, exc: ShopflowError) -> JSONResponse:
    """Map ShopflowError subclasses to appropriate HTTP responses."""
    return error_response(status_code_for(exc), str(exc), type(exc).__name__)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return error_response(400, "; ".join(parts) or "Invalid request", "ValidationError")


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error", type(exc).__name__)


# --- Endpoints ---


@app.get("/api/health")
def health_check(wf: SettlementWorkflow = Depends(get_workflow)):
    """
    Health check endpoint.

    Reports database reachability and the configured gateways.
    """
    database_ok = wf.db.ping()
    return {
        "status": "ok" if database_ok else "error",
        "database": database_ok,
        "gateways": wf.gateways.names,
    }


# --- Product Endpoints ---


@app.get("/api/products", response_model=ProductListEnvelope)
def list_products(wf: SettlementWorkflow = Depends(get_workflow)):
    """List active products."""
    products = wf.inventory.list_products()
    return ProductListEnvelope(
        products=[ProductSchema(**p.to_dict()) for p in products],
        count=len(products),
    )


@app.get("/api/products/admin", response_model=ProductListEnvelope)
def list_all_products(
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    """List every product, including deactivated ones."""
    products = wf.inventory.list_products(include_inactive=True)
    return ProductListEnvelope(
        products=[ProductSchema(**p.to_dict()) for p in products],
        count=len(products),
    )


@app.get("/api/products/{product_id}", response_model=ProductEnvelope)
def get_product(product_id: int, wf: SettlementWorkflow = Depends(get_workflow)):
    product = wf.inventory.get_product(product_id)
    return ProductEnvelope(product=ProductSchema(**product.to_dict()))


@app.post("/api/products", response_model=ProductEnvelope, status_code=201)
def create_product(
    request: ProductCreateRequest,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    product = wf.inventory.create_product(**request.model_dump())
    return ProductEnvelope(message="Product created", product=ProductSchema(**product.to_dict()))


@app.put("/api/products/{product_id}", response_model=ProductEnvelope)
def update_product(
    product_id: int,
    request: ProductUpdateRequest,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    product = wf.inventory.update_product(product_id, request.model_dump(exclude_unset=True))
    return ProductEnvelope(message="Product updated", product=ProductSchema(**product.to_dict()))


@app.delete("/api/products/{product_id}", response_model=ProductEnvelope)
def delete_product(
    product_id: int,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    """Deactivate a product; products are never hard-deleted."""
    product = wf.inventory.deactivate_product(product_id)
    return ProductEnvelope(message="Product deactivated", product=ProductSchema(**product.to_dict()))


@app.patch("/api/products/{product_id}/stock", response_model=ProductEnvelope)
def adjust_product_stock(
    product_id: int,
    request: StockAdjustRequest,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    wf.inventory.adjust(product_id, request.delta)
    product = wf.inventory.get_product(product_id)
    return ProductEnvelope(message="Stock updated", product=ProductSchema(**product.to_dict()))


# --- Order Endpoints ---


@app.get("/api/orders", response_model=OrderListEnvelope)
def list_orders(
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    orders = wf.orders.list_all()
    return OrderListEnvelope(orders=[OrderSchema(**o.to_dict()) for o in orders], count=len(orders))


@app.get("/api/orders/my", response_model=OrderListEnvelope)
def list_my_orders(
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    orders = wf.orders.list_for_customer(identity.user_id)
    return OrderListEnvelope(orders=[OrderSchema(**o.to_dict()) for o in orders], count=len(orders))


@app.get("/api/orders/{order_id}", response_model=OrderEnvelope)
def get_order(
    order_id: int,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    order = wf.orders.get(order_id)
    ensure_owner(identity, order.customer_id, "order")
    return OrderEnvelope(order=OrderSchema(**order.to_dict()))


@app.post("/api/orders", response_model=OrderEnvelope, status_code=201)
def create_order(
    request: OrderCreateRequest,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    """Place an order for the calling customer."""
    order = wf.place_order(
        customer_id=identity.user_id,
        lines=[OrderLine(product_id=i.product_id, quantity=i.quantity) for i in request.items],
        payment_method=request.payment_method,
        address=request.address,
        phone=request.phone,
    )
    return OrderEnvelope(message="Order created", order=OrderSchema(**order.to_dict()))


@app.patch("/api/orders/{order_id}/status", response_model=OrderEnvelope)
def update_order_status(
    order_id: int,
    request: OrderStatusRequest,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    order = wf.update_order_status(order_id, request.status)
    return OrderEnvelope(message="Order status updated", order=OrderSchema(**order.to_dict()))


@app.delete("/api/orders/{order_id}", response_model=OrderEnvelope)
def cancel_order(
    order_id: int,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    order = wf.orders.get(order_id)
    ensure_owner(identity, order.customer_id, "order")
    order = wf.cancel_order(order_id)
    return OrderEnvelope(message="Order cancelled", order=OrderSchema(**order.to_dict()))


# --- Payment Endpoints ---


@app.get("/api/payments", response_model=PaymentListEnvelope)
def list_payments(
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    payments = wf.payments.list_all()
    return PaymentListEnvelope(
        payments=[PaymentSchema(**p.to_dict()) for p in payments],
        count=len(payments),
    )


@app.get("/api/payments/order/{order_id}", response_model=PaymentListEnvelope)
def list_order_payments(
    order_id: int,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    order = wf.orders.get(order_id)
    ensure_owner(identity, order.customer_id, "order")
    payments = wf.payments.list_for_order(order_id)
    return PaymentListEnvelope(
        payments=[PaymentSchema(**p.to_dict()) for p in payments],
        count=len(payments),
    )


@app.post("/api/payments/process", response_model=PaymentEnvelope, status_code=201)
def process_payment(
    request: PaymentProcessRequest,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    """Charge an order through the chosen gateway."""
    order = wf.orders.get(request.order_id)
    ensure_owner(identity, order.customer_id, "order")
    result = wf.process_payment(request.order_id, request.gateway)
    return settlement_to_envelope(result, "Payment processed")


@app.get("/api/payments/{payment_id}", response_model=PaymentEnvelope)
def get_payment(
    payment_id: int,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    payment = wf.payments.get(payment_id)
    order = wf.orders.get(payment.order_id)
    ensure_owner(identity, order.customer_id, "payment")
    return PaymentEnvelope(payment=PaymentSchema(**payment.to_dict()))


@app.get("/api/payments/{payment_id}/status", response_model=TransactionStatusEnvelope)
def get_payment_gateway_status(
    payment_id: int,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    """Ask the payment's gateway for the transaction state."""
    payment = wf.payments.get(payment_id)
    order = wf.orders.get(payment.order_id)
    ensure_owner(identity, order.customer_id, "payment")
    status = wf.query_payment_status(payment_id)
    return TransactionStatusEnvelope(transaction=TransactionStatusSchema(**status.to_dict()))


@app.get("/api/payments/{payment_id}/refund-status", response_model=RefundStatusEnvelope)
def get_refund_gateway_status(
    payment_id: int,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    """Ask the payment's gateway for the state of its refund."""
    payment = wf.payments.get(payment_id)
    order = wf.orders.get(payment.order_id)
    ensure_owner(identity, order.customer_id, "payment")
    status = wf.query_refund_status(payment_id)
    return RefundStatusEnvelope(refund=RefundStatusSchema(**status.to_dict()))


@app.delete("/api/payments/{payment_id}", response_model=PaymentEnvelope)
def cancel_payment(
    payment_id: int,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    payment = wf.payments.get(payment_id)
    order = wf.orders.get(payment.order_id)
    ensure_owner(identity, order.customer_id, "payment")
    result = wf.cancel_payment(payment_id)
    return settlement_to_envelope(result, "Payment cancelled")


@app.post("/api/payments/{payment_id}/refund", response_model=PaymentEnvelope)
def refund_payment(
    payment_id: int,
    request: Optional[RefundRequest] = None,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    amount = request.amount if request is not None else None
    result = wf.process_refund(payment_id, amount)
    return settlement_to_envelope(result, "Refund processed")


# --- Notification Endpoints ---


@app.get("/api/notifications", response_model=NotificationListEnvelope)
def list_notifications(
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    notifications = wf.notifications.list_all()
    return NotificationListEnvelope(
        notifications=[NotificationSchema(**n.to_dict()) for n in notifications],
        count=len(notifications),
    )


@app.get("/api/notifications/my", response_model=NotificationListEnvelope)
def list_my_notifications(
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    notifications = wf.notifications.list_for_customer(identity.user_id)
    return NotificationListEnvelope(
        notifications=[NotificationSchema(**n.to_dict()) for n in notifications],
        count=len(notifications),
    )


@app.get("/api/notifications/{notification_id}", response_model=NotificationEnvelope)
def get_notification(
    notification_id: int,
    identity: Identity = Depends(get_identity),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    notification = wf.notifications.get(notification_id)
    if notification.customer_id is not None:
        ensure_owner(identity, notification.customer_id, "notification")
    return NotificationEnvelope(notification=NotificationSchema(**notification.to_dict()))


@app.post("/api/notifications", response_model=NotificationEnvelope, status_code=201)
def create_notification(
    request: NotificationCreateRequest,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    notification = wf.notifications.emit(
        request.customer_id,
        request.message,
        request.category,
        scheduled_at=request.scheduled_at,
        order_id=request.order_id,
    )
    return NotificationEnvelope(
        message="Notification created",
        notification=NotificationSchema(**notification.to_dict()),
    )


@app.patch("/api/notifications/{notification_id}/mark-sent", response_model=NotificationEnvelope)
def mark_notification_sent(
    notification_id: int,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    notification = wf.notifications.mark_sent(notification_id)
    return NotificationEnvelope(
        message="Notification marked as sent",
        notification=NotificationSchema(**notification.to_dict()),
    )


@app.post("/api/notifications/send-promotion", response_model=NotificationEnvelope, status_code=201)
def send_promotion(
    request: PromotionRequest,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    notification = wf.notifications.promotion(
        request.customer_id, request.message, scheduled_at=request.scheduled_at
    )
    return NotificationEnvelope(
        message="Promotion scheduled",
        notification=NotificationSchema(**notification.to_dict()),
    )


@app.post(
    "/api/notifications/send-order-status",
    response_model=NotificationEnvelope,
    status_code=201,
)
def send_order_status(
    request: OrderStatusNotificationRequest,
    _: Identity = Depends(require_admin),
    wf: SettlementWorkflow = Depends(get_workflow),
):
    notification = wf.notify_order_status(request.order_id, request.status)
    return NotificationEnvelope(
        message="Order status notification sent",
        notification=NotificationSchema(**notification.to_dict()),
    )
