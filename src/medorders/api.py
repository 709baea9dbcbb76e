"""FastAPI REST API for medorders."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterator, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .auth import parse_authorization, verify_token
from .catalog import ProductCatalog
from .config import Settings, get_settings
from .errors import (
    AuthenticationError,
    InsufficientStockError,
    InvalidOrderError,
    InvalidSchemaVersionError,
    InvalidSignatureError,
    InvalidTransitionError,
    MedordersError,
    NotAssignedError,
    OrderAlreadyAssignedError,
    OrderNotFoundError,
    PaymentGatewayError,
    PaymentNotCapturedError,
    PermissionDeniedError,
    ProductNotFoundError,
    ProfileNotFoundError,
    UserNotFoundError,
    WebhookRejectedError,
)
from .models import Cart, Order, OrderStatus, Page, Role, StepResult, User
from .orders import CheckoutResult, OrderFilters
from .payments import PaymentGateway, PaymentService
from .services import OrderService
from .store import Database
from .users import UserStore

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class OrderLineSchema(BaseModel):
    product: str
    quantity: int


class DeliveryAddressSchema(BaseModel):
    address: Optional[str] = None
    pin_code: Optional[str] = None


class CartRequest(BaseModel):
    """Checkout body: product lines, a prescription, or both."""

    products: list[OrderLineSchema] = Field(default_factory=list)
    prescription: Optional[str] = None
    need_assignment: bool = False
    customer_address: Optional[str] = None
    customer_pin_code: Optional[str] = None
    delivery_address: Optional[DeliveryAddressSchema] = None

    def to_cart(self, user_id: str) -> Cart:
        return Cart.from_payload(user_id, self.model_dump())


class CODCheckoutRequest(CartRequest):
    total_price: Optional[float] = Field(
        default=None, description="Client-side total; only checked, never stored"
    )


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    available_quantity: int = Field(default=0, ge=0)
    image_url: Optional[str] = None


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    available_quantity: Optional[int] = None
    image_url: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None


class DeliveryStatusRequest(BaseModel):
    status: OrderStatus


class RejectDeliveryRequest(BaseModel):
    reason: Optional[str] = None


class DeliveryProfileRequest(BaseModel):
    address: Optional[str] = None
    pin_code: Optional[str] = None
    city: Optional[str] = None


class AssignDeliveryRequest(BaseModel):
    delivery_partner_id: str = Field(..., min_length=1)


class AssignLabRequest(BaseModel):
    laboratory_id: str = Field(
        ..., min_length=1, description="Laboratory user id or laboratory profile id"
    )


class PaymentStatusRequest(BaseModel):
    is_paid: bool


class ProductPaymentOrderRequest(BaseModel):
    amount: int = Field(..., description="Amount in the currency's smallest unit")
    currency: Optional[str] = None
    order_data: CartRequest


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    order_data: CartRequest


# --- Dependencies ---


def get_app_settings() -> Settings:
    return get_settings()


def get_database(settings: Settings = Depends(get_app_settings)) -> Database:
    return Database(settings.data_dir)


def get_gateway(settings: Settings = Depends(get_app_settings)) -> Iterator[PaymentGateway]:
    gateway = PaymentGateway.from_settings(settings)
    try:
        yield gateway
    finally:
        gateway.close()


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Database = Depends(get_database),
    settings: Settings = Depends(get_app_settings),
) -> User:
    """Resolve the bearer token to a stored user."""
    token = parse_authorization(authorization)
    user_id = verify_token(token, settings.token_secret)
    user = UserStore(db).find_user(user_id)
    if user is None:
        raise AuthenticationError("unknown user")
    return user


def require_role(*roles: Role):
    """Dependency factory admitting only users with one of `roles`."""
    allowed = ", ".join(r.value for r in roles)

    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise PermissionDeniedError(f"requires role: {allowed}")
        return user

    return dependency


require_patient = require_role(Role.USER)
require_laboratory = require_role(Role.LABORATORY)
require_partner = require_role(Role.DELIVERY_PARTNER)
require_admin = require_role(Role.ADMIN)


def get_order_service(db: Database = Depends(get_database)) -> OrderService:
    return OrderService(db)


def get_catalog(db: Database = Depends(get_database)) -> ProductCatalog:
    return ProductCatalog(db)


def get_payment_service(
    db: Database = Depends(get_database),
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> PaymentService:
    return PaymentService(db, gateway, settings)


# --- Helper Functions ---


def envelope(
    data: Any = None,
    message: Optional[str] = None,
    warnings: Optional[list[StepResult]] = None,
    page: Optional[Page] = None,
) -> dict[str, Any]:
    """Success envelope; optional keys are only present when set."""
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    if warnings:
        body["warnings"] = [w.to_dict() for w in warnings]
    if page is not None:
        body["pagination"] = page.pagination()
    return body


def _day_range(day: Optional[date]) -> tuple[Optional[datetime], Optional[datetime]]:
    if day is None:
        return None, None
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _check_can_view(order: Order, user: User) -> None:
    if user.role == Role.ADMIN:
        return
    if user.id in (order.ordered_by, order.laboratory_user, order.delivery_partner):
        return
    if user.role == Role.LABORATORY and order.need_assignment:
        return
    raise PermissionDeniedError(f"you cannot view order {order.id}")


def _orders_page(service: OrderService, page: Page) -> dict[str, Any]:
    return envelope(service.orders.populate_many(page.items), page=page)


def _checkout_response(service: OrderService, result: CheckoutResult, message: str) -> dict[str, Any]:
    return envelope(
        {"orders": service.orders.populate_many(result.orders)},
        message=message,
        warnings=result.warnings,
    )


# --- FastAPI App ---


app = FastAPI(
    title="medorders API",
    description="Orders, laboratory assignment and delivery for a healthcare marketplace",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handlers ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    OrderNotFoundError: 404,
    ProductNotFoundError: 404,
    UserNotFoundError: 404,
    ProfileNotFoundError: 404,
    NotAssignedError: 403,
    PermissionDeniedError: 403,
    AuthenticationError: 401,
    InvalidTransitionError: 400,
    OrderAlreadyAssignedError: 400,
    InvalidOrderError: 400,
    InsufficientStockError: 400,
    InvalidSignatureError: 400,
    PaymentNotCapturedError: 400,
    WebhookRejectedError: 400,
    PaymentGatewayError: 502,
    InvalidSchemaVersionError: 500,
}


def _failure(status_code: int, error: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "error_type": error_type},
    )


@app.exception_handler(MedordersError)
async def medorders_error_handler(request: Request, exc: MedordersError) -> JSONResponse:
    """Map MedordersError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code == 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _failure(status_code, "Internal server error", type(exc).__name__)
    return _failure(status_code, str(exc), type(exc).__name__)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "invalid request")
    return _failure(400, f"{location}: {message}" if location else message, "ValidationError")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _failure(exc.status_code, str(exc.detail), "HTTPException")


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _failure(500, "Internal server error", type(exc).__name__)


# --- Endpoints ---


@app.get("/api/health")
def health_check(db: Database = Depends(get_database)):
    """Liveness plus a cheap read of the data file."""
    try:
        orders = db.collection("orders")
        return {"status": "ok", "version": __version__, "order_count": len(orders)}
    except (MedordersError, OSError, ValueError) as e:
        return {"status": "error", "detail": str(e)}


# --- Product Endpoints ---


@app.get("/api/products")
def list_products(
    search: Optional[str] = Query(default=None),
    min_price: Optional[float] = Query(default=None, ge=0),
    max_price: Optional[float] = Query(default=None, ge=0),
    owner_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    catalog: ProductCatalog = Depends(get_catalog),
):
    result = catalog.list_products(search, min_price, max_price, owner_id, page, limit)
    return envelope([p.to_dict() for p in result.items], page=result)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    return envelope(catalog.get_product(product_id).to_dict())


@app.post("/api/products", status_code=201)
def create_product(
    request: ProductCreateRequest,
    user: User = Depends(require_laboratory),
    catalog: ProductCatalog = Depends(get_catalog),
):
    product = catalog.create_product(
        user,
        name=request.name,
        description=request.description,
        price=request.price,
        available_quantity=request.available_quantity,
        image_url=request.image_url,
    )
    return envelope(product.to_dict(), message="Product created")


@app.patch("/api/products/{product_id}")
def update_product(
    product_id: str,
    request: ProductUpdateRequest,
    user: User = Depends(require_role(Role.LABORATORY, Role.ADMIN)),
    catalog: ProductCatalog = Depends(get_catalog),
):
    product = catalog.update_product(product_id, user, **request.model_dump(exclude_none=True))
    return envelope(product.to_dict(), message="Product updated")


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    user: User = Depends(require_role(Role.LABORATORY, Role.ADMIN)),
    catalog: ProductCatalog = Depends(get_catalog),
):
    product = catalog.delete_product(product_id, user)
    return envelope(product.to_dict(), message="Product deleted")


# --- Order Endpoints ---


@app.post("/api/orders", status_code=201)
def create_orders(
    request: CartRequest,
    user: User = Depends(require_patient),
    service: OrderService = Depends(get_order_service),
):
    result = service.checkout(request.to_cart(user.id))
    return _checkout_response(service, result, f"Created {len(result.orders)} order(s)")


@app.post("/api/orders/cod", status_code=201)
def create_cod_orders(
    request: CODCheckoutRequest,
    user: User = Depends(require_patient),
    service: OrderService = Depends(get_order_service),
):
    result = service.cod_checkout(request.to_cart(user.id), request.total_price)
    response = _checkout_response(
        service, result, f"Cash on delivery: created {len(result.orders)} order(s)"
    )
    response["data"]["order_status"] = (
        OrderStatus.PENDING_ASSIGNMENT.value
        if request.need_assignment
        else OrderStatus.CONFIRMED.value
    )
    return response


@app.get("/api/orders/mine")
def list_my_orders(
    status: Optional[OrderStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    filters = OrderFilters(status=status, ordered_by=user.id)
    return _orders_page(service, service.orders.list_orders(filters, page, limit))


@app.get("/api/orders/lab")
def list_lab_orders(
    status: Optional[OrderStatus] = Query(default=None),
    assigned_only: bool = Query(default=False),
    unassigned_only: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(require_laboratory),
    service: OrderService = Depends(get_order_service),
):
    result = service.orders.list_lab_orders(
        user.id, status, assigned_only, unassigned_only, page, limit
    )
    return _orders_page(service, result)


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order = service.orders.get_order(order_id)
    _check_can_view(order, user)
    return envelope(service.orders.populate(order))


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    request: StatusUpdateRequest,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order = service.update_order_status(order_id, request.status, user, request.reason)
    return envelope(service.orders.populate(order), message=f"Order status updated to {order.status.value}")


@app.post("/api/orders/{order_id}/claim")
def claim_order(
    order_id: str,
    user: User = Depends(require_laboratory),
    service: OrderService = Depends(get_order_service),
):
    order = service.claim_order(order_id, user)
    return envelope(service.orders.populate(order), message="Order claimed")


@app.post("/api/orders/{order_id}/assign-delivery")
def lab_assign_delivery(
    order_id: str,
    request: AssignDeliveryRequest,
    user: User = Depends(require_laboratory),
    service: OrderService = Depends(get_order_service),
):
    assignment = service.assign_order_to_delivery_partner(order_id, request.delivery_partner_id, user)
    return envelope(
        {
            "order": service.orders.populate(assignment.order),
            "delivery_partner_address": assignment.partner_address,
        },
        message="Order assigned to delivery partner",
        warnings=[s for s in assignment.steps if not s.ok],
    )


@app.delete("/api/orders/{order_id}/cancel-unpaid")
def cancel_unpaid_order(
    order_id: str,
    user: User = Depends(require_patient),
    service: OrderService = Depends(get_order_service),
):
    order = service.cancel_unpaid_order(order_id, user)
    return envelope(service.orders.populate(order), message="Order cancelled")


@app.patch("/api/orders/{order_id}/payment-status")
def update_payment_status(
    order_id: str,
    request: PaymentStatusRequest,
    user: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    order = service.set_payment_status(order_id, request.is_paid)
    return envelope(service.orders.populate(order), message="Payment status updated")


# --- Delivery Partner Endpoints ---


@app.get("/api/delivery/orders")
def list_delivery_orders(
    status: Optional[OrderStatus] = Query(default=None),
    day: Optional[date] = Query(default=None, alias="date"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(require_partner),
    service: OrderService = Depends(get_order_service),
):
    created_from, created_to = _day_range(day)
    filters = OrderFilters(
        status=status,
        delivery_partner=user.id,
        created_from=created_from,
        created_to=created_to,
    )
    return _orders_page(service, service.orders.list_orders(filters, page, limit))


@app.post("/api/delivery/orders/{order_id}/accept")
def accept_delivery(
    order_id: str,
    user: User = Depends(require_partner),
    service: OrderService = Depends(get_order_service),
):
    order = service.accept_delivery(order_id, user)
    return envelope(service.orders.populate(order), message="Order accepted for delivery")


@app.post("/api/delivery/orders/{order_id}/reject")
def reject_delivery(
    order_id: str,
    request: RejectDeliveryRequest,
    user: User = Depends(require_partner),
    service: OrderService = Depends(get_order_service),
):
    order = service.reject_delivery(order_id, user, request.reason)
    return envelope(service.orders.populate(order), message="Order rejected")


@app.patch("/api/delivery/orders/{order_id}/status")
def update_delivery_status(
    order_id: str,
    request: DeliveryStatusRequest,
    user: User = Depends(require_partner),
    service: OrderService = Depends(get_order_service),
):
    order = service.update_delivery_status(order_id, user, request.status)
    return envelope(service.orders.populate(order), message=f"Order marked {order.status.value}")


@app.get("/api/delivery/profile")
def get_delivery_profile(
    user: User = Depends(require_partner),
    service: OrderService = Depends(get_order_service),
):
    profile = service.users.get_or_create_delivery_profile(user.id)
    return envelope({"user": user.summary(), "profile": profile.to_dict()})


@app.post("/api/delivery/profile")
def update_delivery_profile(
    request: DeliveryProfileRequest,
    user: User = Depends(require_partner),
    service: OrderService = Depends(get_order_service),
):
    profile = service.users.update_delivery_profile(user.id, **request.model_dump(exclude_unset=True))
    return envelope(
        {"user": user.summary(), "profile": profile.to_dict()}, message="Delivery profile saved"
    )


@app.get("/api/delivery/stats")
def get_delivery_stats(
    user: User = Depends(require_partner),
    service: OrderService = Depends(get_order_service),
):
    return envelope(service.orders.delivery_partner_stats(user.id))


# --- Admin Endpoints ---


@app.get("/api/admin/orders")
def admin_list_orders(
    status: Optional[OrderStatus] = Query(default=None),
    need_assignment: Optional[bool] = Query(default=None),
    ordered_by: Optional[str] = Query(default=None),
    laboratory_user: Optional[str] = Query(default=None),
    delivery_partner: Optional[str] = Query(default=None),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None, description="Inclusive"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    filters = OrderFilters(
        status=status,
        need_assignment=need_assignment,
        ordered_by=ordered_by,
        laboratory_user=laboratory_user,
        delivery_partner=delivery_partner,
        created_from=_day_range(date_from)[0],
        created_to=_day_range(date_to)[1],
    )
    return _orders_page(service, service.orders.list_orders(filters, page, limit))


@app.get("/api/admin/orders/needing-assignment")
def admin_orders_needing_assignment(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return _orders_page(service, service.orders.list_orders_needing_assignment(page, limit))


@app.get("/api/admin/orders/stats")
def admin_order_stats(
    user: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return envelope(service.orders.order_stats())


@app.post("/api/admin/orders/{order_id}/assign-lab")
def admin_assign_lab(
    order_id: str,
    request: AssignLabRequest,
    user: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    order = service.assign_lab_to_order(order_id, request.laboratory_id)
    return envelope(service.orders.populate(order), message="Laboratory assigned")


@app.post("/api/admin/orders/{order_id}/assign-delivery")
def admin_assign_delivery(
    order_id: str,
    request: AssignDeliveryRequest,
    user: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    assignment = service.assign_order_to_delivery_partner(order_id, request.delivery_partner_id, user)
    return envelope(
        {
            "order": service.orders.populate(assignment.order),
            "delivery_partner_address": assignment.partner_address,
        },
        message="Order assigned to delivery partner",
        warnings=[s for s in assignment.steps if not s.ok],
    )


# --- Payment Endpoints ---


@app.post("/api/payments/product-order", status_code=201)
def create_product_payment_order(
    request: ProductPaymentOrderRequest,
    user: User = Depends(require_patient),
    payments: PaymentService = Depends(get_payment_service),
):
    cart = request.order_data.to_cart(user.id)
    gateway_order = payments.create_product_payment_order(
        user.id, request.amount, cart, request.currency
    )
    return envelope(gateway_order, message="Payment order created")


@app.post("/api/payments/verify")
def verify_product_payment(
    request: VerifyPaymentRequest,
    user: User = Depends(require_patient),
    payments: PaymentService = Depends(get_payment_service),
):
    result, created = payments.verify_product_payment(
        request.order_data.to_cart(user.id),
        request.razorpay_order_id,
        request.razorpay_payment_id,
        request.razorpay_signature,
    )
    body = envelope(
        {
            "orders": payments.orders.populate_many(result.orders),
            "payment_id": request.razorpay_payment_id,
        },
        message="Payment verified" if created else "Payment already processed",
        warnings=result.warnings,
    )
    return JSONResponse(status_code=201 if created else 200, content=body)


@app.post("/api/payments/webhook")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    x_razorpay_event_id: Optional[str] = Header(default=None),
    payments: PaymentService = Depends(get_payment_service),
):
    raw_body = await request.body()
    outcome = await run_in_threadpool(
        payments.handle_webhook, raw_body, x_razorpay_signature, x_razorpay_event_id
    )
    return envelope(
        {
            "event_id": outcome.event_id,
            "event": outcome.event,
            "duplicate": outcome.duplicate,
            "orders": [o.id for o in outcome.orders],
        },
        message="Event already processed" if outcome.duplicate else "Webhook processed",
    )
