"""Data models for medorders."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(value: str) -> datetime:
    """Parse a timestamp produced by _utc_now (or a bare date) into an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _generate_id() -> str:
    """Generate a new document ID."""
    return uuid.uuid4().hex


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"
    DOCTOR = "doctor"
    LABORATORY = "laboratory"
    DELIVERY_PARTNER = "deliverypartner"


class OrderStatus(str, Enum):
    """Every status an order can be persisted with."""

    PENDING = "pending"
    PENDING_ASSIGNMENT = "pending_assignment"
    CONFIRMED = "confirmed"
    ASSIGNED_TO_DELIVERY = "assigned_to_delivery"
    DELIVERY_ACCEPTED = "delivery_accepted"
    DELIVERY_REJECTED = "delivery_rejected"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class StepResult:
    """Outcome of a side step (stock decrement, profile lookup) that must not abort its caller."""

    step: str
    status: StepStatus
    detail: str = ""
    ref: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"step": self.step, "status": self.status.value}
        if self.detail:
            result["detail"] = self.detail
        if self.ref is not None:
            result["ref"] = self.ref
        return result


@dataclass
class User:
    id: str
    name: str
    role: Role
    email: str | None = None
    phone: str | None = None
    created_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "email": self.email,
            "phone": self.phone,
            "created_at": self.created_at,
        }

    def summary(self) -> dict[str, Any]:
        """The subset of fields embedded in populated orders."""
        return {"id": self.id, "name": self.name, "email": self.email, "phone": self.phone}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            id=data["id"],
            name=data["name"],
            role=Role(data["role"]),
            email=data.get("email"),
            phone=data.get("phone"),
            created_at=data.get("created_at", ""),
        )

    @classmethod
    def create(
        cls, name: str, role: Role, email: str | None = None, phone: str | None = None
    ) -> "User":
        return cls(id=_generate_id(), name=name, role=role, email=email, phone=phone)


@dataclass
class LaboratoryProfile:
    """Public profile of a laboratory account; its id differs from the lab's user id."""

    id: str
    user_id: str
    name: str
    address: str | None = None
    city: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "address": self.address,
            "city": self.city,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LaboratoryProfile":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data["name"],
            address=data.get("address"),
            city=data.get("city"),
        )


@dataclass
class DeliveryProfile:
    id: str
    user_id: str
    address: str | None = None
    pin_code: str | None = None
    city: str | None = None
    is_verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "address": self.address,
            "pin_code": self.pin_code,
            "city": self.city,
            "is_verified": self.is_verified,
        }

    def address_dict(self) -> dict[str, Any]:
        return {"address": self.address, "pin_code": self.pin_code, "city": self.city}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeliveryProfile":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            address=data.get("address"),
            pin_code=data.get("pin_code"),
            city=data.get("city"),
            is_verified=data.get("is_verified", False),
        )

    @classmethod
    def placeholder(cls, user_id: str) -> "DeliveryProfile":
        """Empty profile created the first time a partner's address is looked up."""
        return cls(id=_generate_id(), user_id=user_id)


@dataclass
class Product:
    id: str
    name: str
    description: str
    price: float
    available_quantity: int
    owner_id: str  # laboratory user that listed the product
    image_url: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "available_quantity": self.available_quantity,
            "owner_id": self.owner_id,
            "image_url": self.image_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def summary(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "price": self.price, "image_url": self.image_url}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            price=data["price"],
            available_quantity=data["available_quantity"],
            owner_id=data["owner_id"],
            image_url=data.get("image_url"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(
        cls,
        owner_id: str,
        name: str,
        description: str,
        price: float,
        available_quantity: int,
        image_url: str | None = None,
    ) -> "Product":
        now = _utc_now()
        return cls(
            id=_generate_id(),
            name=name,
            description=description,
            price=price,
            available_quantity=available_quantity,
            owner_id=owner_id,
            image_url=image_url,
            created_at=now,
            updated_at=now,
        )


@dataclass
class OrderLine:
    product: str  # product ID
    quantity: int

    def to_dict(self) -> dict[str, Any]:
        return {"product": self.product, "quantity": self.quantity}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderLine":
        return cls(product=data["product"], quantity=data["quantity"])


@dataclass
class Order:
    """A single persisted order; one checkout may produce several."""

    id: str
    ordered_by: str
    products: list[OrderLine] = field(default_factory=list)
    laboratory_user: str | None = None
    delivery_partner: str | None = None
    prescription: str | None = None
    total_price: float = 0.0
    is_paid: bool = False
    cod: bool = False
    need_assignment: bool = False
    status: OrderStatus = OrderStatus.PENDING
    customer_address: str | None = None
    customer_pin_code: str | None = None
    payment_id: str | None = None
    gateway_order_id: str | None = None
    # Delivery tracking
    assigned_at: str | None = None
    accepted_at: str | None = None
    out_for_delivery_at: str | None = None
    delivered_at: str | None = None
    rejection_reason: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ordered_by": self.ordered_by,
            "laboratory_user": self.laboratory_user,
            "delivery_partner": self.delivery_partner,
            "products": [line.to_dict() for line in self.products],
            "prescription": self.prescription,
            "total_price": self.total_price,
            "is_paid": self.is_paid,
            "cod": self.cod,
            "need_assignment": self.need_assignment,
            "status": self.status.value,
            "customer_address": self.customer_address,
            "customer_pin_code": self.customer_pin_code,
            "payment_id": self.payment_id,
            "gateway_order_id": self.gateway_order_id,
            "assigned_at": self.assigned_at,
            "accepted_at": self.accepted_at,
            "out_for_delivery_at": self.out_for_delivery_at,
            "delivered_at": self.delivered_at,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            ordered_by=data["ordered_by"],
            products=[OrderLine.from_dict(p) for p in data.get("products", [])],
            laboratory_user=data.get("laboratory_user"),
            delivery_partner=data.get("delivery_partner"),
            prescription=data.get("prescription"),
            total_price=data.get("total_price", 0.0),
            is_paid=data.get("is_paid", False),
            cod=data.get("cod", False),
            need_assignment=data.get("need_assignment", False),
            status=OrderStatus(data.get("status", OrderStatus.PENDING.value)),
            customer_address=data.get("customer_address"),
            customer_pin_code=data.get("customer_pin_code"),
            payment_id=data.get("payment_id"),
            gateway_order_id=data.get("gateway_order_id"),
            assigned_at=data.get("assigned_at"),
            accepted_at=data.get("accepted_at"),
            out_for_delivery_at=data.get("out_for_delivery_at"),
            delivered_at=data.get("delivered_at"),
            rejection_reason=data.get("rejection_reason"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def create(cls, ordered_by: str, products: list[OrderLine] | None = None, **fields: Any) -> "Order":
        """Create a new order with generated ID and timestamps."""
        now = _utc_now()
        return cls(
            id=_generate_id(),
            ordered_by=ordered_by,
            products=list(products or []),
            created_at=now,
            updated_at=now,
            **fields,
        )


@dataclass
class Cart:
    """A checkout request before it is split into orders."""

    ordered_by: str
    products: list[OrderLine] = field(default_factory=list)
    prescription: str | None = None
    need_assignment: bool = False
    cod: bool = False
    is_paid: bool = False
    customer_address: str | None = None
    customer_pin_code: str | None = None
    payment_id: str | None = None
    gateway_order_id: str | None = None

    def shared_fields(self) -> dict[str, Any]:
        """Fields copied onto every order produced from this cart."""
        return {
            "prescription": self.prescription,
            "cod": self.cod,
            "is_paid": self.is_paid,
            "customer_address": self.customer_address,
            "customer_pin_code": self.customer_pin_code,
            "payment_id": self.payment_id,
            "gateway_order_id": self.gateway_order_id,
        }

    def to_payload(self) -> dict[str, Any]:
        """The client-facing cart shape, as stored in gateway order notes."""
        return {
            "products": [line.to_dict() for line in self.products],
            "prescription": self.prescription,
            "need_assignment": self.need_assignment,
            "customer_address": self.customer_address,
            "customer_pin_code": self.customer_pin_code,
        }

    @classmethod
    def from_payload(cls, ordered_by: str, data: dict[str, Any]) -> "Cart":
        """
        Build a cart from request or notes JSON.

        Accepts either flat customer_address/customer_pin_code keys or a
        nested delivery_address {address, pin_code} object.
        """
        delivery = data.get("delivery_address") or {}
        return cls(
            ordered_by=ordered_by,
            products=[OrderLine.from_dict(p) for p in data.get("products") or []],
            prescription=data.get("prescription"),
            need_assignment=bool(data.get("need_assignment", False)),
            customer_address=data.get("customer_address") or delivery.get("address"),
            customer_pin_code=data.get("customer_pin_code") or delivery.get("pin_code"),
        )


@dataclass
class Page:
    items: list[Any]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def pagination(self) -> dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
        }


def paginate(items: list[Any], page: int, limit: int) -> Page:
    """Slice an already-sorted list into a Page."""
    start = (page - 1) * limit
    return Page(items=items[start:start + limit], page=page, limit=limit, total=len(items))
