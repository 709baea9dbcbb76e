"""Order storage and the multi-laboratory checkout splitter."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from .catalog import ProductCatalog, apply_quantity_change
from .errors import InvalidOrderError, OrderNotFoundError
from .models import (
    Cart,
    Order,
    OrderLine,
    OrderStatus,
    Page,
    Product,
    StepResult,
    StepStatus,
    User,
    _parse_ts,
    _utc_now,
    paginate,
)
from .store import Database

logger = logging.getLogger(__name__)

OrderGuard = Callable[[Order], None]
OrderMutation = Callable[[Order], None]


@dataclass
class OrderFilters:
    status: OrderStatus | None = None
    need_assignment: bool | None = None
    ordered_by: str | None = None
    laboratory_user: str | None = None
    delivery_partner: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None  # exclusive

    def matches(self, order: Order) -> bool:
        if self.status is not None and order.status != self.status:
            return False
        if self.need_assignment is not None and order.need_assignment != self.need_assignment:
            return False
        if self.ordered_by and order.ordered_by != self.ordered_by:
            return False
        if self.laboratory_user and order.laboratory_user != self.laboratory_user:
            return False
        if self.delivery_partner and order.delivery_partner != self.delivery_partner:
            return False
        if self.created_from or self.created_to:
            created = _parse_ts(order.created_at)
            if self.created_from and created < self.created_from:
                return False
            if self.created_to and created >= self.created_to:
                return False
        return True


@dataclass
class CheckoutResult:
    """Orders produced by one checkout plus any side steps that did not fully succeed."""

    orders: list[Order]
    steps: list[StepResult] = field(default_factory=list)

    @property
    def warnings(self) -> list[StepResult]:
        return [s for s in self.steps if not s.ok]


def validate_cart(cart: Cart) -> None:
    """
    Check the order invariant before anything is written.

    Raises:
        InvalidOrderError: If the cart has neither lines nor a prescription,
            or a line is malformed.
    """
    prescription = (cart.prescription or "").strip()
    if not cart.products and not prescription:
        raise InvalidOrderError("an order needs products or a prescription")
    for line in cart.products:
        if not line.product:
            raise InvalidOrderError("every product line needs a product reference")
        if line.quantity <= 0:
            raise InvalidOrderError(f"quantity for product {line.product} must be positive")


def _sorted_newest(orders: list[Order]) -> list[Order]:
    return sorted(orders, key=lambda o: o.created_at, reverse=True)


class OrderStore:
    """Manages order documents."""

    def __init__(self, db: Database):
        self.db = db
        self.catalog = ProductCatalog(db)

    # --- Creation ---

    def create_multi_lab_orders(self, cart: Cart) -> CheckoutResult:
        """
        Split a cart into one order per laboratory owner and persist them.

        Orders and stock decrements are written in one transaction. Lines whose
        product cannot be found are left out of every lab group; if no group
        remains, a single unassigned order keeps all the requested lines.
        """
        validate_cart(cart)
        with self.db.transaction() as data:
            result = self.split_cart(data, cart)

        logger.info(
            "Checkout by %s produced %d order(s): %s",
            cart.ordered_by,
            len(result.orders),
            ", ".join(o.id for o in result.orders),
        )
        return result

    def create_paid_orders(self, cart: Cart) -> tuple[CheckoutResult, bool]:
        """
        Create the orders for a captured payment exactly once.

        Returns the orders and whether they were created by this call; a
        payment id that already has orders yields those orders instead.
        """
        validate_cart(cart)
        with self.db.transaction() as data:
            existing = [
                Order.from_dict(d) for d in data["orders"].values()
                if cart.payment_id and d.get("payment_id") == cart.payment_id
            ]
            if not existing:
                result = self.split_cart(data, cart)
        if existing:
            return CheckoutResult(orders=existing), False
        logger.info(
            "Payment %s produced %d order(s)", cart.payment_id, len(result.orders)
        )
        return result, True

    def split_cart(self, data: dict[str, Any], cart: Cart) -> CheckoutResult:
        """Fan a cart out into orders inside an already open transaction."""
        shared = cart.shared_fields()
        shared["prescription"] = cart.prescription.strip() if cart.prescription else None
        products = data["products"]

        if not cart.products:
            order = Order.create(
                cart.ordered_by,
                need_assignment=cart.need_assignment,
                status=(
                    OrderStatus.PENDING_ASSIGNMENT
                    if cart.need_assignment
                    else OrderStatus.CONFIRMED
                ),
                **shared,
            )
            data["orders"][order.id] = order.to_dict()
            return CheckoutResult(orders=[order])

        steps: list[StepResult] = []
        groups: dict[str, list[OrderLine]] = {}
        for line in cart.products:
            doc = products.get(line.product)
            owner = doc.get("owner_id") if doc else None
            if not owner:
                logger.warning(
                    "Dropping cart line for product %s: no owning laboratory", line.product
                )
                steps.append(
                    StepResult(
                        "resolve_owner", StepStatus.DEGRADED,
                        "product has no owning laboratory", line.product,
                    )
                )
                continue
            groups.setdefault(owner, []).append(line)

        if not groups:
            order = Order.create(
                cart.ordered_by,
                products=cart.products,
                total_price=0.0,
                need_assignment=True,
                status=OrderStatus.PENDING_ASSIGNMENT,
                **shared,
            )
            data["orders"][order.id] = order.to_dict()
            logger.warning(
                "No laboratory could be resolved for cart of %s; created unassigned order %s",
                cart.ordered_by,
                order.id,
            )
            return CheckoutResult(orders=[order], steps=steps)

        created: list[Order] = []
        for lab_id, lines in groups.items():
            total = sum(
                products[line.product]["price"] * line.quantity
                for line in lines
                if line.product in products
            )
            order = Order.create(
                cart.ordered_by,
                products=lines,
                laboratory_user=lab_id,
                total_price=total,
                need_assignment=False,
                status=OrderStatus.CONFIRMED,
                **shared,
            )
            data["orders"][order.id] = order.to_dict()
            created.append(order)
            for line in lines:
                steps.append(apply_quantity_change(products, line.product, -line.quantity))
        return CheckoutResult(orders=created, steps=steps)

    def create_order(
        self,
        ordered_by: str,
        products: list[OrderLine] | None = None,
        laboratory_user: str | None = None,
        prescription: str | None = None,
        total_price: float | None = None,
        need_assignment: bool = False,
    ) -> CheckoutResult:
        """
        Create exactly one order, for callers that already know the laboratory.

        When no total is given it is computed from current prices, and every
        line must have enough stock.
        """
        lines = list(products or [])
        validate_cart(Cart(ordered_by=ordered_by, products=lines, prescription=prescription))

        if lines and not total_price:
            total_price = 0.0
            for line in lines:
                product = self.catalog.check_availability(line.product, line.quantity)
                total_price += product.price * line.quantity

        order = Order.create(
            ordered_by,
            products=lines,
            laboratory_user=laboratory_user,
            prescription=prescription.strip() if prescription else None,
            total_price=total_price or 0.0,
            need_assignment=need_assignment,
            status=OrderStatus.PENDING,
        )
        steps: list[StepResult] = []
        with self.db.transaction() as data:
            data["orders"][order.id] = order.to_dict()
            for line in lines:
                steps.append(apply_quantity_change(data["products"], line.product, -line.quantity))
        logger.info("Created order %s for %s", order.id, ordered_by)
        return CheckoutResult(orders=[order], steps=steps)

    def calculate_order_total(self, lines: list[OrderLine]) -> float:
        """Sum price x quantity; products that no longer exist contribute nothing."""
        products = self.db.collection("products")
        return sum(
            products[line.product]["price"] * line.quantity
            for line in lines
            if line.product in products
        )

    # --- Reads ---

    def get_order(self, order_id: str) -> Order:
        """
        Get an order by ID.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
        """
        doc = self.db.collection("orders").get(order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order.from_dict(doc)

    def _all(self) -> list[Order]:
        return [Order.from_dict(d) for d in self.db.collection("orders").values()]

    def list_orders(self, filters: OrderFilters, page: int = 1, limit: int = 10) -> Page:
        orders = [o for o in self._all() if filters.matches(o)]
        return paginate(_sorted_newest(orders), page, limit)

    def list_lab_orders(
        self,
        lab_id: str,
        status: OrderStatus | None = None,
        assigned_only: bool = False,
        unassigned_only: bool = False,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        """
        Orders a laboratory can see.

        By default: orders assigned to the lab plus every order waiting for a
        lab. `assigned_only` and `unassigned_only` narrow to one side.
        """
        def visible(order: Order) -> bool:
            if assigned_only:
                return order.laboratory_user == lab_id
            if unassigned_only:
                return order.need_assignment
            return order.laboratory_user == lab_id or order.need_assignment

        orders = [
            o for o in self._all()
            if visible(o) and (status is None or o.status == status)
        ]
        return paginate(_sorted_newest(orders), page, limit)

    def list_orders_needing_assignment(self, page: int = 1, limit: int = 10) -> Page:
        return self.list_orders(OrderFilters(need_assignment=True), page, limit)

    # --- Writes ---

    def update_if(self, order_id: str, guard: OrderGuard, mutate: OrderMutation) -> Order:
        """
        Atomically check a precondition and apply a change to one order.

        The guard runs with the store locked against the current document and
        raises the appropriate error to refuse the change; nothing is written
        in that case.
        """
        with self.db.transaction() as data:
            doc = data["orders"].get(order_id)
            if doc is None:
                raise OrderNotFoundError(order_id)
            order = Order.from_dict(doc)
            guard(order)
            mutate(order)
            order.updated_at = _utc_now()
            data["orders"][order_id] = order.to_dict()
        return order

    def update_order(self, order_id: str, **fields: Any) -> Order:
        """Unconditional field update."""
        def mutate(order: Order) -> None:
            for key, value in fields.items():
                setattr(order, key, value)

        return self.update_if(order_id, lambda order: None, mutate)

    # --- Presentation ---

    def populate(self, order: Order, data: dict[str, Any] | None = None) -> dict[str, Any]:
        """Order dict with user and product references expanded to summaries."""
        data = data or self.db.snapshot()
        users = data["users"]
        products = data["products"]

        def user_summary(user_id: str | None) -> dict[str, Any] | None:
            if not user_id:
                return None
            doc = users.get(user_id)
            if doc is None:
                return {"id": user_id}
            return User.from_dict(doc).summary()

        result = order.to_dict()
        result["ordered_by"] = user_summary(order.ordered_by)
        result["laboratory_user"] = user_summary(order.laboratory_user)
        result["delivery_partner"] = user_summary(order.delivery_partner)
        result["products"] = [
            {
                "product": (
                    Product.from_dict(products[line.product]).summary()
                    if line.product in products
                    else {"id": line.product}
                ),
                "quantity": line.quantity,
            }
            for line in order.products
        ]
        return result

    def populate_many(self, orders: list[Order]) -> list[dict[str, Any]]:
        data = self.db.snapshot()
        return [self.populate(order, data) for order in orders]

    # --- Statistics ---

    def order_stats(self) -> dict[str, Any]:
        orders = self._all()
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        delivered = [o for o in orders if o.status == OrderStatus.DELIVERED]
        return {
            "total_orders": len(orders),
            "pending_orders": sum(1 for o in orders if o.status == OrderStatus.PENDING),
            "completed_today": sum(
                1 for o in delivered if _parse_ts(o.updated_at) >= today
            ),
            "out_for_delivery": sum(
                1 for o in orders if o.status == OrderStatus.OUT_FOR_DELIVERY
            ),
            "needs_assignment": sum(1 for o in orders if o.need_assignment),
            "total_revenue": sum(o.total_price for o in delivered),
        }

    def delivery_partner_stats(self, partner_id: str) -> dict[str, Any]:
        orders = [o for o in self._all() if o.delivery_partner == partner_id]
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        by_status: dict[str, int] = {}
        for o in orders:
            by_status[o.status.value] = by_status.get(o.status.value, 0) + 1
        delivered = [o for o in orders if o.status == OrderStatus.DELIVERED]
        return {
            "total_assigned": len(orders),
            "by_status": by_status,
            "delivered_today": sum(
                1 for o in delivered
                if o.delivered_at and _parse_ts(o.delivered_at) >= today
            ),
            "cod_collected": sum(o.total_price for o in delivered if o.cod),
        }
