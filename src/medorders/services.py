"""Order workflows: checkout, laboratory and delivery assignment, delivery lifecycle."""

import logging
from dataclasses import dataclass, field
from typing import Any

from . import lifecycle
from .errors import (
    InvalidOrderError,
    InvalidTransitionError,
    NotAssignedError,
    OrderAlreadyAssignedError,
    PermissionDeniedError,
)
from .models import Cart, Order, OrderStatus, Role, StepResult, User, _utc_now
from .orders import CheckoutResult, OrderStore
from .store import Database
from .users import UserStore

logger = logging.getLogger(__name__)


@dataclass
class DeliveryAssignment:
    order: Order
    partner_address: dict[str, Any] | None
    steps: list[StepResult] = field(default_factory=list)


def _stamp(order: Order, target: OrderStatus, reason: str | None = None) -> None:
    """Move an order to `target` and record the side fields that go with it."""
    now = _utc_now()
    if target == OrderStatus.ASSIGNED_TO_DELIVERY:
        order.assigned_at = now
        order.accepted_at = None
        order.rejection_reason = None
    elif target == OrderStatus.DELIVERY_ACCEPTED:
        order.accepted_at = now
    elif target == OrderStatus.DELIVERY_REJECTED:
        order.rejection_reason = reason
        order.assigned_at = None
    elif target == OrderStatus.OUT_FOR_DELIVERY:
        order.out_for_delivery_at = now
    elif target == OrderStatus.DELIVERED:
        order.delivered_at = now
        if order.cod:
            order.is_paid = True
    elif target == OrderStatus.CONFIRMED and order.status == OrderStatus.DELIVERY_REJECTED:
        # Reopened for a new delivery partner
        order.delivery_partner = None
    order.status = target


class OrderService:
    def __init__(self, db: Database):
        self.db = db
        self.orders = OrderStore(db)
        self.users = UserStore(db)

    # --- Intake ---

    def checkout(self, cart: Cart) -> CheckoutResult:
        """Create the orders for a patient's cart (online or prescription checkout)."""
        return self.orders.create_multi_lab_orders(cart)

    def cod_checkout(self, cart: Cart, total_price: float | None) -> CheckoutResult:
        """
        Cash-on-delivery checkout.

        The client's total is only a sanity check: product orders must quote a
        positive amount, prescription orders may quote 0 but must quote one.
        Stored totals are always recomputed from catalog prices.
        """
        if cart.need_assignment:
            if total_price is None:
                raise InvalidOrderError("total price is required")
        elif not total_price or total_price <= 0:
            raise InvalidOrderError("total price must be positive for product orders")
        cart.cod = True
        cart.is_paid = False
        return self.orders.create_multi_lab_orders(cart)

    # --- Laboratory assignment ---

    def claim_order(self, order_id: str, lab: User) -> Order:
        """Give an unassigned order to the claiming laboratory."""
        if lab.role != Role.LABORATORY:
            raise PermissionDeniedError("only laboratories can claim orders")

        def guard(order: Order) -> None:
            if order.laboratory_user:
                raise OrderAlreadyAssignedError(order.id)
            if lifecycle.is_terminal(order.status):
                raise InvalidTransitionError(order.status.value, OrderStatus.CONFIRMED.value)

        def mutate(order: Order) -> None:
            order.laboratory_user = lab.id
            order.need_assignment = False
            if order.status == OrderStatus.PENDING_ASSIGNMENT:
                order.status = OrderStatus.CONFIRMED

        order = self.orders.update_if(order_id, guard, mutate)
        logger.info("Laboratory %s claimed order %s", lab.id, order_id)
        return order

    def assign_lab_to_order(self, order_id: str, lab_ref: str) -> Order:
        """Admin assignment; `lab_ref` may be a laboratory user id or profile id."""
        lab_user_id = self.users.resolve_lab_user_id(lab_ref)

        def guard(order: Order) -> None:
            if order.status != OrderStatus.CONFIRMED:
                lifecycle.check_transition(order.status, OrderStatus.CONFIRMED)

        def mutate(order: Order) -> None:
            order.laboratory_user = lab_user_id
            order.need_assignment = False
            if order.status != OrderStatus.CONFIRMED:
                _stamp(order, OrderStatus.CONFIRMED)

        order = self.orders.update_if(order_id, guard, mutate)
        logger.info("Admin assigned order %s to laboratory %s", order_id, lab_user_id)
        return order

    # --- Delivery assignment ---

    def assign_order_to_delivery_partner(
        self, order_id: str, partner_id: str, actor: User
    ) -> DeliveryAssignment:
        """
        Hand a confirmed (or pending) order to a delivery partner.

        Laboratories may only assign their own orders; admins may assign any.
        The partner's address is resolved afterwards and never fails the call.
        """
        if actor.role not in (Role.LABORATORY, Role.ADMIN):
            raise PermissionDeniedError("only laboratories and admins assign deliveries")
        partner = self.users.get_user(partner_id)
        if partner.role != Role.DELIVERY_PARTNER:
            raise InvalidOrderError(f"user {partner_id} is not a delivery partner")

        def guard(order: Order) -> None:
            if actor.role == Role.LABORATORY and order.laboratory_user != actor.id:
                raise NotAssignedError(order.id, "laboratory")
            if order.status not in lifecycle.ASSIGNABLE:
                raise InvalidTransitionError(
                    order.status.value,
                    OrderStatus.ASSIGNED_TO_DELIVERY.value,
                    "order must be confirmed or pending",
                )

        def mutate(order: Order) -> None:
            if order.status == OrderStatus.PENDING:
                _stamp(order, OrderStatus.CONFIRMED)
            order.delivery_partner = partner.id
            _stamp(order, OrderStatus.ASSIGNED_TO_DELIVERY)

        order = self.orders.update_if(order_id, guard, mutate)
        logger.info("Order %s assigned to delivery partner %s by %s", order_id, partner.id, actor.id)

        address, step = self.users.resolve_partner_address(partner.id)
        return DeliveryAssignment(order=order, partner_address=address, steps=[step])

    # --- Delivery lifecycle ---

    def _advance_delivery(
        self,
        order_id: str,
        actor: User,
        target: OrderStatus,
        reason: str | None = None,
    ) -> Order:
        expected = lifecycle.predecessor(target)

        def guard(order: Order) -> None:
            if actor.role != Role.ADMIN and order.delivery_partner != actor.id:
                raise NotAssignedError(order.id)
            if order.status != expected:
                raise InvalidTransitionError(
                    order.status.value,
                    target.value,
                    f"order must be in {expected.value} status",
                )

        order = self.orders.update_if(order_id, guard, lambda o: _stamp(o, target, reason))
        logger.info("Order %s moved to %s by %s", order_id, target.value, actor.id)
        return order

    def accept_delivery(self, order_id: str, partner: User) -> Order:
        return self._advance_delivery(order_id, partner, OrderStatus.DELIVERY_ACCEPTED)

    def reject_delivery(self, order_id: str, partner: User, reason: str | None) -> Order:
        if not reason or not reason.strip():
            raise InvalidOrderError("rejection reason is required")
        return self._advance_delivery(
            order_id, partner, OrderStatus.DELIVERY_REJECTED, reason.strip()
        )

    def update_delivery_status(self, order_id: str, partner: User, status: OrderStatus) -> Order:
        """Partner progress update: out_for_delivery or delivered."""
        if status not in lifecycle.DELIVERY_PROGRESS:
            allowed = ", ".join(sorted(s.value for s in lifecycle.DELIVERY_PROGRESS))
            raise InvalidOrderError(f"invalid status. Must be one of: {allowed}")
        return self._advance_delivery(order_id, partner, status)

    # --- Generic status changes ---

    def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        actor: User,
        reason: str | None = None,
    ) -> Order:
        """
        Apply any transition the table allows, checking who may make it.

        Delivery-owned states go through the delivery partner guard; assigning
        a partner requires the dedicated endpoint.
        """
        if status in lifecycle.DELIVERY_OWNED:
            if status == OrderStatus.DELIVERY_REJECTED:
                return self.reject_delivery(order_id, actor, reason)
            return self._advance_delivery(order_id, actor, status)
        if status == OrderStatus.ASSIGNED_TO_DELIVERY:
            raise InvalidOrderError("assign a delivery partner to move an order to assigned_to_delivery")

        def guard(order: Order) -> None:
            is_admin = actor.role == Role.ADMIN
            is_lab = order.laboratory_user is not None and order.laboratory_user == actor.id
            is_customer = order.ordered_by == actor.id
            if status == OrderStatus.CANCELLED:
                if not (is_admin or is_lab or is_customer):
                    raise PermissionDeniedError(f"you cannot cancel order {order.id}")
            elif not (is_admin or is_lab):
                raise PermissionDeniedError(f"only the assigned laboratory or an admin can set {status.value}")
            lifecycle.check_transition(order.status, status)

        order = self.orders.update_if(order_id, guard, lambda o: _stamp(o, status, reason))
        logger.info("Order %s moved to %s by %s", order_id, status.value, actor.id)
        return order

    def cancel_unpaid_order(self, order_id: str, customer: User) -> Order:
        """Cancel an order its customer has not paid for yet."""
        def guard(order: Order) -> None:
            if order.ordered_by != customer.id:
                raise PermissionDeniedError(f"order {order.id} was placed by another user")
            if order.is_paid:
                raise InvalidTransitionError(
                    order.status.value, OrderStatus.CANCELLED.value, "order is already paid"
                )
            lifecycle.check_transition(order.status, OrderStatus.CANCELLED)

        order = self.orders.update_if(
            order_id, guard, lambda o: _stamp(o, OrderStatus.CANCELLED)
        )
        logger.info("Customer %s cancelled unpaid order %s", customer.id, order_id)
        return order

    # --- Payment mirror ---

    def set_payment_status(self, order_id: str, is_paid: bool) -> Order:
        """Manual override; last write wins against gateway and COD updates."""
        order = self.orders.update_order(order_id, is_paid=is_paid)
        logger.info("Order %s payment status set to is_paid=%s", order_id, is_paid)
        return order
