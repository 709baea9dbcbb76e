"""Order status transition table."""

from .errors import InvalidTransitionError
from .models import OrderStatus

S = OrderStatus

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.PENDING: frozenset({S.PENDING_ASSIGNMENT, S.CONFIRMED, S.CANCELLED}),
    S.PENDING_ASSIGNMENT: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.ASSIGNED_TO_DELIVERY, S.CANCELLED}),
    S.ASSIGNED_TO_DELIVERY: frozenset({S.DELIVERY_ACCEPTED, S.DELIVERY_REJECTED, S.CANCELLED}),
    S.DELIVERY_REJECTED: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.DELIVERY_ACCEPTED: frozenset({S.OUT_FOR_DELIVERY}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Target states only the assigned delivery partner (or an admin) may set.
DELIVERY_OWNED = frozenset({
    S.DELIVERY_ACCEPTED,
    S.DELIVERY_REJECTED,
    S.OUT_FOR_DELIVERY,
    S.DELIVERED,
})

# Statuses a delivery partner can be assigned from.
ASSIGNABLE = frozenset({S.PENDING, S.CONFIRMED})

# Targets of PATCH /delivery/orders/{id}/status.
DELIVERY_PROGRESS = frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED})


def allowed_targets(current: OrderStatus) -> frozenset[OrderStatus]:
    return TRANSITIONS[current]


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS[status]


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: OrderStatus, target: OrderStatus) -> None:
    """
    Raise unless the table allows current -> target.

    Raises:
        InvalidTransitionError: With the allowed targets in the message.
    """
    if can_transition(current, target):
        return
    allowed = sorted(s.value for s in allowed_targets(current))
    reason = f"allowed: {', '.join(allowed)}" if allowed else f"'{current.value}' is final"
    raise InvalidTransitionError(current.value, target.value, reason)


def predecessor(target: OrderStatus) -> OrderStatus:
    """The one status a delivery-lifecycle target must be reached from."""
    sources = [src for src, targets in TRANSITIONS.items() if target in targets]
    if len(sources) != 1:
        raise ValueError(f"{target.value} has no unique predecessor")
    return sources[0]
