"""
Order Service — 注文ステータスのステートマシン

    PENDING ──▶ CONFIRMED ──▶ IN_TRANSIT ──▶ COMPLETED
       │            │
       └────────────┴──▶ CANCELLED

COMPLETED と CANCELLED は終端状態。IN_TRANSIT からのキャンセルは不可。
遷移表にない変更は IllegalTransition として拒否する。
"""

from enum import Enum

from ..common.errors import IllegalTransition, InvalidInput


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_TRANSIT = "IN_TRANSIT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.IN_TRANSIT, OrderStatus.CANCELLED}),
    OrderStatus.IN_TRANSIT: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value.strip().upper())
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise InvalidInput(
            f"Unknown order status '{value}'. Valid statuses: {allowed}", status=value
        ) from None


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: OrderStatus, target: OrderStatus, order_id=None) -> None:
    if can_transition(current, target):
        return
    label = f"Order {order_id}" if order_id is not None else "Order"
    if current in TERMINAL_STATES:
        message = f"{label} is {current.value}, a terminal status; it cannot move to {target.value}"
    else:
        message = f"{label} cannot move from {current.value} to {target.value}"
    raise IllegalTransition(
        message,
        order_id=str(order_id) if order_id is not None else None,
        current_status=current.value,
        requested_status=target.value,
    )
