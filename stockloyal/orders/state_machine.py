"""Order and batch state machines.

Order states:
    pending    -> validating | placed | cancelled | failed
    queued     -> pending | placed | cancelled
    validating -> journaling | failed
    journaling -> submitting | failed
    submitting -> submitted | failed
    submitted  -> confirmed
    placed     -> confirmed | cancelled
    confirmed  -> approved
    approved   -> funded
    funded, failed, cancelled are terminal.

Batch states:
    staged -> approved | discarded   (one-way; nothing leaves approved/discarded)

Row-by-row code calls ``transition()``; set-based UPDATEs use
``sources_for()`` in their WHERE clause so the database enforces the same edges.

Usage:
    from stockloyal.orders.state_machine import transition

    transition(order, OrderStatus.VALIDATING)
"""

from __future__ import annotations

from stockloyal.common.models import BatchStatus, Order, OrderStatus, PrepareBatch
from stockloyal.orders.exceptions import InvalidTransitionError

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.VALIDATING, OrderStatus.PLACED, OrderStatus.CANCELLED, OrderStatus.FAILED}
    ),
    OrderStatus.QUEUED: frozenset({OrderStatus.PENDING, OrderStatus.PLACED, OrderStatus.CANCELLED}),
    OrderStatus.VALIDATING: frozenset({OrderStatus.JOURNALING, OrderStatus.FAILED}),
    OrderStatus.JOURNALING: frozenset({OrderStatus.SUBMITTING, OrderStatus.FAILED}),
    OrderStatus.SUBMITTING: frozenset({OrderStatus.SUBMITTED, OrderStatus.FAILED}),
    OrderStatus.SUBMITTED: frozenset({OrderStatus.CONFIRMED}),
    OrderStatus.PLACED: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.APPROVED}),
    OrderStatus.APPROVED: frozenset({OrderStatus.FUNDED}),
    OrderStatus.FUNDED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

BATCH_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.STAGED: frozenset({BatchStatus.APPROVED, BatchStatus.DISCARDED}),
    BatchStatus.APPROVED: frozenset(),
    BatchStatus.DISCARDED: frozenset(),
}

TERMINAL_ORDER_STATES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(OrderStatus(current), frozenset())


def sources_for(target: OrderStatus) -> list[OrderStatus]:
    """All order states that may move to ``target``, for guarded bulk UPDATEs."""
    return sorted(
        (s for s, targets in ORDER_TRANSITIONS.items() if target in targets),
        key=lambda s: s.value,
    )


def transition(order: Order, target: OrderStatus, error_message: str | None = None) -> Order:
    """Move an order to ``target`` or raise.

    Args:
        order: ORM order (modified in place; caller flushes).
        target: Desired state.
        error_message: Stored on the order when moving to ``failed``.

    Raises:
        InvalidTransitionError: The edge does not exist.
    """
    current = OrderStatus(order.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Order cannot move from {current.value} to {target.value}",
            context={"order_id": order.id, "from": current.value, "to": target.value},
        )
    order.status = target
    if error_message is not None:
        order.error_message = error_message
    return order


def transition_batch(batch: PrepareBatch, target: BatchStatus) -> PrepareBatch:
    """Move a prepare batch to ``target`` or raise InvalidTransitionError."""
    current = BatchStatus(batch.status)
    if target not in BATCH_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Batch cannot move from {current.value} to {target.value}",
            context={"batch_id": batch.batch_id, "from": current.value, "to": target.value},
        )
    batch.status = target
    return batch
