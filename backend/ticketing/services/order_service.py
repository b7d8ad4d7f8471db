# Overview: Order lookups and compare-and-set status transitions.

"""
Order status service

Order status changes only through transition_order_status(), a single
conditional UPDATE (compare-and-set). Two concurrent deliveries of the
same payment notification therefore cannot both observe "pending" and
both apply "paid": exactly one UPDATE matches, the other sees rowcount 0.

ALLOWED TRANSITIONS:
- pending -> paid
- pending -> cancelled
paid and cancelled are terminal.
"""

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import Order
from ..time_utils import utcnow


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_CANCELLED = "cancelled"

VALID_ORDER_STATUSES = [
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PAID,
    ORDER_STATUS_CANCELLED,
]

ALLOWED_TRANSITIONS = {
    (ORDER_STATUS_PENDING, ORDER_STATUS_PAID),
    (ORDER_STATUS_PENDING, ORDER_STATUS_CANCELLED),
}

# Largest value a BIGINT primary key can hold
MAX_ORDER_ID = 2**63 - 1


class OrderError(Exception):
    """Raised for order operation errors."""
    pass


class OrderNotFound(OrderError):
    """Order reference does not resolve to a stored order."""

    def __init__(self, order_ref):
        super().__init__(f"Order {order_ref} not found")
        self.order_ref = order_ref


def is_transition_allowed(current: str, new: str) -> bool:
    return (current, new) in ALLOWED_TRANSITIONS


def get_order(order_id) -> Order:
    """
    Load an order by id. Accepts ints or numeric strings (the provider's
    external_reference arrives as a string).

    Raises:
        OrderNotFound: unknown or malformed reference
    """
    try:
        oid = int(str(order_id).strip())
    except (TypeError, ValueError):
        raise OrderNotFound(order_id)
    # Out of range for the id column; could never have been stored
    if not 0 < oid <= MAX_ORDER_ID:
        raise OrderNotFound(order_id)

    order = db.session.query(Order).filter_by(id=oid).first()
    if not order:
        raise OrderNotFound(order_id)
    return order


def transition_order_status(
    order_id: int,
    expected_current: str,
    new_status: str,
    *,
    payment_reference: str | None = None,
) -> bool:
    """
    Compare-and-set the order status.

    Returns True when this call moved the order from `expected_current`
    to `new_status`; False when the stored status was no longer
    `expected_current` (another request won) or the transition is not
    allowed. Does not commit.
    """
    if new_status not in VALID_ORDER_STATUSES:
        raise OrderError(f"Invalid order status: {new_status}")
    if not is_transition_allowed(expected_current, new_status):
        return False

    values = {"status": new_status}
    if new_status == ORDER_STATUS_PAID:
        values["paid_at"] = utcnow()
    elif new_status == ORDER_STATUS_CANCELLED:
        values["cancelled_at"] = utcnow()
    if payment_reference:
        values["payment_reference"] = payment_reference

    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status == expected_current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return bool(result.rowcount)


def record_payment_reference(order_id: int, payment_reference: str) -> bool:
    """Set the provider reference if none is stored yet. Does not commit."""
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.payment_reference.is_(None))
        .values(payment_reference=payment_reference)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return bool(result.rowcount)


def get_order_summary(order_id: int) -> dict:
    """Order with its items and the tickets issued for each item."""
    order = get_order(order_id)
    summary = order.to_dict()
    for item_dict, item in zip(summary["items"], order.items):
        item_dict["tickets"] = [ticket.to_dict() for ticket in item.tickets]
    return summary
