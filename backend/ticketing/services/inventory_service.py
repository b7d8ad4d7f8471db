# Overview: Sold-inventory counters for ticket types.

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import TicketType


class InventoryError(Exception):
    """Raised when inventory counter operations fail."""
    pass


def increment_sold(ticket_type_id: int, delta: int) -> None:
    """
    Atomically add `delta` to TicketType.quantity_sold.

    Single UPDATE ... SET quantity_sold = quantity_sold + :delta, so
    concurrent issuances against the same type never lose an increment.
    Capacity is enforced by the table's CHECK constraint (IntegrityError
    on overflow), not re-checked here. Does not commit.
    """
    if delta <= 0:
        raise InventoryError("delta must be positive")

    stmt = (
        update(TicketType)
        .where(TicketType.id == ticket_type_id)
        .values(quantity_sold=TicketType.quantity_sold + delta)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        raise InventoryError(f"Ticket type {ticket_type_id} not found")

