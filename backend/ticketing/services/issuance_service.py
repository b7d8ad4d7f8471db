# Overview: Ticket issuance for paid orders.

"""
Ticket Issuance Engine

WHY: Turn a paid order into Ticket rows and sold-inventory counts,
keeping the two in lockstep.

UNIT OF WORK (per order item, one DB transaction):
1. Count tickets already issued for the item
2. Create the missing ones, each with a fresh unique 12-char code
3. increment_sold(ticket_type, created) as one atomic UPDATE
4. Ledger event, commit

A failure rolls back the whole unit (no tickets without inventory, no
inventory without tickets) and surfaces as IssuanceFailed. Units already
committed stay. Because step 1 skips what exists, re-running issuance
for the same order is safe and creates only what is missing.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import OrderItem, Ticket
from .code_service import allocate_unique_code, CodeAllocationError, TICKET_CODE_LENGTH
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import increment_sold, InventoryError
from .ledger_service import append_ledger_event
from .order_service import get_order, ORDER_STATUS_PAID


MAX_UNIT_ATTEMPTS = 3


class IssuanceFailed(Exception):
    """Issuance could not complete; the order stays paid for reconciliation."""

    def __init__(self, order_id: int, order_item_id: int | None, reason: str):
        super().__init__(f"Issuance failed for order {order_id} (item {order_item_id}): {reason}")
        self.order_id = order_id
        self.order_item_id = order_item_id
        self.reason = reason


def issue_tickets(order_id: int) -> list[Ticket]:
    """
    Issue tickets for every item of a paid order.

    Returns:
        Tickets created by this call (empty when everything was already issued)

    Raises:
        OrderNotFound: order does not exist
        IssuanceFailed: order not paid, or a unit failed
    """
    order = get_order(order_id)
    if order.status != ORDER_STATUS_PAID:
        raise IssuanceFailed(order.id, None, f"order is {order.status}, not paid")

    # Plain values; ORM instances expire on every unit commit
    oid = order.id
    owner_id = order.user_id
    event_id = order.event_id
    items = [(item.id, item.ticket_type_id, item.quantity) for item in order.items]

    issued: list[Ticket] = []
    for item_id, ticket_type_id, quantity in items:
        try:
            created = run_with_retry(
                lambda: _issue_item_unit(
                    order_id=oid,
                    order_item_id=item_id,
                    ticket_type_id=ticket_type_id,
                    quantity=quantity,
                    owner_id=owner_id,
                    event_id=event_id,
                )
            )
        except IssuanceFailed as exc:
            _record_failure(exc)
            raise
        except (SQLAlchemyError, InventoryError, CodeAllocationError) as exc:
            db.session.rollback()
            failure = IssuanceFailed(oid, item_id, str(exc))
            _record_failure(failure)
            raise failure from exc
        issued.extend(created)

    current_app.logger.info(
        "Issuance complete for order %s: %d new tickets", oid, len(issued)
    )
    return issued


def _issue_item_unit(
    *,
    order_id: int,
    order_item_id: int,
    ticket_type_id: int,
    quantity: int,
    owner_id: int,
    event_id: int,
) -> list[Ticket]:
    for attempt in range(MAX_UNIT_ATTEMPTS):
        # Serializes concurrent reissue runs on the same item (PostgreSQL)
        lock_for_update(db.session.query(OrderItem).filter_by(id=order_item_id)).first()

        existing = db.session.query(Ticket).filter_by(order_item_id=order_item_id).count()
        missing = quantity - existing
        if missing <= 0:
            db.session.rollback()
            current_app.logger.info(
                "Order item %s already has %d/%d tickets, skipping", order_item_id, existing, quantity
            )
            return []

        reserved: set[str] = set()
        tickets = [
            Ticket(
                order_item_id=order_item_id,
                event_id=event_id,
                ticket_type_id=ticket_type_id,
                user_id=owner_id,
                ticket_code=allocate_unique_code(Ticket.ticket_code, TICKET_CODE_LENGTH, reserved=reserved),
            )
            for _ in range(missing)
        ]
        codes = [t.ticket_code for t in tickets]
        db.session.add_all(tickets)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            if not _codes_taken(codes):
                raise IssuanceFailed(order_id, order_item_id, f"ticket insert rejected: {exc.orig}") from exc
            # Code taken between check and insert; regenerate the batch
            current_app.logger.warning(
                "Ticket code collision on order item %s (attempt %d), retrying",
                order_item_id, attempt + 1,
            )
            continue

        # Inside the write transaction now; a concurrent run may have committed first
        if db.session.query(Ticket).filter_by(order_item_id=order_item_id).count() > quantity:
            db.session.rollback()
            current_app.logger.warning(
                "Order item %s was issued concurrently (attempt %d), re-checking",
                order_item_id, attempt + 1,
            )
            continue

        increment_sold(ticket_type_id, missing)

        append_ledger_event(
            event_type="tickets.issued",
            entity_type="order_item",
            entity_id=order_item_id,
            order_id=order_id,
            payload={"ticket_type_id": ticket_type_id, "created": missing, "quantity": quantity},
        )

        db.session.commit()
        return tickets

    raise IssuanceFailed(order_id, order_item_id, "ticket code collisions exhausted retries")


def _codes_taken(codes: list[str]) -> bool:
    return db.session.query(Ticket.id).filter(Ticket.ticket_code.in_(codes)).first() is not None


def _record_failure(exc: IssuanceFailed) -> None:
    current_app.logger.error("%s", exc)
    try:
        append_ledger_event(
            event_type="issuance.failed",
            entity_type="order",
            entity_id=exc.order_id,
            order_id=exc.order_id,
            note=exc.reason,
            payload={"order_item_id": exc.order_item_id},
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Could not record issuance failure for order %s", exc.order_id)


def get_issued_counts(order_id: int) -> dict[int, int]:
    """Tickets issued per order item, for reconciliation views."""
    order = get_order(order_id)
    return {
        item.id: db.session.query(Ticket).filter_by(order_item_id=item.id).count()
        for item in order.items
    }
