# Overview: Append-only audit trail for fulfillment and transfer events.

"""
Fulfillment ledger

- One row per state change (order status, issuance unit, issuance
  failure, transfer transition), never updated or deleted.
- Written in the caller's transaction: append, then the caller commits
  together with the change being recorded.
- occurred_at is business time; created_at is the DB insert time.
- payload is a small JSON object of identifiers, not a copy of domain state.
"""

from __future__ import annotations

import json
from datetime import datetime

from ..extensions import db
from ..models import FulfillmentLedgerEvent


NOTE_MAX_LENGTH = 255


def append_ledger_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    order_id: int | None = None,
    ticket_id: int | None = None,
    transfer_id: int | None = None,
    occurred_at: datetime | None = None,
    note: str | None = None,
    payload: dict | None = None,
) -> FulfillmentLedgerEvent:
    """Stage a ledger row and flush it so it has an id. Does not commit."""
    row = FulfillmentLedgerEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        order_id=order_id,
        ticket_id=ticket_id,
        transfer_id=transfer_id,
        note=note[:NOTE_MAX_LENGTH] if note else None,
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
    )
    # Leave occurred_at unset so the server default stamps it
    if occurred_at is not None:
        row.occurred_at = occurred_at
    db.session.add(row)
    db.session.flush()
    return row


def get_entity_events(entity_type: str, entity_id: int) -> list[FulfillmentLedgerEvent]:
    return (
        db.session.query(FulfillmentLedgerEvent)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(FulfillmentLedgerEvent.id.asc())
        .all()
    )
