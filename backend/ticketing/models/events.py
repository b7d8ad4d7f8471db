from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Event(db.Model):
    """A ticketed event. starts_at is stored as UTC."""
    __tablename__ = "events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "starts_at": to_utc_z(self.starts_at),
        }


class TicketType(db.Model):
    """
    Purchasable ticket category with finite capacity.

    INVARIANTS:
    - 0 <= quantity_sold <= capacity (enforced by CHECK constraint)
    - quantity_sold only moves through inventory_service.increment_sold,
      which is a single atomic UPDATE (never read-modify-write in Python)
    """
    __tablename__ = "ticket_types"
    __table_args__ = (
        db.CheckConstraint("capacity >= 0", name="ck_ticket_types_capacity_nonneg"),
        db.CheckConstraint(
            "quantity_sold >= 0 AND quantity_sold <= capacity",
            name="ck_ticket_types_sold_within_capacity",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)

    capacity = db.Column(db.Integer, nullable=False)
    quantity_sold = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    event = db.relationship("Event", backref=db.backref("ticket_types", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "capacity": self.capacity,
            "quantity_sold": self.quantity_sold,
        }
