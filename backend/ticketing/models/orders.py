from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Purchase intent for one event, grouping one or more OrderItems.

    LIFECYCLE:
    1. pending: created at checkout, awaiting payment notification
    2. paid: terminal success, tickets issued
    3. cancelled: terminal failure

    Only pending -> paid and pending -> cancelled exist. Status writes go
    through order_service.transition_order_status (compare-and-set).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("status IN ('pending', 'paid', 'cancelled')", name="ck_orders_status"),
        db.Index("ix_orders_user_status", "user_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    # Provider payment id, nullable until the first notification resolves here
    payment_reference = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    event = db.relationship("Event")
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_id": self.event_id,
            "status": self.status,
            "payment_reference": self.payment_reference,
            "created_at": to_utc_z(self.created_at),
            "paid_at": to_utc_z(self.paid_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "items": [item.to_dict() for item in self.items],
        }


class OrderItem(db.Model):
    """Line item on an order. Immutable once created."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    ticket_type_id = db.Column(db.Integer, db.ForeignKey("ticket_types.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    ticket_type = db.relationship("TicketType")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "ticket_type_id": self.ticket_type_id,
            "quantity": self.quantity,
        }
