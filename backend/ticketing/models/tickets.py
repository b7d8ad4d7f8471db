from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Ticket(db.Model):
    """
    One issued unit of admission.

    Created only by issuance_service. user_id is the current holder and
    changes only when a transfer is accepted. transfer_status is a
    denormalized marker ("pending" or NULL) kept in step with the
    TicketTransfer rows by transfer_service.
    """
    __tablename__ = "tickets"
    __table_args__ = (
        db.Index("ix_tickets_user_event", "user_id", "event_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)
    ticket_type_id = db.Column(db.Integer, db.ForeignKey("ticket_types.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    ticket_code = db.Column(db.String(12), nullable=False, unique=True)
    transfer_status = db.Column(db.String(16), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order_item = db.relationship("OrderItem", backref=db.backref("tickets", lazy=True))
    event = db.relationship("Event")
    ticket_type = db.relationship("TicketType")
    holder = db.relationship("User", foreign_keys=[user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "event_id": self.event_id,
            "ticket_type_id": self.ticket_type_id,
            "user_id": self.user_id,
            "ticket_code": self.ticket_code,
            "transfer_status": self.transfer_status,
            "created_at": to_utc_z(self.created_at),
        }


class TicketTransfer(db.Model):
    """
    Request to move a ticket to another holder.

    LIFECYCLE:
    1. pending: created by the holder, code sent to recipient
    2. accepted: recipient claimed the ticket (ownership moved)
    3. cancelled: withdrawn by the sender, declined by the recipient,
       or swept as stale

    At most one pending transfer per ticket: checked before insert and
    enforced by the partial unique index below.
    """
    __tablename__ = "ticket_transfers"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'accepted', 'cancelled')",
            name="ck_ticket_transfers_status",
        ),
        db.Index(
            "uq_ticket_transfers_one_pending",
            "ticket_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
        db.Index("ix_ticket_transfers_recipient_status", "to_user_email", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("tickets.id"), nullable=False, index=True)

    from_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    to_user_email = db.Column(db.String(255), nullable=False)
    to_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    transfer_code = db.Column(db.String(10), nullable=False, unique=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    ticket = db.relationship("Ticket", backref=db.backref("transfers", lazy=True))
    from_user = db.relationship("User", foreign_keys=[from_user_id])
    to_user = db.relationship("User", foreign_keys=[to_user_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "from_user_id": self.from_user_id,
            "to_user_email": self.to_user_email,
            "to_user_id": self.to_user_id,
            "transfer_code": self.transfer_code,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancellation_reason": self.cancellation_reason,
        }
