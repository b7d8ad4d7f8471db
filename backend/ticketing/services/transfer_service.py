# backend/ticketing/services/transfer_service.py
"""
Ticket transfer service.

WHY: Let a ticket holder hand a ticket to someone else by email, with a
claim code, while keeping exactly one open transfer per ticket.

LIFECYCLE:
1. PENDING: Created by the holder; Ticket.transfer_status = "pending"
2. ACCEPTED: Recipient claimed it; ticket ownership moved, marker cleared
3. CANCELLED: Withdrawn by the sender, declined by the recipient or
   swept as stale; marker cleared

Every status write is a compare-and-set on (id, status = 'pending') and
updates the ticket marker in the same commit. The partial unique index
on ticket_transfers(ticket_id) WHERE status = 'pending' is the store-level
guarantee against two concurrent pending transfers.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Ticket, TicketTransfer, User
from ..time_utils import as_utc_naive, to_utc_z, utcnow
from .code_service import allocate_unique_code, TRANSFER_CODE_LENGTH
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event
from .notification_service import (
    build_accept_url,
    get_notifier,
    NotificationFailed,
    NOTIFY_TRANSFER_ACCEPTED,
    NOTIFY_TRANSFER_REJECTED,
    TransferEmail,
    TransferNotice,
)
from .user_service import is_valid_email, normalize_email


# Transfer status constants
TRANSFER_STATUS_PENDING = "pending"
TRANSFER_STATUS_ACCEPTED = "accepted"
TRANSFER_STATUS_CANCELLED = "cancelled"

# Ticket.transfer_status marker; cleared to None when no transfer is open
TICKET_MARKER_PENDING = "pending"

REASON_REJECTED = "rejected by recipient"
REASON_EXPIRED = "expired"

MAX_INITIATE_ATTEMPTS = 3


class TransferError(Exception):
    """Raised when transfer operations fail."""
    pass


class TicketNotFound(TransferError):
    pass


class TransferNotFound(TransferError):
    pass


class TransferWindowClosed(TransferError):
    pass


class TransferAlreadyPending(TransferError):
    pass


class TransferNotPending(TransferError):
    pass


class TransferForbidden(TransferError):
    pass


class _TransferCodeCollision(Exception):
    pass


@dataclass
class TransferInitiation:
    transfer: TicketTransfer
    email_sent: bool
    accept_url: str


def transfer_window_open(starts_at: datetime, now: datetime, cutoff_hours: int) -> bool:
    """True while the event starts strictly more than `cutoff_hours` after `now`."""
    return as_utc_naive(starts_at) - now > timedelta(hours=cutoff_hours)


def _pending_transfer_exists(ticket_id: int) -> bool:
    return db.session.query(TicketTransfer.id).filter_by(
        ticket_id=ticket_id,
        status=TRANSFER_STATUS_PENDING,
    ).first() is not None


def _close_transfer(transfer_id: int, new_status: str, **values) -> bool:
    """Compare-and-set pending -> new_status. Does not commit."""
    stmt = (
        update(TicketTransfer)
        .where(
            TicketTransfer.id == transfer_id,
            TicketTransfer.status == TRANSFER_STATUS_PENDING,
        )
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    return bool(db.session.execute(stmt).rowcount)


def _set_ticket(ticket_id: int, **values) -> None:
    stmt = (
        update(Ticket)
        .where(Ticket.id == ticket_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(stmt)


def initiate_transfer(
    ticket_id: int,
    from_user_id: int,
    to_email: str,
    *,
    now: datetime | None = None,
) -> TransferInitiation:
    """
    Open a transfer of `ticket_id` from its holder to `to_email`.

    The transfer is committed before the recipient email is requested;
    email_sent=False means the caller should offer the accept link for
    manual sharing. The transfer is valid either way.

    Raises:
        TicketNotFound, TransferForbidden, TransferWindowClosed,
        TransferAlreadyPending, TransferError (invalid recipient)
    """
    recipient = normalize_email(to_email)
    if not is_valid_email(recipient):
        raise TransferError("A valid recipient email is required")

    now = as_utc_naive(now) or utcnow()
    cutoff_hours = current_app.config["TRANSFER_CUTOFF_HOURS"]

    def _op():
        ticket = lock_for_update(db.session.query(Ticket).filter_by(id=ticket_id)).first()
        if not ticket:
            raise TicketNotFound(f"Ticket {ticket_id} not found")

        if ticket.user_id != from_user_id:
            raise TransferForbidden("Only the current holder can transfer this ticket")

        sender = db.session.query(User).filter_by(id=from_user_id).first()
        if sender and sender.email == recipient:
            raise TransferError("Cannot transfer a ticket to yourself")

        if not transfer_window_open(ticket.event.starts_at, now, cutoff_hours):
            raise TransferWindowClosed(
                f"Tickets cannot be transferred less than {cutoff_hours} hours before the event"
            )

        if _pending_transfer_exists(ticket.id):
            raise TransferAlreadyPending(f"Ticket {ticket.id} already has a pending transfer")

        transfer = TicketTransfer(
            ticket_id=ticket.id,
            from_user_id=from_user_id,
            to_user_email=recipient,
            transfer_code=allocate_unique_code(TicketTransfer.transfer_code, TRANSFER_CODE_LENGTH),
            status=TRANSFER_STATUS_PENDING,
            created_at=now,
        )
        db.session.add(transfer)
        ticket.transfer_status = TICKET_MARKER_PENDING

        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            if _pending_transfer_exists(ticket_id):
                raise TransferAlreadyPending(f"Ticket {ticket_id} already has a pending transfer")
            raise _TransferCodeCollision()

        append_ledger_event(
            event_type="transfer.initiated",
            entity_type="ticket_transfer",
            entity_id=transfer.id,
            actor_user_id=from_user_id,
            ticket_id=ticket.id,
            transfer_id=transfer.id,
            occurred_at=now,
            note=recipient,
        )

        email = TransferEmail(
            transferId=transfer.id,
            recipientEmail=recipient,
            transferCode=transfer.transfer_code,
            eventTitle=ticket.event.title,
            eventDate=to_utc_z(ticket.event.starts_at),
            ticketCode=ticket.ticket_code,
            senderName=(sender.display_name or sender.email) if sender else "",
            siteUrl=current_app.config["SITE_URL"],
        )

        db.session.commit()
        return transfer, email

    for attempt in range(MAX_INITIATE_ATTEMPTS):
        try:
            transfer, email = run_with_retry(_op)
            break
        except _TransferCodeCollision:
            current_app.logger.warning(
                "Transfer code collision for ticket %s (attempt %d), retrying", ticket_id, attempt + 1
            )
    else:
        raise TransferError("Could not allocate a transfer code")

    current_app.logger.info("Transfer %s opened for ticket %s", transfer.id, ticket_id)

    email_sent = True
    try:
        get_notifier().send_transfer_email(email)
    except NotificationFailed as exc:
        email_sent = False
        current_app.logger.warning("Transfer email for transfer %s failed: %s", email.transferId, exc)

    return TransferInitiation(
        transfer=transfer,
        email_sent=email_sent,
        accept_url=build_accept_url(email.siteUrl, email.transferCode),
    )


def accept_transfer(
    transfer_code: str,
    accepting_user_id: int,
    *,
    now: datetime | None = None,
) -> TicketTransfer:
    """
    Claim a pending transfer by code and move the ticket to the caller.

    Raises:
        TransferNotFound: unknown code
        TransferNotPending: already accepted or cancelled
        TransferForbidden: caller is not the addressed recipient
    """
    code = transfer_code.strip().upper() if isinstance(transfer_code, str) else ""
    now = as_utc_naive(now) or utcnow()

    def _op():
        transfer = db.session.query(TicketTransfer).filter_by(transfer_code=code).first()
        if not transfer:
            raise TransferNotFound("Transfer code not found")

        if transfer.status != TRANSFER_STATUS_PENDING:
            raise TransferNotPending(f"Transfer is already {transfer.status}")

        user = db.session.query(User).filter_by(id=accepting_user_id).first()
        if not user or user.email != transfer.to_user_email:
            raise TransferForbidden("This transfer was addressed to a different email")

        transfer_id, ticket_id = transfer.id, transfer.ticket_id

        if not _close_transfer(
            transfer_id,
            TRANSFER_STATUS_ACCEPTED,
            to_user_id=user.id,
            completed_at=now,
        ):
            raise TransferNotPending("Transfer is no longer pending")

        _set_ticket(ticket_id, user_id=user.id, transfer_status=None)

        append_ledger_event(
            event_type="transfer.accepted",
            entity_type="ticket_transfer",
            entity_id=transfer_id,
            actor_user_id=user.id,
            ticket_id=ticket_id,
            transfer_id=transfer_id,
            occurred_at=now,
        )

        notice = _transfer_notice(transfer, user.email, user.display_name or user.email)

        db.session.commit()
        return transfer, notice

    transfer, notice = run_with_retry(_op)
    current_app.logger.info("Transfer %s accepted by user %s", notice.transferId, accepting_user_id)
    _notify(NOTIFY_TRANSFER_ACCEPTED, notice)
    return transfer


def cancel_transfer(
    transfer_id: int,
    requesting_user_id: int,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> TicketTransfer:
    """
    Withdraw a pending transfer. Only the original sender may cancel.

    Raises:
        TransferNotFound, TransferForbidden, TransferNotPending
    """
    now = as_utc_naive(now) or utcnow()

    def _op():
        transfer = db.session.query(TicketTransfer).filter_by(id=transfer_id).first()
        if not transfer:
            raise TransferNotFound(f"Transfer {transfer_id} not found")

        if transfer.from_user_id != requesting_user_id:
            raise TransferForbidden("Only the sender can cancel this transfer")

        if transfer.status != TRANSFER_STATUS_PENDING:
            raise TransferNotPending(f"Transfer is already {transfer.status}")

        return _cancel_locked(transfer, requesting_user_id, reason, now, "transfer.cancelled")

    transfer = run_with_retry(_op)
    current_app.logger.info("Transfer %s cancelled by user %s", transfer_id, requesting_user_id)
    return transfer


def reject_transfer(
    transfer_id: int,
    requesting_user_id: int,
    *,
    now: datetime | None = None,
) -> TicketTransfer:
    """
    Recipient declines a pending transfer; the ticket stays with the sender.

    Recorded as cancelled with reason "rejected by recipient".
    """
    now = as_utc_naive(now) or utcnow()

    def _op():
        transfer = db.session.query(TicketTransfer).filter_by(id=transfer_id).first()
        if not transfer:
            raise TransferNotFound(f"Transfer {transfer_id} not found")

        user = db.session.query(User).filter_by(id=requesting_user_id).first()
        if not user or user.email != transfer.to_user_email:
            raise TransferForbidden("Only the recipient can decline this transfer")

        if transfer.status != TRANSFER_STATUS_PENDING:
            raise TransferNotPending(f"Transfer is already {transfer.status}")

        # The sender is told; the ticket stays in their account
        sender = transfer.from_user
        notice = _transfer_notice(transfer, sender.email, sender.display_name or sender.email)
        return _cancel_locked(transfer, requesting_user_id, REASON_REJECTED, now, "transfer.rejected"), notice

    transfer, notice = run_with_retry(_op)
    current_app.logger.info("Transfer %s declined by user %s", transfer_id, requesting_user_id)
    _notify(NOTIFY_TRANSFER_REJECTED, notice)
    return transfer


def _transfer_notice(transfer: TicketTransfer, to_email: str, to_name: str) -> TransferNotice:
    ticket = transfer.ticket
    sender = transfer.from_user
    return TransferNotice(
        transferId=transfer.id,
        ticketCode=ticket.ticket_code,
        eventTitle=ticket.event.title,
        eventDate=to_utc_z(ticket.event.starts_at),
        recipientEmail=to_email,
        recipientName=to_name,
        senderName=sender.display_name or sender.email,
    )


def _notify(kind: str, notice: TransferNotice) -> None:
    try:
        get_notifier().send_transfer_notification(kind, notice)
    except NotificationFailed as exc:
        current_app.logger.warning("%s notice for transfer %s failed: %s", kind, notice.transferId, exc)


def _cancel_locked(
    transfer: TicketTransfer,
    actor_user_id: int,
    reason: str | None,
    now: datetime,
    event_type: str,
) -> TicketTransfer:
    transfer_id, ticket_id = transfer.id, transfer.ticket_id

    if not _close_transfer(
        transfer_id,
        TRANSFER_STATUS_CANCELLED,
        cancelled_at=now,
        cancelled_by_user_id=actor_user_id,
        cancellation_reason=reason,
    ):
        raise TransferNotPending("Transfer is no longer pending")

    _set_ticket(ticket_id, transfer_status=None)

    append_ledger_event(
        event_type=event_type,
        entity_type="ticket_transfer",
        entity_id=transfer_id,
        actor_user_id=actor_user_id,
        ticket_id=ticket_id,
        transfer_id=transfer_id,
        occurred_at=now,
        note=reason,
    )

    db.session.commit()
    return transfer


def cancel_stale_transfers(older_than: timedelta, *, now: datetime | None = None) -> int:
    """
    Cancel pending transfers created before `now - older_than`.

    Uses cancel_transfer with the original sender, so a transfer accepted
    while the sweep runs is simply skipped.
    """
    now = as_utc_naive(now) or utcnow()
    threshold = now - older_than

    stale = (
        db.session.query(TicketTransfer.id, TicketTransfer.from_user_id)
        .filter(
            TicketTransfer.status == TRANSFER_STATUS_PENDING,
            TicketTransfer.created_at <= threshold,
        )
        .order_by(TicketTransfer.id.asc())
        .all()
    )

    cancelled = 0
    for transfer_id, from_user_id in stale:
        try:
            cancel_transfer(transfer_id, from_user_id, REASON_EXPIRED, now=now)
            cancelled += 1
        except TransferNotPending:
            current_app.logger.info("Transfer %s closed before sweep reached it", transfer_id)
    return cancelled


def list_incoming_transfers(user_id: int) -> list[TicketTransfer]:
    """Pending transfers addressed to the user's email."""
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        return []
    return (
        db.session.query(TicketTransfer)
        .filter_by(to_user_email=normalize_email(user.email), status=TRANSFER_STATUS_PENDING)
        .order_by(TicketTransfer.created_at.desc(), TicketTransfer.id.desc())
        .all()
    )


def list_outgoing_transfers(user_id: int) -> list[TicketTransfer]:
    return (
        db.session.query(TicketTransfer)
        .filter_by(from_user_id=user_id)
        .order_by(TicketTransfer.created_at.desc(), TicketTransfer.id.desc())
        .all()
    )


def get_transfer_summary(transfer: TicketTransfer) -> dict:
    """Transfer plus the ticket and event details shown to the recipient."""
    ticket = transfer.ticket
    return {
        **transfer.to_dict(),
        "ticket_code": ticket.ticket_code,
        "event": ticket.event.to_dict(),
        "sender": {
            "id": transfer.from_user.id,
            "display_name": transfer.from_user.display_name,
        },
    }
