"""
Ticket transfer tests.

Verifies:
- Transfer window closes exactly TRANSFER_CUTOFF_HOURS before the event
- One pending transfer per ticket
- accept moves ownership once; cancel/reject leave the sender holding it
- Only the holder initiates, only the sender cancels, only the recipient
  accepts or declines
- Stale pending transfers are swept
"""

from datetime import timedelta

import pytest

from ticketing.extensions import db
from ticketing.models import Ticket, TicketTransfer, FulfillmentLedgerEvent
from ticketing.services import transfer_service
from ticketing.services.transfer_service import (
    TicketNotFound,
    TransferAlreadyPending,
    TransferError,
    TransferForbidden,
    TransferNotFound,
    TransferNotPending,
    TransferWindowClosed,
)
from ticketing.time_utils import utcnow


def _ticket(ticket_id):
    return db.session.get(Ticket, ticket_id)


def _transfer(transfer_id):
    return db.session.get(TicketTransfer, transfer_id)


@pytest.fixture
def pending_transfer(ticket, buyer, recipient):
    return transfer_service.initiate_transfer(ticket.id, buyer.id, recipient.email).transfer


# =============================================================================
# INITIATE
# =============================================================================


class TestInitiate:

    def test_creates_pending_transfer(self, ticket, buyer, recipient):
        result = transfer_service.initiate_transfer(ticket.id, buyer.id, "  Recipient@Example.com ")

        transfer = _transfer(result.transfer.id)
        assert transfer.status == "pending"
        assert transfer.to_user_email == "recipient@example.com"
        assert transfer.from_user_id == buyer.id
        assert len(transfer.transfer_code) == 10
        assert transfer.transfer_code.isalnum() and transfer.transfer_code.upper() == transfer.transfer_code
        assert _ticket(ticket.id).transfer_status == "pending"
        assert _ticket(ticket.id).user_id == buyer.id
        assert result.accept_url == f"https://tickets.test/accept-transfer?code={transfer.transfer_code}"

    def test_sends_transfer_email(self, ticket, buyer, recipient, event, notifier):
        result = transfer_service.initiate_transfer(ticket.id, buyer.id, recipient.email)

        assert result.email_sent is True
        assert len(notifier.calls) == 1
        path, body = notifier.calls[0]
        assert path == "/send-transfer-email"
        assert body == {
            "transferId": result.transfer.id,
            "recipientEmail": "recipient@example.com",
            "transferCode": result.transfer.transfer_code,
            "eventTitle": "Night Market Live",
            "eventDate": body["eventDate"],
            "ticketCode": ticket.ticket_code,
            "senderName": "Bea Buyer",
            "siteUrl": "https://tickets.test",
        }
        assert body["eventDate"].endswith("Z")

    def test_email_failure_keeps_transfer(self, ticket, buyer, recipient, notifier):
        notifier.failing = True

        result = transfer_service.initiate_transfer(ticket.id, buyer.id, recipient.email)

        assert result.email_sent is False
        assert _transfer(result.transfer.id).status == "pending"
        assert result.accept_url.endswith(result.transfer.transfer_code)

    def test_second_transfer_rejected(self, pending_transfer, ticket, buyer, outsider):
        with pytest.raises(TransferAlreadyPending):
            transfer_service.initiate_transfer(ticket.id, buyer.id, outsider.email)
        assert db.session.query(TicketTransfer).filter_by(ticket_id=ticket.id).count() == 1

    def test_only_holder_can_transfer(self, ticket, outsider, recipient):
        with pytest.raises(TransferForbidden):
            transfer_service.initiate_transfer(ticket.id, outsider.id, recipient.email)

    def test_unknown_ticket(self, db_session, buyer):
        with pytest.raises(TicketNotFound):
            transfer_service.initiate_transfer(999999, buyer.id, "someone@example.com")

    @pytest.mark.parametrize("email", ["", "not-an-email", "a@b", None, 5, ["a@b.com"]])
    def test_invalid_recipient(self, ticket, buyer, email):
        with pytest.raises(TransferError):
            transfer_service.initiate_transfer(ticket.id, buyer.id, email)

    def test_cannot_transfer_to_self(self, ticket, buyer):
        with pytest.raises(TransferError):
            transfer_service.initiate_transfer(ticket.id, buyer.id, "BUYER@example.com")

    def test_writes_ledger_event(self, pending_transfer, buyer):
        event = db.session.query(FulfillmentLedgerEvent).filter_by(transfer_id=pending_transfer.id).one()
        assert event.event_type == "transfer.initiated"
        assert event.actor_user_id == buyer.id


class TestTransferWindow:

    def test_closed_at_exact_cutoff(self, ticket, buyer, recipient, event):
        now = event.starts_at - timedelta(hours=2)
        with pytest.raises(TransferWindowClosed):
            transfer_service.initiate_transfer(ticket.id, buyer.id, recipient.email, now=now)
        assert _ticket(ticket.id).transfer_status is None

    def test_open_just_before_cutoff(self, ticket, buyer, recipient, event):
        now = event.starts_at - timedelta(hours=2, seconds=1)
        result = transfer_service.initiate_transfer(ticket.id, buyer.id, recipient.email, now=now)
        assert result.transfer.status == "pending"

    def test_closed_after_event_start(self, ticket, buyer, recipient, event):
        now = event.starts_at + timedelta(minutes=5)
        with pytest.raises(TransferWindowClosed):
            transfer_service.initiate_transfer(ticket.id, buyer.id, recipient.email, now=now)

    @pytest.mark.parametrize("delta,expected", [
        (timedelta(hours=3), True),
        (timedelta(hours=2, seconds=1), True),
        (timedelta(hours=2), False),
        (timedelta(hours=1), False),
        (timedelta(hours=-1), False),
    ])
    def test_window_predicate(self, delta, expected):
        now = utcnow()
        assert transfer_service.transfer_window_open(now + delta, now, 2) is expected


# =============================================================================
# ACCEPT
# =============================================================================


class TestAccept:

    def test_moves_ownership(self, pending_transfer, ticket, recipient):
        transfer_service.accept_transfer(pending_transfer.transfer_code, recipient.id)

        transfer = _transfer(pending_transfer.id)
        assert transfer.status == "accepted"
        assert transfer.to_user_id == recipient.id
        assert transfer.completed_at is not None
        assert _ticket(ticket.id).user_id == recipient.id
        assert _ticket(ticket.id).transfer_status is None

    def test_code_is_case_insensitive(self, pending_transfer, ticket, recipient):
        transfer_service.accept_transfer(f" {pending_transfer.transfer_code.lower()} ", recipient.id)
        assert _ticket(ticket.id).user_id == recipient.id

    def test_second_accept_fails(self, pending_transfer, recipient):
        code = pending_transfer.transfer_code
        transfer_service.accept_transfer(code, recipient.id)
        with pytest.raises(TransferNotPending):
            transfer_service.accept_transfer(code, recipient.id)

    def test_wrong_recipient(self, pending_transfer, ticket, buyer, outsider):
        with pytest.raises(TransferForbidden):
            transfer_service.accept_transfer(pending_transfer.transfer_code, outsider.id)
        assert _ticket(ticket.id).user_id == buyer.id
        assert _transfer(pending_transfer.id).status == "pending"

    def test_unknown_code(self, db_session, recipient):
        with pytest.raises(TransferNotFound):
            transfer_service.accept_transfer("ZZZZZZZZZZ", recipient.id)

    def test_accept_after_cutoff(self, pending_transfer, ticket, recipient, event):
        transfer_service.accept_transfer(
            pending_transfer.transfer_code, recipient.id, now=event.starts_at - timedelta(minutes=30)
        )
        assert _ticket(ticket.id).user_id == recipient.id

    def test_new_holder_can_transfer_again(self, pending_transfer, ticket, recipient, outsider):
        transfer_service.accept_transfer(pending_transfer.transfer_code, recipient.id)

        onward = transfer_service.initiate_transfer(ticket.id, recipient.id, outsider.email)

        assert onward.transfer.from_user_id == recipient.id
        assert _ticket(ticket.id).transfer_status == "pending"

    def test_notifies_new_holder(self, pending_transfer, ticket, recipient, notifier):
        transfer_service.accept_transfer(pending_transfer.transfer_code, recipient.id)

        notices = [body for path, body in notifier.calls if path == "/send-notification"]
        assert len(notices) == 1
        assert notices[0]["type"] == "transfer_accepted"
        assert notices[0]["data"]["transferId"] == pending_transfer.id
        assert notices[0]["data"]["recipientEmail"] == "recipient@example.com"
        assert notices[0]["data"]["recipientName"] == "Rio Recipient"
        assert notices[0]["data"]["senderName"] == "Bea Buyer"
        assert notices[0]["data"]["ticketCode"] == ticket.ticket_code
        assert notices[0]["data"]["eventTitle"] == "Night Market Live"

    def test_notice_failure_keeps_acceptance(self, pending_transfer, ticket, recipient, notifier):
        notifier.failing = True

        transfer = transfer_service.accept_transfer(pending_transfer.transfer_code, recipient.id)

        assert transfer.status == "accepted"
        assert _ticket(ticket.id).user_id == recipient.id


# =============================================================================
# CANCEL / REJECT
# =============================================================================


class TestCancel:

    def test_cancel_then_accept_fails(self, pending_transfer, ticket, buyer, recipient):
        transfer_service.cancel_transfer(pending_transfer.id, buyer.id, "changed my mind")

        transfer = _transfer(pending_transfer.id)
        assert transfer.status == "cancelled"
        assert transfer.cancelled_by_user_id == buyer.id
        assert transfer.cancellation_reason == "changed my mind"
        assert transfer.cancelled_at is not None
        assert _ticket(ticket.id).transfer_status is None

        with pytest.raises(TransferNotPending):
            transfer_service.accept_transfer(transfer.transfer_code, recipient.id)
        assert _ticket(ticket.id).user_id == buyer.id

    def test_only_sender_cancels(self, pending_transfer, recipient):
        with pytest.raises(TransferForbidden):
            transfer_service.cancel_transfer(pending_transfer.id, recipient.id)
        assert _transfer(pending_transfer.id).status == "pending"

    def test_cancel_after_accept_fails(self, pending_transfer, buyer, recipient):
        transfer_service.accept_transfer(pending_transfer.transfer_code, recipient.id)
        with pytest.raises(TransferNotPending):
            transfer_service.cancel_transfer(pending_transfer.id, buyer.id)

    def test_unknown_transfer(self, db_session, buyer):
        with pytest.raises(TransferNotFound):
            transfer_service.cancel_transfer(999999, buyer.id)

    def test_cancelled_ticket_can_be_transferred_again(self, pending_transfer, ticket, buyer, outsider):
        transfer_service.cancel_transfer(pending_transfer.id, buyer.id)
        result = transfer_service.initiate_transfer(ticket.id, buyer.id, outsider.email)
        assert result.transfer.status == "pending"


class TestReject:

    def test_recipient_declines(self, pending_transfer, ticket, buyer, recipient):
        transfer_service.reject_transfer(pending_transfer.id, recipient.id)

        transfer = _transfer(pending_transfer.id)
        assert transfer.status == "cancelled"
        assert transfer.cancellation_reason == transfer_service.REASON_REJECTED
        assert transfer.cancelled_by_user_id == recipient.id
        assert _ticket(ticket.id).user_id == buyer.id
        assert _ticket(ticket.id).transfer_status is None

    def test_sender_cannot_decline(self, pending_transfer, buyer):
        with pytest.raises(TransferForbidden):
            transfer_service.reject_transfer(pending_transfer.id, buyer.id)

    def test_notifies_sender(self, pending_transfer, ticket, recipient, notifier):
        transfer_service.reject_transfer(pending_transfer.id, recipient.id)

        notices = [body for path, body in notifier.calls if path == "/send-notification"]
        assert len(notices) == 1
        assert notices[0]["type"] == "transfer_rejected"
        assert notices[0]["data"]["recipientEmail"] == "buyer@example.com"
        assert notices[0]["data"]["recipientName"] == "Bea Buyer"
        assert notices[0]["data"]["ticketCode"] == ticket.ticket_code

    def test_cancel_sends_no_notice(self, pending_transfer, buyer, notifier):
        transfer_service.cancel_transfer(pending_transfer.id, buyer.id)
        assert "/send-notification" not in notifier.paths()


# =============================================================================
# STALE SWEEP AND LISTINGS
# =============================================================================


class TestStaleSweep:

    def test_cancels_only_old_pending(self, db_session, ticket, buyer, recipient, paid_order):
        old = transfer_service.initiate_transfer(
            ticket.id, buyer.id, recipient.email, now=utcnow() - timedelta(days=4)
        ).transfer

        item = paid_order.items[0]
        fresh_ticket = Ticket(
            order_item_id=item.id,
            event_id=paid_order.event_id,
            ticket_type_id=item.ticket_type_id,
            user_id=buyer.id,
            ticket_code="TKTTEST00002",
        )
        db_session.add(fresh_ticket)
        db_session.commit()
        fresh = transfer_service.initiate_transfer(fresh_ticket.id, buyer.id, recipient.email).transfer

        cancelled = transfer_service.cancel_stale_transfers(timedelta(hours=72))

        assert cancelled == 1
        assert _transfer(old.id).status == "cancelled"
        assert _transfer(old.id).cancellation_reason == transfer_service.REASON_EXPIRED
        assert _ticket(ticket.id).transfer_status is None
        assert _transfer(fresh.id).status == "pending"

    def test_nothing_to_sweep(self, db_session):
        assert transfer_service.cancel_stale_transfers(timedelta(hours=1)) == 0


class TestListings:

    def test_incoming_and_outgoing(self, pending_transfer, buyer, recipient, outsider):
        incoming = transfer_service.list_incoming_transfers(recipient.id)
        assert [t.id for t in incoming] == [pending_transfer.id]
        assert transfer_service.list_incoming_transfers(outsider.id) == []
        assert [t.id for t in transfer_service.list_outgoing_transfers(buyer.id)] == [pending_transfer.id]

    def test_incoming_hides_closed(self, pending_transfer, buyer, recipient):
        transfer_service.cancel_transfer(pending_transfer.id, buyer.id)
        assert transfer_service.list_incoming_transfers(recipient.id) == []

    def test_summary(self, pending_transfer, ticket, buyer):
        summary = transfer_service.get_transfer_summary(pending_transfer)
        assert summary["ticket_code"] == ticket.ticket_code
        assert summary["event"]["title"] == "Night Market Live"
        assert summary["sender"] == {"id": buyer.id, "display_name": "Bea Buyer"}
