# Overview: Payment notification processing; resolves webhooks to order status changes.

"""
Payment Webhook Processor

WHY: Payment notifications are at-least-once, may arrive duplicated,
concurrently or out of order, and their bodies are untrusted. This
module turns them into exactly-once order transitions and a single
ticket issuance per order.

FLOW:
1. Parse {type, data: {id}}; non-payment or malformed -> acknowledge
2. Re-fetch the payment from the provider (UpstreamUnavailable propagates)
3. Resolve external_reference -> Order (missing -> acknowledge)
4. Map provider status -> order status (unknown -> no-op)
5. Compare-and-set the status; issue tickets only when this request
   moved the order into paid
6. Post-commit: ask the Notifier for the confirmation email
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from .concurrency import run_with_retry
from .issuance_service import issue_tickets, IssuanceFailed
from .ledger_service import append_ledger_event
from .notification_service import get_notifier, NotificationFailed
from .order_service import (
    get_order,
    is_transition_allowed,
    record_payment_reference,
    transition_order_status,
    OrderNotFound,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PAID,
    ORDER_STATUS_CANCELLED,
)
from .payment_provider import get_payment_provider


# Provider status vocabulary -> internal order status
PROVIDER_STATUS_MAP = {
    "approved": ORDER_STATUS_PAID,
    "pending": ORDER_STATUS_PENDING,
    "in_process": ORDER_STATUS_PENDING,
    "rejected": ORDER_STATUS_CANCELLED,
    "cancelled": ORDER_STATUS_CANCELLED,
}

# Outcomes (all acknowledged with HTTP 200)
OUTCOME_IGNORED = "ignored"
OUTCOME_MALFORMED = "malformed"
OUTCOME_NO_REFERENCE = "no_reference"
OUTCOME_ORDER_NOT_FOUND = "order_not_found"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_REJECTED_TRANSITION = "rejected_transition"
OUTCOME_TRANSITIONED = "transitioned"
OUTCOME_ISSUANCE_FAILED = "issuance_failed"


@dataclass
class WebhookResult:
    outcome: str
    order_id: int | None = None
    status: str | None = None
    tickets_issued: int = 0
    email_sent: bool | None = None

    def to_response(self) -> dict:
        body = {"received": True, "outcome": self.outcome}
        if self.status is not None:
            body["status"] = self.status
        return body


def map_provider_status(provider_status: str | None) -> str | None:
    """Internal status for a provider status, or None when it has no meaning here."""
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower())


def extract_payment_id(payload) -> str | None:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    payment_id = data.get("id")
    if payment_id is None:
        return None
    payment_id = str(payment_id).strip()
    return payment_id or None


def handle_notification(payload) -> WebhookResult:
    """
    Process one provider notification.

    Raises:
        UpstreamUnavailable: provider lookup failed; caller answers non-2xx
        SQLAlchemyError: status update could not be persisted; caller answers 5xx
    """
    log = current_app.logger

    if not isinstance(payload, dict):
        log.warning("Webhook body is not a JSON object; acknowledging")
        return WebhookResult(OUTCOME_MALFORMED)

    notification_type = payload.get("type")
    if notification_type != "payment":
        log.info("Ignoring webhook of type %r", notification_type)
        return WebhookResult(OUTCOME_IGNORED)

    payment_id = extract_payment_id(payload)
    if not payment_id:
        log.warning("Payment webhook without data.id; acknowledging")
        return WebhookResult(OUTCOME_MALFORMED)

    log.info("Fetching payment %s from provider", payment_id)
    payment = get_payment_provider().fetch_payment(payment_id)
    log.info(
        "Payment %s: status=%s external_reference=%s",
        payment.id, payment.status, payment.external_reference,
    )

    if not payment.external_reference:
        log.warning("Payment %s has no external_reference; acknowledging", payment_id)
        return WebhookResult(OUTCOME_NO_REFERENCE)

    try:
        order = get_order(payment.external_reference)
    except OrderNotFound:
        log.warning(
            "Order %s for payment %s not found; acknowledging",
            payment.external_reference, payment_id,
        )
        return WebhookResult(OUTCOME_ORDER_NOT_FOUND)

    order_id = order.id
    payment_reference = payment.id or payment_id
    new_status = map_provider_status(payment.status)

    if new_status is None:
        log.info("Provider status %r for order %s leaves it unchanged", payment.status, order_id)
        _remember_reference(order_id, payment_reference)
        return WebhookResult(OUTCOME_UNCHANGED, order_id, order.status)

    return _apply_status(order_id, new_status, payment_reference)


def _apply_status(order_id: int, new_status: str, payment_reference: str) -> WebhookResult:
    log = current_app.logger

    def _op():
        db.session.expire_all()
        order = get_order(order_id)
        previous = order.status

        if previous == new_status:
            record_payment_reference(order_id, payment_reference)
            db.session.commit()
            return previous, False

        if not is_transition_allowed(previous, new_status):
            if previous == ORDER_STATUS_CANCELLED and new_status == ORDER_STATUS_PAID:
                append_ledger_event(
                    event_type="order.late_approval_ignored",
                    entity_type="order",
                    entity_id=order_id,
                    order_id=order_id,
                    note=f"payment {payment_reference} approved after cancellation",
                )
            record_payment_reference(order_id, payment_reference)
            db.session.commit()
            return previous, False

        applied = transition_order_status(
            order_id, previous, new_status, payment_reference=payment_reference
        )
        if applied:
            append_ledger_event(
                event_type=f"order.{new_status}",
                entity_type="order",
                entity_id=order_id,
                order_id=order_id,
                payload={"payment_reference": payment_reference, "previous_status": previous},
            )
        db.session.commit()
        return previous, applied

    previous, applied = run_with_retry(_op)

    if previous == new_status:
        log.info("Order %s already %s; duplicate delivery", order_id, new_status)
        return WebhookResult(OUTCOME_DUPLICATE, order_id, previous)

    if not applied:
        # Either a terminal state refused the change or a concurrent
        # delivery won the compare-and-set; report what is stored now.
        db.session.expire_all()
        current = get_order(order_id).status
        if current == new_status:
            log.info("Order %s moved to %s by a concurrent delivery", order_id, new_status)
            return WebhookResult(OUTCOME_DUPLICATE, order_id, current)
        log.warning(
            "Order %s is %s; refusing transition to %s from payment %s",
            order_id, current, new_status, payment_reference,
        )
        return WebhookResult(OUTCOME_REJECTED_TRANSITION, order_id, current)

    log.info("Order %s: %s -> %s", order_id, previous, new_status)

    if new_status != ORDER_STATUS_PAID or previous == ORDER_STATUS_PAID:
        return WebhookResult(OUTCOME_TRANSITIONED, order_id, new_status)

    try:
        tickets = issue_tickets(order_id)
    except IssuanceFailed:
        # Order stays paid; a redelivery cannot repair this, reissue can
        log.error("Order %s is paid but issuance failed; needs reissue", order_id)
        return WebhookResult(OUTCOME_ISSUANCE_FAILED, order_id, new_status)

    result = WebhookResult(
        OUTCOME_TRANSITIONED, order_id, new_status, tickets_issued=len(tickets)
    )
    result.email_sent = send_order_confirmation(order_id)
    return result


def _remember_reference(order_id: int, payment_reference: str) -> None:
    def _op():
        record_payment_reference(order_id, payment_reference)
        db.session.commit()
    run_with_retry(_op)


def send_order_confirmation(order_id: int) -> bool:
    """Trigger the confirmation email. Failure is logged, never raised."""
    try:
        get_notifier().send_order_confirmation(order_id)
    except NotificationFailed as exc:
        current_app.logger.warning("Confirmation email for order %s failed: %s", order_id, exc)
        return False
    current_app.logger.info("Confirmation email requested for order %s", order_id)
    return True
