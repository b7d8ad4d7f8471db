# Overview: Best-effort transactional email triggers.

"""
Notifier

Thin client for the external email functions. Every call happens after
the state change it reports has been committed; a failure raises
NotificationFailed, which callers log and never propagate as an
operation failure.
"""

from __future__ import annotations

import atexit
from dataclasses import dataclass, asdict
from urllib.parse import urlencode

import httpx
from flask import current_app


EXTENSION_KEY = "notifier"


class NotificationFailed(Exception):
    """Email trigger could not be delivered."""
    pass


@dataclass(frozen=True)
class TransferEmail:
    transferId: int
    recipientEmail: str
    transferCode: str
    eventTitle: str
    eventDate: str
    ticketCode: str
    senderName: str
    siteUrl: str


NOTIFY_TRANSFER_ACCEPTED = "transfer_accepted"
NOTIFY_TRANSFER_REJECTED = "transfer_rejected"


@dataclass(frozen=True)
class TransferNotice:
    """Outcome notice; recipientEmail is whoever receives the email."""
    transferId: int
    ticketCode: str
    eventTitle: str
    eventDate: str
    recipientEmail: str
    recipientName: str
    senderName: str


def build_accept_url(site_url: str, transfer_code: str) -> str:
    return f"{site_url.rstrip('/')}/accept-transfer?{urlencode({'code': transfer_code})}"


class NotificationClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.enabled = bool(base_url)
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=base_url or "http://notifier.invalid",
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def _post(self, path: str, body: dict) -> None:
        if not self.enabled:
            raise NotificationFailed("Notifier is not configured")
        try:
            response = self._client.post(path, json=body)
        except httpx.HTTPError as exc:
            raise NotificationFailed(f"{path} failed: {exc}") from exc
        if response.is_error:
            raise NotificationFailed(f"{path} returned HTTP {response.status_code}")

    def send_order_confirmation(self, order_id: int) -> None:
        self._post("/send-ticket-email", {"orderId": order_id})

    def send_transfer_email(self, email: TransferEmail) -> None:
        self._post("/send-transfer-email", asdict(email))

    def send_transfer_notification(self, kind: str, notice: TransferNotice) -> None:
        self._post("/send-notification", {"type": kind, "data": asdict(notice)})

    def close(self) -> None:
        self._client.close()


def init_app(app) -> None:
    client = NotificationClient(
        app.config["NOTIFIER_BASE_URL"],
        app.config["NOTIFIER_API_KEY"],
        timeout=app.config["NOTIFIER_TIMEOUT_SECONDS"],
    )
    app.extensions[EXTENSION_KEY] = client
    atexit.register(client.close)


def get_notifier() -> NotificationClient:
    return current_app.extensions[EXTENSION_KEY]
