"""
Outbound HTTP client tests (payment provider, notifier).

Both clients are exercised against httpx.MockTransport; no network.
"""

import json
from types import SimpleNamespace

import httpx
import pytest

from ticketing.services import notification_service, payment_provider
from ticketing.services.notification_service import (
    NOTIFY_TRANSFER_ACCEPTED,
    NotificationClient,
    NotificationFailed,
    TransferEmail,
    TransferNotice,
    build_accept_url,
)
from ticketing.services.payment_provider import (
    PaymentDetail,
    PaymentNotFound,
    PaymentProviderClient,
    UpstreamUnavailable,
)


def provider_with(handler):
    return PaymentProviderClient("https://provider.test", "tok", transport=httpx.MockTransport(handler))


class TestPaymentProviderClient:

    def test_parses_payment(self):
        client = provider_with(lambda request: httpx.Response(
            200, json={"id": 991, "status": "Approved", "external_reference": " 42 ", "extra": "x"}
        ))

        payment = client.fetch_payment("991")

        assert payment == PaymentDetail(id="991", status="approved", external_reference="42")

    def test_missing_reference(self):
        client = provider_with(lambda request: httpx.Response(200, json={"id": 1, "status": "approved"}))
        assert client.fetch_payment("1").external_reference is None

    def test_404(self):
        client = provider_with(lambda request: httpx.Response(404))
        with pytest.raises(PaymentNotFound):
            client.fetch_payment("1")

    @pytest.mark.parametrize("status_code", [429, 500, 503, 403])
    def test_error_statuses(self, status_code):
        client = provider_with(lambda request: httpx.Response(status_code))
        with pytest.raises(UpstreamUnavailable):
            client.fetch_payment("1")

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(UpstreamUnavailable):
            provider_with(handler).fetch_payment("1")

    def test_invalid_json(self):
        client = provider_with(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(UpstreamUnavailable):
            client.fetch_payment("1")

    def test_non_object_json(self):
        client = provider_with(lambda request: httpx.Response(200, json=[1, 2]))
        with pytest.raises(UpstreamUnavailable):
            client.fetch_payment("1")


class TestNotificationClient:

    def test_disabled_without_base_url(self):
        client = NotificationClient("")
        assert client.enabled is False
        with pytest.raises(NotificationFailed):
            client.send_order_confirmation(1)

    def test_posts_order_confirmation(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        client = NotificationClient("https://notifier.test", "k", transport=httpx.MockTransport(handler))
        client.send_order_confirmation(7)

        assert seen[0].url.path == "/send-ticket-email"
        assert seen[0].headers["Authorization"] == "Bearer k"
        assert json.loads(seen[0].content) == {"orderId": 7}

    def test_error_status_raises(self):
        client = NotificationClient(
            "https://notifier.test", transport=httpx.MockTransport(lambda request: httpx.Response(502))
        )
        email = TransferEmail(1, "r@example.com", "ABCDEFGHIJ", "Show", "2026-01-01T20:00:00Z",
                              "TICKET000001", "Sender", "https://tickets.test")
        with pytest.raises(NotificationFailed):
            client.send_transfer_email(email)

    def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = NotificationClient("https://notifier.test", transport=httpx.MockTransport(handler))
        with pytest.raises(NotificationFailed):
            client.send_order_confirmation(1)

    def test_posts_transfer_notification(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        client = NotificationClient("https://notifier.test", transport=httpx.MockTransport(handler))
        notice = TransferNotice(3, "TICKET000001", "Show", "2026-01-01T20:00:00Z",
                                "r@example.com", "Rita", "Sam")
        client.send_transfer_notification(NOTIFY_TRANSFER_ACCEPTED, notice)

        assert seen[0].url.path == "/send-notification"
        body = json.loads(seen[0].content)
        assert body["type"] == "transfer_accepted"
        assert body["data"]["recipientEmail"] == "r@example.com"
        assert body["data"]["ticketCode"] == "TICKET000001"


@pytest.mark.parametrize("module,config", [
    (notification_service, {
        "NOTIFIER_BASE_URL": "https://notifier.test",
        "NOTIFIER_API_KEY": "",
        "NOTIFIER_TIMEOUT_SECONDS": 1.0,
    }),
    (payment_provider, {
        "PAYMENT_PROVIDER_BASE_URL": "https://provider.test",
        "PAYMENT_PROVIDER_ACCESS_TOKEN": "tok",
        "PAYMENT_PROVIDER_TIMEOUT_SECONDS": 1.0,
    }),
])
def test_init_app_closes_client_at_exit(module, config, monkeypatch):
    registered = []
    monkeypatch.setattr(module.atexit, "register", registered.append)
    app = SimpleNamespace(extensions={}, config=config)

    module.init_app(app)

    client = app.extensions[module.EXTENSION_KEY]
    assert registered == [client.close]


@pytest.mark.parametrize("site_url", ["https://tickets.test", "https://tickets.test/"])
def test_accept_url(site_url):
    assert build_accept_url(site_url, "ABCDE12345") == "https://tickets.test/accept-transfer?code=ABCDE12345"
