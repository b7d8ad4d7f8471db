# Overview: HTTP client for the payment provider's payment-detail API.

"""
Payment provider client

Webhook bodies are untrusted: the only thing taken from them is the
payment id. Status and external_reference always come from this
authoritative GET /v1/payments/{id} lookup.

ERRORS:
- UpstreamUnavailable: network failure, timeout, 5xx or 429. Retryable;
  the webhook answers non-2xx so the provider redelivers.
- PaymentNotFound: provider answered 404. Not retryable.
"""

from __future__ import annotations

import atexit
from dataclasses import dataclass

import httpx
from flask import current_app


EXTENSION_KEY = "payment_provider"


class PaymentProviderError(Exception):
    """Base class for payment provider failures."""
    pass


class UpstreamUnavailable(PaymentProviderError):
    """Provider could not be reached or answered with a retryable error."""
    pass


class PaymentNotFound(PaymentProviderError):
    """Provider does not know the payment id."""
    pass


@dataclass(frozen=True)
class PaymentDetail:
    id: str
    status: str
    external_reference: str | None

    @classmethod
    def from_json(cls, data: dict) -> "PaymentDetail":
        reference = data.get("external_reference")
        return cls(
            id=str(data.get("id", "")),
            status=str(data.get("status") or "").lower(),
            external_reference=str(reference).strip() if reference not in (None, "") else None,
        )


class PaymentProviderClient:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def fetch_payment(self, payment_id: str) -> PaymentDetail:
        try:
            response = self._client.get(f"/v1/payments/{payment_id}")
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Payment lookup failed for {payment_id}: {exc}") from exc

        if response.status_code == 404:
            raise PaymentNotFound(f"Payment {payment_id} not found at provider")
        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamUnavailable(
                f"Payment lookup for {payment_id} returned HTTP {response.status_code}"
            )
        if response.is_error:
            # Auth/config problems are ours to fix; keep the provider retrying meanwhile
            raise UpstreamUnavailable(
                f"Payment lookup for {payment_id} rejected with HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(f"Payment lookup for {payment_id} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"Payment lookup for {payment_id} returned unexpected body")
        return PaymentDetail.from_json(data)

    def close(self) -> None:
        self._client.close()


def init_app(app) -> None:
    client = PaymentProviderClient(
        app.config["PAYMENT_PROVIDER_BASE_URL"],
        app.config["PAYMENT_PROVIDER_ACCESS_TOKEN"],
        timeout=app.config["PAYMENT_PROVIDER_TIMEOUT_SECONDS"],
    )
    app.extensions[EXTENSION_KEY] = client
    # Connection pool lives as long as the process
    atexit.register(client.close)


def get_payment_provider() -> PaymentProviderClient:
    return current_app.extensions[EXTENSION_KEY]
