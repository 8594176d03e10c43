"""Cashfree Payment Gateway (PG v2023-08-01) client.

Orders are created and polled over HTTPS with ``x-client-id`` /
``x-client-secret`` headers.  Webhooks are authenticated with
``base64(HMAC-SHA256(secret, timestamp + raw_body))`` delivered in the
``x-webhook-signature`` header alongside ``x-webhook-timestamp``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Any

import httpx

from api.config import APISettings, CashfreeEnvironment
from api.services.gateway_errors import PaymentGatewayError

logger = logging.getLogger(__name__)

API_VERSION = "2023-08-01"

_BASE_URLS: dict[CashfreeEnvironment, str] = {
    CashfreeEnvironment.SANDBOX: "https://sandbox.cashfree.com/pg",
    CashfreeEnvironment.PRODUCTION: "https://api.cashfree.com/pg",
}

# Fallback when the user profile carries no phone number; the API requires one.
_DEFAULT_PHONE = "9999999999"


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    message = timestamp.encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class CashfreeGateway:
    """Async Cashfree client.

    Parameters
    ----------
    settings:
        API settings with the app id, secret key and environment.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client
        is created against the environment's base URL otherwise.
    """

    def __init__(self, settings: APISettings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._secret = settings.cashfree_secret_key.get_secret_value()
        self._client = http_client or httpx.AsyncClient(
            base_url=_BASE_URLS[settings.cashfree_environment],
            timeout=httpx.Timeout(settings.cashfree_timeout_seconds),
            headers={
                "x-client-id": settings.cashfree_app_id,
                "x-client-secret": self._secret,
                "x-api-version": API_VERSION,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    @property
    def enabled(self) -> bool:
        return self._settings.cashfree_enabled

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Cashfree %s %s failed with %d: %s",
                method,
                path,
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise PaymentGatewayError("Payment processor rejected the request") from exc
        except httpx.HTTPError as exc:
            logger.warning("Cashfree %s %s unreachable: %s", method, path, exc)
            raise PaymentGatewayError("Payment processor unreachable") from exc
        return response.json()

    async def create_order(
        self,
        *,
        order_id: str,
        amount: float,
        currency: str,
        customer_id: str,
        customer_email: str,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        note: str = "",
    ) -> dict[str, Any]:
        """Create an order and return ``order_id``, ``payment_session_id``, ``order_status``."""
        payload = {
            "order_id": order_id,
            "order_amount": round(amount, 2),
            "order_currency": currency.upper(),
            "customer_details": {
                "customer_id": customer_id,
                "customer_name": customer_name,
                "customer_email": customer_email,
                "customer_phone": customer_phone or _DEFAULT_PHONE,
            },
            "order_meta": {"return_url": self._settings.cashfree_return_url},
            "order_note": note,
        }
        data = await self._request("POST", "/orders", json=payload)
        logger.info("Cashfree order %s created (cf_order_id=%s)", order_id, data.get("cf_order_id"))
        return {
            "order_id": data.get("order_id", order_id),
            "payment_session_id": data.get("payment_session_id"),
            "order_status": data.get("order_status"),
        }

    async def get_order_status(self, order_id: str) -> str | None:
        """Return Cashfree's ``order_status`` (``ACTIVE``, ``PAID``, ``EXPIRED`` ...)."""
        data = await self._request("GET", f"/orders/{order_id}")
        return data.get("order_status")

    def verify_signature(self, timestamp: str, raw_body: bytes, signature: str) -> bool:
        if not (timestamp and signature and self._secret):
            return False
        return hmac.compare_digest(compute_signature(self._secret, timestamp, raw_body), signature)
