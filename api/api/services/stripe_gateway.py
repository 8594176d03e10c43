"""Stripe PaymentIntent client and webhook verification."""

from __future__ import annotations

import logging
from typing import Any

from api.config import APISettings
from api.services.gateway_errors import PaymentGatewayError, WebhookSignatureError

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper over the ``stripe`` library.

    Parameters
    ----------
    settings:
        API settings containing the Stripe secret and webhook secret.
    """

    def __init__(self, settings: APISettings) -> None:
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return self._settings.stripe_enabled

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    def create_payment_intent(self, *, amount: int, currency: str, metadata: dict[str, str]) -> dict[str, Any]:
        """Create a PaymentIntent for *amount* minor units.

        Returns
        -------
        dict
            ``id``, ``client_secret`` and ``status`` of the new intent.
        """
        stripe = self._get_stripe()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe PaymentIntent creation failed: %s", exc)
            raise PaymentGatewayError("Payment processor rejected the request") from exc
        return {"id": intent["id"], "client_secret": intent["client_secret"], "status": intent["status"]}

    def retrieve_payment_intent(self, intent_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as exc:
            logger.warning("Stripe PaymentIntent %s lookup failed: %s", intent_id, exc)
            raise PaymentGatewayError("Payment processor lookup failed") from exc
        return {"id": intent["id"], "status": intent["status"], "amount": intent["amount"]}

    def construct_event(self, payload: bytes, sig_header: str) -> Any:
        """Verify a webhook delivery and return the parsed event.

        Raises
        ------
        WebhookSignatureError
            If the signature header is missing, does not verify, or the
            payload is not a valid event.
        """
        if not sig_header:
            raise WebhookSignatureError("Missing Stripe signature")
        stripe = self._get_stripe()
        try:
            return stripe.Webhook.construct_event(
                payload=payload,
                sig_header=sig_header,
                secret=self._settings.stripe_webhook_secret.get_secret_value(),
            )
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookSignatureError("Signature verification failed") from exc
