"""Exceptions raised by the payment processor clients."""

from __future__ import annotations


class PaymentGatewayError(Exception):
    """The processor rejected a call or could not be reached."""


class WebhookSignatureError(PaymentGatewayError):
    """An inbound webhook failed signature or payload verification."""
