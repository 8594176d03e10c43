"""Credit purchase endpoints for Stripe and Cashfree.

Purchases start with a ``pending`` payment row keyed by the processor's
PaymentIntent / order id.  Credits are granted by
:meth:`PaymentReconciler.apply_success`, reached from either the
processor's webhook or the client's poll-confirm call; whichever arrives
first applies the grant and the other reports ``already_processed``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from session_engine.results import ErrorCode, ReconcileResult
from session_engine.state.repository import UserRepository

from api.dependencies import (
    CashfreeDep,
    DbSessionDep,
    OptionalCashfreeDep,
    OptionalStripeDep,
    ReconcilerDep,
    SettingsDep,
    StripeDep,
    UserDep,
)
from api.errors import error_response, failure_response
from api.schemas import (
    CashfreeOrderRequest,
    CashfreeOrderResponse,
    CreatePaymentIntentRequest,
    CreditPackageResponse,
    Pagination,
    PaymentHistoryResponse,
    PaymentIntentResponse,
    PaymentResponse,
    ProcessPaymentRequest,
    ProcessPaymentResponse,
)
from api.services.gateway_errors import WebhookSignatureError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

# Stripe webhook event type -> terminal payment status.
_STRIPE_FAILURE_EVENTS: dict[str, str] = {
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}

_CASHFREE_SUCCESS = "PAYMENT_SUCCESS_WEBHOOK"
_CASHFREE_FAILURE_EVENTS: dict[str, str] = {
    "PAYMENT_FAILED_WEBHOOK": "failed",
    "PAYMENT_USER_DROPPED_WEBHOOK": "canceled",
}


class PackageListResponse(BaseModel):
    packages: list[CreditPackageResponse]


def _processed_or_error(result: ReconcileResult) -> ProcessPaymentResponse | JSONResponse:
    if result.error is not None:
        return failure_response(result.error)
    return ProcessPaymentResponse(
        status=result.outcome.value,
        already_processed=result.already_processed,
        payment_id=result.payment_id,
        credits_added=result.credits_added,
        new_balance=result.new_balance,
    )


def _webhook_ack(result: ReconcileResult, provider_reference: str) -> dict[str, Any] | JSONResponse:
    """Acknowledge the event, or answer non-2xx when it matched no payment so the processor redelivers."""
    if result.error is not None:
        logger.error(
            "Webhook for %s not applied: %s (%s)",
            provider_reference,
            result.error.code.value,
            result.error.message,
        )
        return failure_response(result.error)
    return {"received": True, "outcome": result.outcome.value}


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


@router.get("/packages", response_model=PackageListResponse)
async def list_packages(reconciler: ReconcilerDep) -> PackageListResponse:
    packages = await reconciler.list_packages()
    return PackageListResponse(packages=[CreditPackageResponse.from_row(p) for p in packages])


# ---------------------------------------------------------------------------
# Purchase initiation
# ---------------------------------------------------------------------------


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    body: CreatePaymentIntentRequest,
    user_id: UserDep,
    settings: SettingsDep,
    reconciler: ReconcilerDep,
    stripe_gateway: StripeDep,
) -> PaymentIntentResponse | JSONResponse:
    """Create a Stripe PaymentIntent for a credit package and record it as pending."""
    package = await reconciler.get_package(body.package_id)
    if package is None:
        return error_response(ErrorCode.PACKAGE_NOT_FOUND, "Credit package not found")

    intent = await asyncio.to_thread(
        stripe_gateway.create_payment_intent,
        amount=package.price_cents,
        currency=settings.currency,
        metadata={
            "userId": user_id,
            "packageId": package.id,
            "credits": str(package.total_credits),
        },
    )
    await reconciler.record_intent(
        user_id,
        provider="stripe",
        provider_reference=intent["id"],
        package_id=package.id,
        credits=package.total_credits,
        amount=package.price_cents,
        currency=settings.currency,
    )
    return PaymentIntentResponse(
        client_secret=intent["client_secret"],
        payment_intent_id=intent["id"],
        amount=package.price_cents,
        currency=settings.currency,
        credits=package.total_credits,
        package=CreditPackageResponse.from_row(package),
    )


@router.post("/cashfree/create-order", response_model=CashfreeOrderResponse)
async def create_cashfree_order(
    body: CashfreeOrderRequest,
    user_id: UserDep,
    settings: SettingsDep,
    db: DbSessionDep,
    reconciler: ReconcilerDep,
    cashfree: CashfreeDep,
) -> CashfreeOrderResponse | JSONResponse:
    """Create a Cashfree order for a credit package and record it as pending."""
    package = await reconciler.get_package(body.package_id)
    if package is None:
        return error_response(ErrorCode.PACKAGE_NOT_FOUND, "Credit package not found")
    user = await UserRepository(db).get(user_id)
    if user is None:
        return error_response(ErrorCode.USER_NOT_FOUND, "User not found")

    order_id = f"order_{uuid.uuid4().hex}"
    order = await cashfree.create_order(
        order_id=order_id,
        amount=package.price_cents / 100,
        currency=settings.currency,
        customer_id=user_id,
        customer_email=user.email,
        customer_name=user.display_name,
        customer_phone=body.customer_phone,
        note=f"{package.total_credits} interview credits",
    )
    await reconciler.record_intent(
        user_id,
        provider="cashfree",
        provider_reference=order_id,
        package_id=package.id,
        credits=package.total_credits,
        amount=package.price_cents,
        currency=settings.currency,
    )
    return CashfreeOrderResponse(
        order_id=order_id,
        payment_session_id=order.get("payment_session_id"),
        amount=package.price_cents,
        currency=settings.currency,
        credits=package.total_credits,
        environment=settings.cashfree_environment.value,
    )


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


@router.post("/process-payment-success", response_model=ProcessPaymentResponse)
async def process_payment_success(
    body: ProcessPaymentRequest,
    user_id: UserDep,
    reconciler: ReconcilerDep,
    stripe_gateway: OptionalStripeDep,
    cashfree: OptionalCashfreeDep,
) -> ProcessPaymentResponse | JSONResponse:
    """Confirm a checkout from the client.

    The processor is asked for the payment's status first; credits are
    only granted once it reports success.
    """
    if body.payment_intent_id:
        if stripe_gateway is None:
            raise HTTPException(status_code=503, detail="Stripe payments are not configured")
        provider_reference = body.payment_intent_id
        intent = await asyncio.to_thread(stripe_gateway.retrieve_payment_intent, provider_reference)
        if intent["status"] != "succeeded":
            return error_response(
                ErrorCode.PAYMENT_NOT_SUCCEEDED,
                "Payment has not succeeded",
                paymentStatus=intent["status"],
            )
    else:
        assert body.order_id is not None
        if cashfree is None:
            raise HTTPException(status_code=503, detail="Cashfree payments are not configured")
        provider_reference = body.order_id
        order_status = await cashfree.get_order_status(provider_reference)
        if order_status != "PAID":
            return error_response(
                ErrorCode.PAYMENT_NOT_SUCCEEDED,
                "Payment has not succeeded",
                paymentStatus=order_status,
            )

    result = await reconciler.apply_success(provider_reference, user_id=user_id)
    return _processed_or_error(result)


@router.post("/webhook", response_model=None)
async def stripe_webhook(
    request: Request,
    reconciler: ReconcilerDep,
    stripe_gateway: StripeDep,
) -> dict[str, Any] | JSONResponse:
    """Stripe webhook receiver.  Authenticated by the ``Stripe-Signature`` header."""
    payload = await request.body()
    try:
        event = stripe_gateway.construct_event(payload, request.headers.get("stripe-signature", ""))
    except WebhookSignatureError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    event_type = event["type"]
    intent_id = event["data"]["object"]["id"]

    if event_type == "payment_intent.succeeded":
        result = await reconciler.apply_success(intent_id)
    elif event_type in _STRIPE_FAILURE_EVENTS:
        result = await reconciler.apply_failure(intent_id, _STRIPE_FAILURE_EVENTS[event_type])
    else:
        logger.debug("Ignoring Stripe event %s", event_type)
        return {"received": True}
    return _webhook_ack(result, intent_id)


@router.post("/cashfree/webhook", response_model=None)
async def cashfree_webhook(
    request: Request,
    reconciler: ReconcilerDep,
    cashfree: CashfreeDep,
) -> dict[str, Any] | JSONResponse:
    """Cashfree webhook receiver.

    Authenticated by ``x-webhook-signature`` over ``x-webhook-timestamp``
    plus the raw body.
    """
    raw_body = await request.body()
    timestamp = request.headers.get("x-webhook-timestamp", "")
    signature = request.headers.get("x-webhook-signature", "")
    if not cashfree.verify_signature(timestamp, raw_body, signature):
        logger.warning("Cashfree webhook signature verification failed")
        return JSONResponse(status_code=400, content={"error": "Signature verification failed"})

    try:
        payload = json.loads(raw_body)
        event_type = payload.get("type")
        order_id = payload["data"]["order"]["order_id"]
    except (ValueError, KeyError, TypeError, AttributeError):
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    if event_type == _CASHFREE_SUCCESS:
        result = await reconciler.apply_success(order_id)
    elif event_type in _CASHFREE_FAILURE_EVENTS:
        result = await reconciler.apply_failure(order_id, _CASHFREE_FAILURE_EVENTS[event_type])
    else:
        logger.debug("Ignoring Cashfree event %s", event_type)
        return {"received": True}
    return _webhook_ack(result, order_id)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@router.get("/history", response_model=PaymentHistoryResponse)
async def payment_history(
    user_id: UserDep,
    reconciler: ReconcilerDep,
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> PaymentHistoryResponse:
    rows, total = await reconciler.history(user_id, status=status, limit=limit, offset=(page - 1) * limit)
    return PaymentHistoryResponse(
        payments=[PaymentResponse.from_row(r) for r in rows],
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=(total + limit - 1) // limit),
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    user_id: UserDep,
    reconciler: ReconcilerDep,
) -> PaymentResponse | JSONResponse:
    payment = await reconciler.get_payment(payment_id, user_id)
    if payment is None:
        return error_response(ErrorCode.PAYMENT_NOT_FOUND, "Payment not found")
    return PaymentResponse.from_row(payment)
