"""Tests for the /api/v1/payments endpoints.

Processors are doubles; the reconciler and ledger run for real so the
idempotency of webhook and poll-confirm deliveries is exercised end to end.
"""

from __future__ import annotations

import asyncio
import json
import threading
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from session_engine.ledger.credit_ledger import CreditLedger
from session_engine.state.database import transaction
from session_engine.state.repository import CreditTransactionRepository

from api.services.gateway_errors import PaymentGatewayError, WebhookSignatureError


def _stripe_event(event_type: str, intent_id: str = "pi_test_1") -> dict:
    return {"id": "evt_1", "type": event_type, "data": {"object": {"id": intent_id}}}


async def _purchase_rows(session_factory, user_id: str) -> int:
    async with transaction(session_factory) as session:
        _, total = await CreditTransactionRepository(session).list_for_user(user_id, transaction_type="purchase")
    return total


# ---------------------------------------------------------------------------
# Catalogue and intents
# ---------------------------------------------------------------------------


class TestPackages:
    @pytest.mark.asyncio
    async def test_lists_active_packages(self, client: AsyncClient, packages: None) -> None:
        resp = await client.get("/api/v1/payments/packages")

        assert resp.status_code == 200
        pkgs = resp.json()["packages"]
        assert [p["id"] for p in pkgs] == ["starter", "pro"]
        assert pkgs[1]["totalCredits"] == 55
        assert pkgs[1]["priceCents"] == 3999


class TestCreatePaymentIntent:
    @pytest.mark.asyncio
    async def test_creates_intent_and_pending_payment(
        self, client: AsyncClient, packages: None, mock_stripe: MagicMock
    ) -> None:
        resp = await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "pro"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["clientSecret"] == "pi_test_1_secret"
        assert data["paymentIntentId"] == "pi_test_1"
        assert data["amount"] == 3999
        assert data["credits"] == 55

        kwargs = mock_stripe.create_payment_intent.call_args.kwargs
        assert kwargs["amount"] == 3999
        assert kwargs["currency"] == "usd"
        assert kwargs["metadata"]["packageId"] == "pro"
        assert kwargs["metadata"]["credits"] == "55"

        history = (await client.get("/api/v1/payments/history")).json()
        assert [(p["providerReference"], p["status"]) for p in history["payments"]] == [("pi_test_1", "pending")]

    @pytest.mark.asyncio
    async def test_unknown_package(self, client: AsyncClient, packages: None, mock_stripe: MagicMock) -> None:
        resp = await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "platinum"})

        assert resp.status_code == 404
        assert resp.json()["code"] == "PACKAGE_NOT_FOUND"
        mock_stripe.create_payment_intent.assert_not_called()

    @pytest.mark.asyncio
    async def test_processor_error_is_502(self, client: AsyncClient, packages: None, mock_stripe: MagicMock) -> None:
        mock_stripe.create_payment_intent.side_effect = PaymentGatewayError("Payment processor rejected the request")

        resp = await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})

        assert resp.status_code == 502

    @pytest.mark.asyncio
    async def test_processor_calls_run_off_the_event_loop(
        self, client: AsyncClient, packages: None, mock_stripe: MagicMock
    ) -> None:
        loop_thread = threading.get_ident()
        seen: list[int] = []
        create_result = mock_stripe.create_payment_intent.return_value
        retrieve_result = mock_stripe.retrieve_payment_intent.return_value

        def _create(**kwargs: object) -> dict:
            seen.append(threading.get_ident())
            return create_result

        def _retrieve(intent_id: str) -> dict:
            seen.append(threading.get_ident())
            return retrieve_result

        mock_stripe.create_payment_intent.side_effect = _create
        mock_stripe.retrieve_payment_intent.side_effect = _retrieve

        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})
        resp = await client.post("/api/v1/payments/process-payment-success", json={"paymentIntentId": "pi_test_1"})

        assert resp.status_code == 200
        assert len(seen) == 2
        assert loop_thread not in seen


class TestCashfreeOrder:
    @pytest.mark.asyncio
    async def test_creates_order_in_major_units(
        self, client: AsyncClient, packages: None, mock_cashfree: MagicMock
    ) -> None:
        resp = await client.post(
            "/api/v1/payments/cashfree/create-order",
            json={"packageId": "starter", "customerPhone": "9876543210"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["orderId"].startswith("order_")
        assert data["paymentSessionId"] == "session_cf_1"
        assert data["environment"] == "sandbox"

        kwargs = mock_cashfree.create_order.call_args.kwargs
        assert kwargs["amount"] == pytest.approx(9.99)
        assert kwargs["customer_email"] == "candidate1@example.com"
        assert kwargs["customer_phone"] == "9876543210"


# ---------------------------------------------------------------------------
# Confirmation paths
# ---------------------------------------------------------------------------


class TestStripeWebhook:
    @pytest.mark.asyncio
    async def test_redelivered_success_grants_once(
        self,
        client: AsyncClient,
        anon_client: AsyncClient,
        packages: None,
        mock_stripe: MagicMock,
        ledger: CreditLedger,
        session_factory,
        user_id: str,
    ) -> None:
        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "pro"})
        mock_stripe.construct_event.return_value = _stripe_event("payment_intent.succeeded")

        first = await anon_client.post(
            "/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=sig"}
        )
        second = await anon_client.post(
            "/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=sig"}
        )

        assert first.status_code == 200
        assert first.json() == {"received": True, "outcome": "applied"}
        assert second.json() == {"received": True, "outcome": "already_processed"}
        assert await ledger.get_balance(user_id) == 60
        assert await _purchase_rows(session_factory, user_id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries(
        self,
        client: AsyncClient,
        anon_client: AsyncClient,
        packages: None,
        mock_stripe: MagicMock,
        ledger: CreditLedger,
        session_factory,
        user_id: str,
    ) -> None:
        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})
        mock_stripe.construct_event.return_value = _stripe_event("payment_intent.succeeded")

        responses = await asyncio.gather(
            *(
                anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "sig"})
                for _ in range(4)
            )
        )

        outcomes = sorted(r.json()["outcome"] for r in responses)
        assert outcomes == ["already_processed", "already_processed", "already_processed", "applied"]
        assert await ledger.get_balance(user_id) == 15
        assert await _purchase_rows(session_factory, user_id) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_is_400(self, anon_client: AsyncClient, mock_stripe: MagicMock) -> None:
        mock_stripe.construct_event.side_effect = WebhookSignatureError("Signature verification failed")

        resp = await anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "x"})

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_failure_event_never_regresses_completed(
        self,
        client: AsyncClient,
        anon_client: AsyncClient,
        packages: None,
        mock_stripe: MagicMock,
        ledger: CreditLedger,
        user_id: str,
    ) -> None:
        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})
        mock_stripe.construct_event.return_value = _stripe_event("payment_intent.succeeded")
        await anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "s"})

        mock_stripe.construct_event.return_value = _stripe_event("payment_intent.payment_failed")
        resp = await anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "s"})

        assert resp.json()["outcome"] == "already_processed"
        history = (await client.get("/api/v1/payments/history")).json()
        assert history["payments"][0]["status"] == "completed"
        assert await ledger.get_balance(user_id) == 15

    @pytest.mark.asyncio
    async def test_canceled_and_ignored_events(
        self, client: AsyncClient, anon_client: AsyncClient, packages: None, mock_stripe: MagicMock
    ) -> None:
        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})

        mock_stripe.construct_event.return_value = _stripe_event("charge.refunded")
        resp = await anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "s"})
        assert resp.json() == {"received": True}

        mock_stripe.construct_event.return_value = _stripe_event("payment_intent.canceled")
        resp = await anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "s"})
        assert resp.json()["outcome"] == "applied"

        history = (await client.get("/api/v1/payments/history", params={"status": "canceled"})).json()
        assert history["pagination"]["total"] == 1

    @pytest.mark.asyncio
    async def test_unknown_intent_is_not_acknowledged(self, anon_client: AsyncClient, mock_stripe: MagicMock) -> None:
        mock_stripe.construct_event.return_value = _stripe_event("payment_intent.succeeded", "pi_unknown")

        resp = await anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "s"})

        assert resp.status_code == 404
        assert resp.json()["code"] == "PAYMENT_NOT_FOUND"
        assert "received" not in resp.json()

    @pytest.mark.asyncio
    async def test_unknown_intent_failure_event_not_acknowledged(
        self, anon_client: AsyncClient, mock_stripe: MagicMock
    ) -> None:
        mock_stripe.construct_event.return_value = _stripe_event("payment_intent.payment_failed", "pi_unknown")

        resp = await anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "s"})

        assert resp.status_code == 404
        assert resp.json()["code"] == "PAYMENT_NOT_FOUND"


class TestProcessPaymentSuccess:
    @pytest.mark.asyncio
    async def test_poll_after_webhook_is_already_processed(
        self,
        client: AsyncClient,
        anon_client: AsyncClient,
        packages: None,
        mock_stripe: MagicMock,
        ledger: CreditLedger,
        user_id: str,
    ) -> None:
        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})
        mock_stripe.construct_event.return_value = _stripe_event("payment_intent.succeeded")
        await anon_client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "s"})

        resp = await client.post("/api/v1/payments/process-payment-success", json={"paymentIntentId": "pi_test_1"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["alreadyProcessed"] is True
        assert data["creditsAdded"] == 0
        assert await ledger.get_balance(user_id) == 15

    @pytest.mark.asyncio
    async def test_poll_applies_credits(
        self, client: AsyncClient, packages: None, ledger: CreditLedger, user_id: str
    ) -> None:
        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})

        resp = await client.post("/api/v1/payments/process-payment-success", json={"paymentIntentId": "pi_test_1"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "applied"
        assert data["creditsAdded"] == 10
        assert data["newBalance"] == 15

    @pytest.mark.asyncio
    async def test_unsucceeded_intent_is_rejected(
        self, client: AsyncClient, packages: None, mock_stripe: MagicMock, ledger: CreditLedger, user_id: str
    ) -> None:
        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})
        mock_stripe.retrieve_payment_intent.return_value = {"id": "pi_test_1", "status": "processing", "amount": 999}

        resp = await client.post("/api/v1/payments/process-payment-success", json={"paymentIntentId": "pi_test_1"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "PAYMENT_NOT_SUCCEEDED"
        assert body["paymentStatus"] == "processing"
        assert await ledger.get_balance(user_id) == 5

    @pytest.mark.asyncio
    async def test_other_users_payment_not_found(
        self, client: AsyncClient, app, make_user, auth_for, packages: None
    ) -> None:
        await client.post("/api/v1/payments/create-payment-intent", json={"packageId": "starter"})
        other = await make_user()

        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test", headers=auth_for(other)
        ) as other_client:
            resp = await other_client.post(
                "/api/v1/payments/process-payment-success", json={"paymentIntentId": "pi_test_1"}
            )

        assert resp.status_code == 404
        assert resp.json()["code"] == "PAYMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_requires_exactly_one_reference(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/payments/process-payment-success", json={"paymentIntentId": "pi_1", "orderId": "order_1"}
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_cashfree_order_confirmed_by_status(
        self, client: AsyncClient, packages: None, mock_cashfree: MagicMock, ledger: CreditLedger, user_id: str
    ) -> None:
        order_id = (
            await client.post("/api/v1/payments/cashfree/create-order", json={"packageId": "starter"})
        ).json()["orderId"]

        mock_cashfree.get_order_status.return_value = "ACTIVE"
        resp = await client.post("/api/v1/payments/process-payment-success", json={"orderId": order_id})
        assert resp.status_code == 400

        mock_cashfree.get_order_status.return_value = "PAID"
        resp = await client.post("/api/v1/payments/process-payment-success", json={"orderId": order_id})
        assert resp.status_code == 200
        assert await ledger.get_balance(user_id) == 15


class TestCashfreeWebhook:
    @staticmethod
    def _payload(event_type: str, order_id: str) -> bytes:
        return json.dumps({"type": event_type, "data": {"order": {"order_id": order_id}}}).encode()

    @pytest.mark.asyncio
    async def test_success_then_redelivery(
        self,
        client: AsyncClient,
        anon_client: AsyncClient,
        packages: None,
        ledger: CreditLedger,
        user_id: str,
    ) -> None:
        order_id = (
            await client.post("/api/v1/payments/cashfree/create-order", json={"packageId": "pro"})
        ).json()["orderId"]
        body = self._payload("PAYMENT_SUCCESS_WEBHOOK", order_id)
        headers = {"x-webhook-timestamp": "1700000000", "x-webhook-signature": "sig"}

        first = await anon_client.post("/api/v1/payments/cashfree/webhook", content=body, headers=headers)
        second = await anon_client.post("/api/v1/payments/cashfree/webhook", content=body, headers=headers)

        assert first.json()["outcome"] == "applied"
        assert second.json()["outcome"] == "already_processed"
        assert await ledger.get_balance(user_id) == 60

    @pytest.mark.asyncio
    async def test_user_dropped_cancels(
        self, client: AsyncClient, anon_client: AsyncClient, packages: None
    ) -> None:
        order_id = (
            await client.post("/api/v1/payments/cashfree/create-order", json={"packageId": "starter"})
        ).json()["orderId"]

        resp = await anon_client.post(
            "/api/v1/payments/cashfree/webhook",
            content=self._payload("PAYMENT_USER_DROPPED_WEBHOOK", order_id),
            headers={"x-webhook-timestamp": "1", "x-webhook-signature": "sig"},
        )

        assert resp.json()["outcome"] == "applied"
        payment_id = (await client.get("/api/v1/payments/history")).json()["payments"][0]["id"]
        detail = await client.get(f"/api/v1/payments/{payment_id}")
        assert detail.json()["status"] == "canceled"

    @pytest.mark.asyncio
    async def test_bad_signature(self, anon_client: AsyncClient, mock_cashfree: MagicMock) -> None:
        mock_cashfree.verify_signature.return_value = False

        resp = await anon_client.post(
            "/api/v1/payments/cashfree/webhook",
            content=self._payload("PAYMENT_SUCCESS_WEBHOOK", "order_x"),
            headers={"x-webhook-timestamp": "1", "x-webhook-signature": "forged"},
        )

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_payload(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.post(
            "/api/v1/payments/cashfree/webhook",
            content=b'{"type": "PAYMENT_SUCCESS_WEBHOOK"}',
            headers={"x-webhook-timestamp": "1", "x-webhook-signature": "sig"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_order_is_not_acknowledged(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.post(
            "/api/v1/payments/cashfree/webhook",
            content=self._payload("PAYMENT_SUCCESS_WEBHOOK", "order_missing"),
            headers={"x-webhook-timestamp": "1", "x-webhook-signature": "sig"},
        )

        assert resp.status_code == 404
        assert resp.json()["code"] == "PAYMENT_NOT_FOUND"


class TestPaymentDetail:
    @pytest.mark.asyncio
    async def test_unknown_payment(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/payments/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["code"] == "PAYMENT_NOT_FOUND"
