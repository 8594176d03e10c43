"""Shared fixtures for interview session API tests.

The engine services run for real on a per-test SQLite file; only the
payment processors are replaced.  ``ASGITransport`` does not run the
application lifespan, so every store handle is injected through
``app.dependency_overrides``.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret in dev mode
# instead of generating a random one.
_TEST_JWT_SECRET = "test-secret-key-for-interview-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from pydantic import SecretStr
from session_engine.billing.reconciler import PaymentReconciler
from session_engine.ephemeral.snapshot_cache import SessionSnapshotCache
from session_engine.ephemeral.store import InMemoryEphemeralStore
from session_engine.ledger.credit_ledger import CreditLedger
from session_engine.lifecycle.state_machine import SessionStateMachine
from session_engine.pairing.broker import DesktopPairingBroker
from session_engine.state.database import make_session_factory, transaction
from session_engine.state.repository import CreditPackageRepository, UserRepository
from session_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings
from api.dependencies import (
    get_broker,
    get_cashfree_gateway,
    get_db_session,
    get_ledger,
    get_optional_cashfree_gateway,
    get_optional_stripe_gateway,
    get_reconciler,
    get_settings,
    get_state_machine,
    get_store,
    get_stripe_gateway,
)
from api.main import create_app
from api.security import TokenConfig, TokenManager
from api.services.cashfree_gateway import CashfreeGateway
from api.services.stripe_gateway import StripeGateway

# ---------------------------------------------------------------------------
# Auth tokens
# ---------------------------------------------------------------------------

_token_manager = TokenManager(TokenConfig(jwt_secret=SecretStr(os.environ["JWT_SECRET"])))


def auth_headers(user_id: str) -> dict[str, str]:
    """Bearer header for *user_id*, signed with the test secret."""
    return {"Authorization": f"Bearer {_token_manager.generate_token(user_id)}"}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    return APISettings(
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test_123",
        cashfree_app_id="cf_app_test",
        cashfree_secret_key="cf_secret_test",
    )


# ---------------------------------------------------------------------------
# Engine services on a real SQLite store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    eng = get_local_engine(tmp_path / "api.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture()
def store() -> InMemoryEphemeralStore:
    return InMemoryEphemeralStore()


@pytest.fixture()
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> CreditLedger:
    return CreditLedger(session_factory)


@pytest.fixture()
def state_machine(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: CreditLedger,
    store: InMemoryEphemeralStore,
) -> SessionStateMachine:
    return SessionStateMachine(session_factory, ledger, cache=SessionSnapshotCache(store))


@pytest.fixture()
def broker(state_machine: SessionStateMachine, store: InMemoryEphemeralStore) -> DesktopPairingBroker:
    return DesktopPairingBroker(state_machine, store)


@pytest.fixture()
def reconciler(session_factory: async_sessionmaker[AsyncSession], ledger: CreditLedger) -> PaymentReconciler:
    return PaymentReconciler(session_factory, ledger)


# ---------------------------------------------------------------------------
# Payment processors
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_stripe() -> MagicMock:
    """A StripeGateway double; methods are sync like the real client."""
    gateway = MagicMock(spec=StripeGateway)
    gateway.create_payment_intent.return_value = {
        "id": "pi_test_1",
        "client_secret": "pi_test_1_secret",
        "status": "requires_payment_method",
    }
    gateway.retrieve_payment_intent.return_value = {"id": "pi_test_1", "status": "succeeded", "amount": 999}
    return gateway


@pytest.fixture()
def mock_cashfree() -> MagicMock:
    gateway = MagicMock(spec=CashfreeGateway)
    gateway.create_order = AsyncMock(
        side_effect=lambda **kw: {
            "order_id": kw["order_id"],
            "payment_session_id": "session_cf_1",
            "order_status": "ACTIVE",
        }
    )
    gateway.get_order_status = AsyncMock(return_value="PAID")
    gateway.verify_signature = MagicMock(return_value=True)
    return gateway


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    store: InMemoryEphemeralStore,
    ledger: CreditLedger,
    state_machine: SessionStateMachine,
    broker: DesktopPairingBroker,
    reconciler: PaymentReconciler,
    mock_stripe: MagicMock,
    mock_cashfree: MagicMock,
):
    application = create_app()

    async def _override_db_session():
        async with session_factory() as session:
            yield session

    overrides: dict[Callable[..., Any], Callable[..., Any]] = {
        get_settings: lambda: test_settings,
        get_db_session: _override_db_session,
        get_store: lambda: store,
        get_ledger: lambda: ledger,
        get_state_machine: lambda: state_machine,
        get_broker: lambda: broker,
        get_reconciler: lambda: reconciler,
        get_stripe_gateway: lambda: mock_stripe,
        get_cashfree_gateway: lambda: mock_cashfree,
        get_optional_stripe_gateway: lambda: mock_stripe,
        get_optional_cashfree_gateway: lambda: mock_cashfree,
    }
    application.dependency_overrides.update(overrides)
    return application


@pytest_asyncio.fixture()
async def anon_client(app) -> AsyncIterator[AsyncClient]:
    """Client without credentials (webhooks, desktop token exchange)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def user_id(make_user: Callable[..., Awaitable[str]]) -> str:
    """The authenticated user for ``client``; starts with 5 credits."""
    return await make_user(credits=5)


@pytest_asyncio.fixture()
async def client(app, user_id: str) -> AsyncIterator[AsyncClient]:
    """Client authenticated as ``user_id``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=auth_headers(user_id)) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_user(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: CreditLedger,
) -> Callable[..., Awaitable[str]]:
    counter = {"n": 0}

    async def _make(credits: int = 0) -> str:
        counter["n"] += 1
        async with transaction(session_factory) as session:
            user = await UserRepository(session).create(
                f"candidate{counter['n']}@example.com",
                display_name=f"Candidate {counter['n']}",
            )
            new_id = user.id
        if credits:
            await ledger.credit(new_id, credits, description="Opening balance", transaction_type="adjustment")
        return new_id

    return _make


@pytest_asyncio.fixture()
async def packages(session_factory: async_sessionmaker[AsyncSession]) -> None:
    async with transaction(session_factory) as session:
        repo = CreditPackageRepository(session)
        await repo.upsert("starter", name="Starter", credits_amount=10, price_usd=9.99, sort_order=1)
        await repo.upsert("pro", name="Pro", credits_amount=50, bonus_credits=5, price_usd=39.99, sort_order=2)


@pytest.fixture()
def session_body() -> dict[str, Any]:
    return {
        "jobTitle": "Backend Engineer",
        "jobDescription": "Build and run APIs",
        "difficulty": "medium",
        "duration": 45,
        "sessionType": "technical",
    }


@pytest.fixture()
def auth_for() -> Callable[[str], dict[str, str]]:
    """Header factory for requests made as another user."""
    return auth_headers
