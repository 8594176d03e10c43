"""FastAPI dependency injection for settings, the ledger store and engine services.

Store handles and engine services are built once at startup by
:func:`init_engine` / :func:`init_services` and shared by every request.
Tests replace them through ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from session_engine.billing.reconciler import PaymentReconciler
from session_engine.config import EngineSettings, load_settings
from session_engine.ephemeral.snapshot_cache import SessionSnapshotCache
from session_engine.ephemeral.store import EphemeralStore, InMemoryEphemeralStore, RedisEphemeralStore
from session_engine.ledger.credit_ledger import CreditLedger
from session_engine.lifecycle.state_machine import SessionStateMachine
from session_engine.pairing.broker import DesktopPairingBroker
from session_engine.state.database import get_engine, make_session_factory
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, PlatformEnv, load_api_settings
from api.services.cashfree_gateway import CashfreeGateway
from api.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Ledger store
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings, engine_settings: EngineSettings | None = None) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    engine_settings = engine_settings or load_settings()
    _engine = get_engine(
        settings.database_url,
        pool_size=engine_settings.database_pool_size,
        max_overflow=engine_settings.database_max_overflow,
    )
    _session_factory = make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a read-mostly ``AsyncSession`` for probes and profile lookups.

    The session commits on clean exit and rolls back on exception.
    Engine services open their own transactions; this dependency is not
    used for ledger writes.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


DbSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Engine services
# ---------------------------------------------------------------------------

_store: EphemeralStore | None = None
_ledger: CreditLedger | None = None
_state_machine: SessionStateMachine | None = None
_broker: DesktopPairingBroker | None = None
_reconciler: PaymentReconciler | None = None


def init_services(settings: APISettings, engine_settings: EngineSettings | None = None) -> None:
    """Build the ephemeral store and engine services on the shared engine.

    Must run after :func:`init_engine`.
    """
    global _store, _ledger, _state_machine, _broker, _reconciler  # noqa: PLW0603
    engine_settings = engine_settings or load_settings()
    session_factory = get_session_factory()

    redis_url = settings.redis_url or engine_settings.redis_url
    if redis_url:
        _store = RedisEphemeralStore.from_url(redis_url)
    else:
        if settings.platform_env != PlatformEnv.DEV:
            logger.warning(
                "No redis_url configured in %s; pairing tokens are process-local "
                "and will not be shared between workers",
                settings.platform_env.value,
            )
        _store = InMemoryEphemeralStore()

    _ledger = CreditLedger(session_factory)
    cache = SessionSnapshotCache(_store, ttl_seconds=engine_settings.session_cache_ttl_seconds)
    _state_machine = SessionStateMachine(
        session_factory,
        _ledger,
        cache=cache,
        credit_cost=engine_settings.session_credit_cost,
    )
    _broker = DesktopPairingBroker(
        _state_machine,
        _store,
        ttl_seconds=engine_settings.pairing_token_ttl_seconds,
    )
    _reconciler = PaymentReconciler(session_factory, _ledger)
    logger.info(
        "Engine services initialised (credit_cost=%d, ephemeral=%s)",
        engine_settings.session_credit_cost,
        type(_store).__name__,
    )


async def dispose_services() -> None:
    global _store, _ledger, _state_machine, _broker, _reconciler  # noqa: PLW0603
    if _store is not None:
        await _store.close()
    _store = _ledger = _state_machine = _broker = _reconciler = None


def _require(service: object | None, name: str) -> object:
    if service is None:
        raise RuntimeError(f"{name} has not been initialised. Ensure init_services() is called during startup.")
    return service


def get_store() -> EphemeralStore:
    return _require(_store, "Ephemeral store")  # type: ignore[return-value]


def get_ledger() -> CreditLedger:
    return _require(_ledger, "Credit ledger")  # type: ignore[return-value]


def get_state_machine() -> SessionStateMachine:
    return _require(_state_machine, "Session state machine")  # type: ignore[return-value]


def get_broker() -> DesktopPairingBroker:
    return _require(_broker, "Desktop pairing broker")  # type: ignore[return-value]


def get_reconciler() -> PaymentReconciler:
    return _require(_reconciler, "Payment reconciler")  # type: ignore[return-value]


StoreDep = Annotated[EphemeralStore, Depends(get_store)]
LedgerDep = Annotated[CreditLedger, Depends(get_ledger)]
StateMachineDep = Annotated[SessionStateMachine, Depends(get_state_machine)]
BrokerDep = Annotated[DesktopPairingBroker, Depends(get_broker)]
ReconcilerDep = Annotated[PaymentReconciler, Depends(get_reconciler)]

# ---------------------------------------------------------------------------
# Payment processors
# ---------------------------------------------------------------------------

_stripe: StripeGateway | None = None
_cashfree: CashfreeGateway | None = None


def init_payment_gateways(settings: APISettings) -> None:
    """Create processor clients for the processors that are configured."""
    global _stripe, _cashfree  # noqa: PLW0603
    _stripe = StripeGateway(settings) if settings.stripe_enabled else None
    _cashfree = CashfreeGateway(settings) if settings.cashfree_enabled else None
    logger.info(
        "Payment processors: stripe=%s cashfree=%s",
        "on" if _stripe else "off",
        "on" if _cashfree else "off",
    )


async def dispose_payment_gateways() -> None:
    global _stripe, _cashfree  # noqa: PLW0603
    if _cashfree is not None:
        await _cashfree.close()
    _stripe = None
    _cashfree = None


def get_stripe_gateway() -> StripeGateway:
    if _stripe is None:
        raise HTTPException(status_code=503, detail="Stripe payments are not configured")
    return _stripe


def get_cashfree_gateway() -> CashfreeGateway:
    if _cashfree is None:
        raise HTTPException(status_code=503, detail="Cashfree payments are not configured")
    return _cashfree


def get_optional_stripe_gateway() -> StripeGateway | None:
    """Like :func:`get_stripe_gateway` but yields ``None`` when Stripe is off."""
    return _stripe


def get_optional_cashfree_gateway() -> CashfreeGateway | None:
    return _cashfree


StripeDep = Annotated[StripeGateway, Depends(get_stripe_gateway)]
CashfreeDep = Annotated[CashfreeGateway, Depends(get_cashfree_gateway)]
OptionalStripeDep = Annotated[StripeGateway | None, Depends(get_optional_stripe_gateway)]
OptionalCashfreeDep = Annotated[CashfreeGateway | None, Depends(get_optional_cashfree_gateway)]

# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def get_user_id(request: Request) -> str:
    """Return the authenticated user id set by ``AuthenticationMiddleware``."""
    user_id = getattr(request.state, "sub", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return str(user_id)


UserDep = Annotated[str, Depends(get_user_id)]
