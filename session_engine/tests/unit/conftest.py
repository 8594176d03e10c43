"""Shared fixtures for session_engine unit tests.

Every test gets its own file-backed SQLite database (WAL mode) so that
concurrent transactions behave like separate connections to a real
store rather than a shared in-memory handle.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from session_engine.billing.reconciler import PaymentReconciler
from session_engine.ephemeral.snapshot_cache import SessionSnapshotCache
from session_engine.ephemeral.store import InMemoryEphemeralStore
from session_engine.ledger.credit_ledger import CreditLedger
from session_engine.lifecycle.params import SessionParams
from session_engine.lifecycle.state_machine import SessionStateMachine
from session_engine.pairing.broker import DesktopPairingBroker
from session_engine.state.database import make_session_factory, transaction
from session_engine.state.repository import UserRepository
from session_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeClock:
    """Wall clock (UTC-aware) that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic seconds source for the in-memory store."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def store(monotonic: FakeMonotonic) -> InMemoryEphemeralStore:
    return InMemoryEphemeralStore(clock=monotonic)


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> CreditLedger:
    return CreditLedger(session_factory)


@pytest.fixture
def state_machine(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: CreditLedger,
    store: InMemoryEphemeralStore,
    clock: FakeClock,
) -> SessionStateMachine:
    return SessionStateMachine(
        session_factory,
        ledger,
        cache=SessionSnapshotCache(store),
        clock=clock,
    )


@pytest.fixture
def broker(
    state_machine: SessionStateMachine,
    store: InMemoryEphemeralStore,
    clock: FakeClock,
) -> DesktopPairingBroker:
    return DesktopPairingBroker(state_machine, store, clock=clock)


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: CreditLedger,
) -> PaymentReconciler:
    return PaymentReconciler(session_factory, ledger)


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: CreditLedger,
) -> Callable[..., Awaitable[str]]:
    """Create a user whose starting balance is backed by an ``adjustment`` row."""
    counter = {"n": 0}

    async def _make(credits: int = 0) -> str:
        counter["n"] += 1
        async with transaction(session_factory) as session:
            user = await UserRepository(session).create(f"user{counter['n']}@example.com")
            user_id = user.id
        if credits:
            await ledger.credit(user_id, credits, description="Opening balance", transaction_type="adjustment")
        return user_id

    return _make


@pytest.fixture
def make_session(state_machine: SessionStateMachine) -> Callable[..., Awaitable[str]]:
    async def _make(user_id: str, job_title: str = "Backend Engineer", **kwargs: object) -> str:
        result = await state_machine.create(user_id, SessionParams(job_title=job_title, **kwargs))  # type: ignore[arg-type]
        assert result.ok, result.error
        assert result.session is not None
        return result.session.id

    return _make
