"""Health-check and readiness probe endpoints.

``/health`` (liveness) is registered under ``/api/v1``; ``/ready`` sits at
the application root so orchestrators can gate traffic independently of
the API version.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api import __version__
from api.dependencies import DbSessionDep, StoreDep

logger = logging.getLogger(__name__)

# Keep probes fast when Redis is unreachable.
_STORE_PING_TIMEOUT = 2.0

router = APIRouter(tags=["health"])


async def _db_ok(session: DbSessionDep) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


async def _store_ok(store: StoreDep) -> bool:
    try:
        return await asyncio.wait_for(store.ping(), timeout=_STORE_PING_TIMEOUT)
    except Exception as exc:
        logger.warning("Ephemeral store health check failed: %s", exc)
        return False


@router.get("/health")
async def health(session: DbSessionDep, store: StoreDep) -> dict[str, Any]:
    """Always 200; ``db`` and ``ephemeral_store`` report dependency reachability."""
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _db_ok(session) else "degraded",
        "ephemeral_store": "ok" if await _store_ok(store) else "degraded",
    }


readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: DbSessionDep, store: StoreDep) -> JSONResponse:
    """Readiness probe.

    Both the ledger database and the ephemeral store gate readiness:
    without the store, pairing tokens cannot be issued or redeemed.
    Returns 503 with ``not_ready`` when either is unreachable.
    """
    checks = {
        "db": "ok" if await _db_ok(session) else "unavailable",
        "ephemeral_store": "ok" if await _store_ok(store) else "unavailable",
    }
    ready = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "version": __version__,
            "checks": checks,
        },
    )
