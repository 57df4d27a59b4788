"""Health check endpoint with a credential store check.

The store reporting "disconnected" does not change the overall status; the
endpoint always returns 200 so load balancers keep routing.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, Request

from lookscan.config import APP_VERSION

logger = structlog.get_logger()

router = APIRouter(tags=["health"])

_CHECK_TIMEOUT = 3.0  # seconds


async def _check_store(request: Request) -> str:
    store = request.app.state.store
    if store is None:
        return "not_configured"
    try:
        ok = await asyncio.wait_for(store.ping(), timeout=_CHECK_TIMEOUT)
    except TimeoutError:
        logger.debug("health_store_timeout", backend=store.backend)
        return "disconnected"
    return "connected" if ok else "disconnected"


@router.get("/health")
async def health_check(request: Request) -> dict:
    settings = request.app.state.settings
    return {
        "status": "ok",
        "version": APP_VERSION,
        "environment": settings.environment,
        "credential_store": await _check_store(request),
        "credential_store_backend": settings.credential_store,
    }
