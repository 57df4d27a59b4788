"""Checkout id -> session token exchange.

The client returns from Polar before (or after) the webhook lands. A miss
here means "not paid yet"; the client polls until the webhook has minted.
"""

from __future__ import annotations

import structlog

from lookscan.models.contracts import VerifyPaymentResponse
from lookscan.services.sessions import SessionRepository

logger = structlog.get_logger()

DEV_TOKEN_PREFIX = "dev_"
DEV_MODE_WARNING = "Credential store not configured - development mode"


class SessionExchange:
    def __init__(self, sessions: SessionRepository | None) -> None:
        self._sessions = sessions

    async def exchange(self, checkout_id: str) -> VerifyPaymentResponse | None:
        """Return the verified response, or None when no payment is recorded."""
        if self._sessions is None:
            logger.warning("session_exchange_dev_mode", checkout_id=checkout_id)
            return VerifyPaymentResponse(
                verified=True,
                session_token=f"{DEV_TOKEN_PREFIX}{checkout_id}",
                warning=DEV_MODE_WARNING,
            )

        token = await self._sessions.token_for_checkout(checkout_id)
        if token is None:
            logger.info("session_exchange_not_found", checkout_id=checkout_id)
            return None

        session = await self._sessions.get(token)
        logger.info(
            "session_exchange_verified",
            checkout_id=checkout_id,
            token=token[:8],
            session_present=session is not None,
        )
        return VerifyPaymentResponse(verified=True, session_token=token, session=session)
