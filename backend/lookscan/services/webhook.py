"""Polar webhook verification and session minting.

The signature is a hex HMAC-SHA256 of the exact raw request body. Anything
that cannot be decoded or compared is a failed verification, never a crash.
Completion events mint a session credential; every other event type is
acknowledged without side effects (delivery is at-least-once).
"""

from __future__ import annotations

import hashlib
import hmac

import structlog

from lookscan.config import Settings
from lookscan.errors import AuthenticationFailure
from lookscan.models.contracts import (
    MINTING_EVENT_TYPES,
    CheckoutEventData,
    WebhookEvent,
)
from lookscan.services.sessions import SessionRepository

logger = structlog.get_logger()

SIGNATURE_HEADERS = ("webhook-signature", "x-polar-signature")


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature over payload."""
    try:
        provided = bytes.fromhex(signature.strip())
    except ValueError:
        return False
    if not provided:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)


class WebhookProcessor:
    def __init__(self, settings: Settings, sessions: SessionRepository | None) -> None:
        self._settings = settings
        self._sessions = sessions

    def authenticate(self, payload: bytes, signature: str) -> None:
        secret = self._settings.polar_webhook_secret
        if not secret:
            if self._settings.allow_unsigned_webhooks:
                logger.warning("webhook_signature_check_skipped", reason="no secret configured")
                return
            logger.error("webhook_secret_not_configured")
            raise AuthenticationFailure("Invalid signature")
        if not verify_signature(payload, signature, secret):
            logger.error("webhook_invalid_signature", signature_present=bool(signature))
            raise AuthenticationFailure("Invalid signature")

    async def handle(self, payload: bytes, signature: str) -> str | None:
        """Authenticate and process one delivery.

        Returns the session token when one was minted (or already existed),
        else None. Raises AuthenticationFailure for bad signatures and
        ValidationError for bodies that are not Polar events.
        """
        self.authenticate(payload, signature)

        event = WebhookEvent.model_validate_json(payload)
        if event.type not in MINTING_EVENT_TYPES:
            logger.info("webhook_event_ignored", event_type=event.type)
            return None

        data = CheckoutEventData.model_validate(event.data)
        if self._sessions is None:
            logger.warning(
                "credential_store_not_configured",
                event_type=event.type,
                checkout_id=data.id,
            )
            return None

        token = await self._sessions.mint(data.id, data.customer_email)
        logger.info("payment_verified", event_type=event.type, checkout_id=data.id)
        return token

