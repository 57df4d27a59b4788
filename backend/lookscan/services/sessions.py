"""Typed access to session credentials kept in the credential store.

Record kinds:
    <token>              -> SessionRecord JSON
    checkout:<checkout>  -> token
    inflight:<token>     -> "1" while an analysis runs, "spent" once it succeeded
The first two are written in one ``put_many`` call so they share an expiry.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable

import structlog
from pydantic import ValidationError

from lookscan.models.contracts import SessionRecord, checkout_index_key
from lookscan.utils.credential_store import CredentialStore

logger = structlog.get_logger()

TOKEN_BYTES = 32
IN_FLIGHT_PREFIX = "inflight:"
SPENT_MARKER = "spent"


def generate_session_token() -> str:
    """64 hex chars from a CSPRNG."""
    return secrets.token_hex(TOKEN_BYTES)


def in_flight_key(token: str) -> str:
    return f"{IN_FLIGHT_PREFIX}{token}"


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


class SessionRepository:
    def __init__(
        self,
        store: CredentialStore,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock

    async def mint(self, checkout_id: str, customer_email: str | None) -> str:
        """Create a session for a paid checkout and return its token.

        A redelivered completion event for a checkout whose session is still
        live returns the existing token instead of minting a second one.
        """
        existing = await self.token_for_checkout(checkout_id)
        if existing is not None and await self.get(existing) is not None:
            logger.info("session_already_minted", checkout_id=checkout_id, token=existing[:8])
            return existing

        token = generate_session_token()
        record = SessionRecord(
            checkout_id=checkout_id,
            customer_email=customer_email,
            created_at=_now_ms(self._clock),
        )
        await self._store.put_many(
            {
                token: record.model_dump_json(by_alias=True),
                checkout_index_key(checkout_id): token,
            },
            self._ttl,
        )
        logger.info("session_minted", checkout_id=checkout_id, token=token[:8])
        return token

    async def get(self, token: str) -> SessionRecord | None:
        raw = await self._store.get(token)
        if raw is None:
            return None
        try:
            return SessionRecord.model_validate_json(raw)
        except ValidationError:
            # Not a session (e.g. a checkout index key presented as a token)
            logger.warning("session_record_malformed", token=token[:8])
            return None

    async def token_for_checkout(self, checkout_id: str) -> str | None:
        return await self._store.get(checkout_index_key(checkout_id))

    async def touch(self, token: str, record: SessionRecord) -> SessionRecord | None:
        """Set lastUsed. Returns None if the session expired meanwhile."""
        updated = record.model_copy(update={"last_used": _now_ms(self._clock)})
        if not await self._store.replace(token, updated.model_dump_json(by_alias=True)):
            return None
        return updated

    async def claim(self, token: str, ttl_seconds: int) -> bool:
        """Reserve the session for one in-flight request. False if already reserved."""
        return await self._store.claim(in_flight_key(token), ttl_seconds)

    async def release(self, token: str) -> None:
        await self._store.delete(in_flight_key(token))

    async def seal(self, token: str) -> None:
        """Turn the in-flight claim into a permanent spent marker for this session."""
        await self._store.put(in_flight_key(token), SPENT_MARKER, self._ttl)

    async def mark_used(self, token: str, record: SessionRecord) -> SessionRecord | None:
        updated = record.model_copy(update={"used": True})
        if not await self._store.replace(token, updated.model_dump_json(by_alias=True)):
            return None
        logger.info("session_marked_used", checkout_id=record.checkout_id, token=token[:8])
        return updated
