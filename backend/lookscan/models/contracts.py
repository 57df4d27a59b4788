"""Lookscan contract models.

Wire format is camelCase for everything our own clients see; Polar webhook
payloads keep Polar's snake_case.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# === Credential store records ===


class SessionRecord(_CamelModel):
    """Value stored under a session token. Times are epoch milliseconds."""

    checkout_id: str
    customer_email: str | None = None
    created_at: int
    last_used: int | None = None
    used: bool = False


CHECKOUT_INDEX_PREFIX = "checkout:"


def checkout_index_key(checkout_id: str) -> str:
    return f"{CHECKOUT_INDEX_PREFIX}{checkout_id}"


# === Checkout ===


class CheckoutRequest(_CamelModel):
    success_url: str | None = None
    customer_email: str | None = None


class CheckoutResponse(_CamelModel):
    checkout_url: str
    checkout_id: str


# === Webhook ===


MINTING_EVENT_TYPES = frozenset({"checkout.completed", "order.created"})


class WebhookEvent(BaseModel):
    """Polar event envelope. ``data`` is only interpreted for minting events."""

    type: str
    data: dict[str, Any] = {}


class CheckoutEventData(BaseModel):
    id: str
    status: str | None = None
    customer_email: str | None = None
    product_id: str | None = None
    metadata: dict[str, Any] = {}


class WebhookAck(BaseModel):
    received: bool = True


# === Session exchange ===


class VerifyPaymentRequest(_CamelModel):
    checkout_id: str | None = None


class VerifyPaymentResponse(_CamelModel):
    verified: bool
    session_token: str | None = None
    session: SessionRecord | None = None
    error: str | None = None
    warning: str | None = None


# === Analysis ===


class AnalyzeResponse(BaseModel):
    analysis: dict[str, Any]


# === Errors ===


class ErrorResponse(BaseModel):
    error: str
    status: int | None = None
    details: str | None = None
