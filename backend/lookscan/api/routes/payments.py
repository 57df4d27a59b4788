"""Session exchange: checkout id -> session token, polled by the client after checkout."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from lookscan.errors import LookscanError
from lookscan.models.contracts import VerifyPaymentRequest, VerifyPaymentResponse

logger = structlog.get_logger()

router = APIRouter(tags=["payments"])


def _respond(status: int, body: VerifyPaymentResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


@router.post("/verify-payment", response_model=VerifyPaymentResponse)
async def verify_payment(request: Request) -> JSONResponse:
    try:
        raw = await request.json()
    except ValueError:
        raw = None
    checkout_id = raw.get("checkoutId") if isinstance(raw, dict) else None
    if not isinstance(checkout_id, str) or not checkout_id.strip():
        return _respond(400, VerifyPaymentResponse(verified=False, error="Missing checkoutId"))

    body = VerifyPaymentRequest(checkout_id=checkout_id.strip())
    try:
        result = await request.app.state.exchange.exchange(body.checkout_id)
    except LookscanError as exc:
        logger.error("verify_payment_failed", error_type=type(exc).__name__, error=exc.message)
        return _respond(500, VerifyPaymentResponse(verified=False, error="Verification failed"))

    if result is None:
        return _respond(404, VerifyPaymentResponse(verified=False, error="Payment not found"))
    return _respond(200, result)
