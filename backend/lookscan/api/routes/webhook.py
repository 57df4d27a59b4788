"""Polar webhook endpoint.

Responses are bare: 200 ``{"received": true}``, 401 on a bad
signature (Polar stops retrying), 500 on anything else (Polar retries).
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from lookscan.errors import AuthenticationFailure, LookscanError
from lookscan.models.contracts import WebhookAck
from lookscan.services.webhook import SIGNATURE_HEADERS

logger = structlog.get_logger()

router = APIRouter(tags=["webhooks"])


def _signature(request: Request) -> str:
    for name in SIGNATURE_HEADERS:
        value = request.headers.get(name)
        if value:
            return value
    return ""


@router.post("/webhook", response_model=WebhookAck)
async def polar_webhook(request: Request):
    payload = await request.body()
    try:
        await request.app.state.webhooks.handle(payload, _signature(request))
    except AuthenticationFailure:
        return PlainTextResponse("Invalid signature", status_code=401)
    except ValidationError as exc:
        logger.error("webhook_malformed_event", error_count=exc.error_count())
        return PlainTextResponse("Webhook processing failed", status_code=500)
    except LookscanError as exc:
        logger.error("webhook_processing_failed", error_type=type(exc).__name__, error=exc.message)
        return PlainTextResponse("Webhook processing failed", status_code=500)
    return WebhookAck()
