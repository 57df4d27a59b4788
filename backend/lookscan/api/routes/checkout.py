"""Checkout creation endpoint. No credential required."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from pydantic import ValidationError

from lookscan.errors import ValidationFailure
from lookscan.models.contracts import CheckoutRequest, CheckoutResponse, ErrorResponse
from lookscan.services.checkout import request_origin

logger = structlog.get_logger()

router = APIRouter(tags=["checkout"])


async def _read_body(request: Request) -> CheckoutRequest:
    """An empty or non-JSON body means "no overrides"."""
    try:
        raw = await request.json()
    except ValueError:
        raw = {}
    if not isinstance(raw, dict):
        raw = {}
    try:
        return CheckoutRequest.model_validate(raw)
    except ValidationError as exc:
        raise ValidationFailure("Invalid checkout request", details=str(exc)) from exc


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    response_model_by_alias=True,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def create_checkout(request: Request) -> CheckoutResponse:
    body = await _read_body(request)
    origin = request_origin(request.headers, str(request.base_url))
    return await request.app.state.checkout.create_checkout(body, origin)
