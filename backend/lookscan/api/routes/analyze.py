"""Paid analysis endpoint.

The session credential and the declared body size are checked before the
multipart body is parsed, so unpaid or oversized requests are never buffered.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request

from lookscan.models.contracts import AnalyzeResponse, ErrorResponse
from lookscan.services.analysis import check_request_size

logger = structlog.get_logger()

router = APIRouter(tags=["analysis"])

SESSION_TOKEN_HEADER = "X-Session-Token"
MAX_FORM_FILES = 4


@router.post(
    "/analyze",
    response_model=AnalyzeResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def analyze(request: Request) -> AnalyzeResponse:
    gateway = request.app.state.analysis
    token = request.headers.get(SESSION_TOKEN_HEADER) or None

    session = await gateway.authorize(token)
    check_request_size(request.headers)
    async with gateway.spend(token, session):
        async with request.form(max_files=MAX_FORM_FILES) as form:
            analysis = await gateway.analyze(form)
    return AnalyzeResponse(analysis=analysis)
