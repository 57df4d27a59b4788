"""Test helpers: fake clock, fake upstream transport, signed payloads, settings.

No network: every outbound call (Polar, OpenAI) goes through an
httpx.MockTransport that records requests and replays queued responses.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx

from lookscan.config import Settings
from lookscan.services.webhook import compute_signature

WEBHOOK_SECRET = "whsec_test_secret"

VALID_ANALYSIS: dict[str, Any] = {
    "overallScore": 4.5,
    "predictedAge": 27,
    "bodyFat": "medium",
    "skinType": "combination",
    "facialScores": [
        {"region": "Eye Area", "score": 5.0, "description": "Neutral canthal tilt."},
        {"region": "Midface", "score": 4.5, "description": "Average ratio."},
        {"region": "Jaw and Chin", "score": 4.0, "description": "Soft jawline."},
        {"region": "Skin and Symmetry", "score": 5.5, "description": "Clear skin."},
    ],
    "sections": [
        {"title": "Skin Type Identification", "content": "Combination skin."},
        {"title": "Actionable Advice", "content": "[KEY TAKEAWAY] Lower body fat."},
        {"title": "Actual Guidance", "content": "[PRIORITY RULE] Sleep."},
        {"title": "Improvement Potential", "content": "From 4.5 to 5.5."},
        {"title": "Body Fat Management", "content": "Body fat is a major factor."},
    ],
}


def completion_response(document: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": json.dumps(document if document is not None else VALID_ANALYSIS),
                    "refusal": None,
                },
                "finish_reason": "stop",
            }
        ],
    }


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Records outbound requests; answers with queued responses or a default handler."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.queue: list[httpx.Response | Exception] = []
        self.default: Callable[[httpx.Request], httpx.Response] = self._default

    @staticmethod
    def _default(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/chat/completions"):
            return httpx.Response(200, json=completion_response())
        if request.url.path.endswith("/v1/checkouts/"):
            return httpx.Response(
                201,
                json={"id": "chk_polar_1", "url": "https://polar.sh/checkout/chk_polar_1"},
            )
        return httpx.Response(404, text="no fake route")

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queue:
            item = self.queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return self.default(request)

    def json_body(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)

    def calls_to(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(payload, secret)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "polar_access_token": "polar_at_test",
        "polar_product_id": "prod_test_123",
        "polar_webhook_secret": WEBHOOK_SECRET,
        "openai_api_key": "sk-test",
        "credential_store": "memory",
        "environment": "development",
        "log_level": "WARNING",
        "app_url": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


@asynccontextmanager
async def asgi_client(
    app: Any, *, raise_app_exceptions: bool = True
) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=raise_app_exceptions)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
