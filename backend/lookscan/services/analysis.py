"""Paid facial analysis: the gateway in front of the vision provider.

Order of work for one request, each step fail-fast:
1. Authorize the session credential (and record its use)
2. Cap the declared body size, then claim the session for this request
3. Require both photos as real file uploads
4. Bound size (10 MiB) and MIME type per photo
5. Inline each photo as a base64 data URL (bytes untouched)
6. Send one structured-output Chat Completions request
7. Return the provider's JSON document as-is, marking the session used

The output contract is enforced by the provider through ``response_format``
with ``strict: true``; we only refuse responses that carry no usable JSON.
"""

from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import structlog
from starlette.datastructures import UploadFile

from lookscan.config import Settings
from lookscan.errors import (
    AuthorizationFailure,
    StoreUnavailable,
    UpstreamFailure,
    UpstreamTimeout,
    ValidationFailure,
)
from lookscan.models.contracts import SessionRecord
from lookscan.services.sessions import SessionRepository

log = structlog.get_logger("analysis")

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MiB
ALLOWED_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
_READ_CHUNK = 65_536
# Both photos at the limit plus room for the text fields and multipart framing
MAX_REQUEST_SIZE = 2 * MAX_FILE_SIZE + 1024 * 1024
FILE_TOO_LARGE = f"File too large. Maximum size is {MAX_FILE_SIZE // (1024 * 1024)}MB per photo."

# (form field, message when missing), in the order the images are sent
PHOTO_FIELDS: tuple[tuple[str, str], ...] = (
    ("frontPhoto", "No front photo provided"),
    ("sidePhoto", "No side profile photo provided"),
)

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "ko": "Korean (한국어)",
    "zh": "Chinese (中文)",
    "de": "German (Deutsch)",
    "es": "Spanish (Español)",
}
DEFAULT_LANGUAGE = "English"

INVALID_SESSION = "Invalid or expired session. Please complete payment."
SESSION_ALREADY_USED = "Session already used. Please complete payment."
GENERIC_FAILURE = "An error occurred while processing your request."

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
RETRY_BACKOFF_SECONDS = 1.0
# Extra lifetime of an in-flight claim beyond the worst-case provider time
CLAIM_GRACE_SECONDS = 60

# Strict structured-output schema the provider must satisfy
OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "overallScore": {"type": "number"},
        "predictedAge": {"type": "number"},
        "bodyFat": {"type": "string", "enum": ["low", "medium", "high"]},
        "skinType": {"type": "string", "enum": ["dry", "oily", "combination"]},
        "facialScores": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "region": {"type": "string"},
                    "score": {"type": "number"},
                    "description": {"type": "string"},
                },
                "required": ["region", "score", "description"],
            },
        },
        "sections": {
            "type": "array",
            "minItems": 4,
            "description": (
                "Must include these sections in order: 1) Skin Type Identification, "
                "2) Actionable Advice, 3) Actual Guidance, 4) Improvement Potential. "
                "Add 'Body Fat Management' section if bodyFat is medium or high."
            ),
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "title": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["title", "content"],
            },
        },
    },
    "required": ["overallScore", "predictedAge", "bodyFat", "skinType", "facialScores", "sections"],
}

_system_prompt_cache: str | None = None


def load_prompt() -> str:
    """Load the facial analysis system prompt."""
    global _system_prompt_cache  # noqa: PLW0603
    if _system_prompt_cache is None:
        _system_prompt_cache = (PROMPTS_DIR / "facial_analysis.txt").read_text(encoding="utf-8")
    return _system_prompt_cache


@dataclass(frozen=True)
class Photo:
    field: str
    content_type: str
    data: bytes

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


@dataclass(frozen=True)
class AnalysisContext:
    height: str = "unknown"
    weight: str = "unknown"
    language: str = DEFAULT_LANGUAGE


def output_language(code: Any) -> str:
    if not isinstance(code, str):
        return DEFAULT_LANGUAGE
    return LANGUAGE_NAMES.get(code.strip().lower(), DEFAULT_LANGUAGE)


def _text_field(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return "unknown"


def context_from_form(form: Any) -> AnalysisContext:
    return AnalysisContext(
        height=_text_field(form.get("height")),
        weight=_text_field(form.get("weight")),
        language=output_language(form.get("language")),
    )


def require_uploads(form: Any) -> list[tuple[str, UploadFile]]:
    """Every photo field must hold a file part, not a plain form value."""
    uploads: list[tuple[str, UploadFile]] = []
    for field, missing_message in PHOTO_FIELDS:
        value = form.get(field)
        if not isinstance(value, UploadFile):
            raise ValidationFailure(missing_message, details=field)
        uploads.append((field, value))
    return uploads


def check_request_size(headers: Mapping[str, str], limit: int = MAX_REQUEST_SIZE) -> None:
    """Reject a declared body larger than two maximum-size photos before parsing it."""
    declared = headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise ValidationFailure(FILE_TOO_LARGE, details="request: size")


async def read_bounded(upload: UploadFile, limit: int = MAX_FILE_SIZE) -> bytes | None:
    """Read the whole upload, or return None as soon as it exceeds limit.

    This is a per-photo validation check. Starlette has already spooled the
    part (to disk past 1 MiB) by the time it is read here; the overall body
    is capped by ``check_request_size`` before parsing.
    """
    chunks: list[bytes] = []
    total = 0
    while chunk := await upload.read(_READ_CHUNK):
        total += len(chunk)
        if total > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


async def validate_photos(uploads: list[tuple[str, UploadFile]]) -> list[Photo]:
    """Size first for every photo, then type, so an oversized file is always a size error."""
    contents: list[bytes] = []
    for field, upload in uploads:
        data = await read_bounded(upload)
        if data is None:
            raise ValidationFailure(
                FILE_TOO_LARGE,
                details=f"{field}: size",
            )
        contents.append(data)

    photos: list[Photo] = []
    for (field, upload), data in zip(uploads, contents, strict=True):
        content_type = (upload.content_type or "").split(";")[0].strip().lower()
        if content_type not in ALLOWED_TYPES:
            raise ValidationFailure(
                "Invalid file type. Allowed: JPEG, PNG, WebP, GIF",
                details=f"{field}: type {content_type or 'missing'}",
            )
        photos.append(Photo(field=field, content_type=content_type, data=data))
    return photos


def build_messages(photos: list[Photo], context: AnalysisContext) -> list[dict[str, Any]]:
    """System instruction plus one user turn with context text and inline images."""
    text = (
        "Please analyze these photos.\n\n"
        f"Height: {context.height} cm\n"
        f"Weight: {context.weight} kg\n\n"
        "First image: Front view (facing camera)\n"
        "Second image: Side profile view\n\n"
        f"IMPORTANT: Write all your analysis and recommendations in {context.language}. "
        f"The entire response must be in {context.language}."
    )
    content: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for photo in photos:
        content.append(
            {
                "type": "image_url",
                "image_url": {"url": photo.to_data_url(), "detail": "high"},
            }
        )
    return [
        {"role": "system", "content": load_prompt()},
        {"role": "user", "content": content},
    ]


def build_request_body(
    photos: list[Photo], context: AnalysisContext, settings: Settings
) -> dict[str, Any]:
    return {
        "model": settings.openai_model,
        "max_tokens": settings.openai_max_tokens,
        "messages": build_messages(photos, context),
        "response_format": {
            "type": "json_schema",
            "json_schema": {
                "name": "facial_analysis",
                "strict": True,
                "schema": OUTPUT_SCHEMA,
            },
        },
    }


def extract_analysis(response: dict[str, Any]) -> dict[str, Any]:
    """Pull the structured JSON document out of a Chat Completions response."""
    try:
        message = response["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise UpstreamFailure(GENERIC_FAILURE, details="No message in response") from exc

    if not isinstance(message, dict):
        raise UpstreamFailure(GENERIC_FAILURE, details="No message in response")
    if message.get("refusal"):
        log.warning("analysis_refused", refusal=str(message["refusal"])[:200])
        raise UpstreamFailure(GENERIC_FAILURE, details="Model refused the request")

    content = message.get("content")
    if not content:
        raise UpstreamFailure(GENERIC_FAILURE, details="No content in response")
    try:
        analysis = json.loads(content)
    except (json.JSONDecodeError, TypeError) as exc:
        raise UpstreamFailure(GENERIC_FAILURE, details="Content is not valid JSON") from exc
    if not isinstance(analysis, dict):
        raise UpstreamFailure(GENERIC_FAILURE, details="Content is not a JSON object")
    return analysis


class AnalysisGateway:
    def __init__(
        self,
        settings: Settings,
        sessions: SessionRepository | None,
        client: httpx.AsyncClient,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._client = client

    async def authorize(self, token: str | None) -> SessionRecord | None:
        """Resolve and touch the session. None only in the explicit unpaid dev mode."""
        if self._sessions is None:
            if self._settings.allow_unpaid_analysis:
                log.warning("analysis_unpaid_dev_mode")
                return None
            log.error("analysis_store_not_configured")
            raise StoreUnavailable("Payment verification unavailable")

        if not token:
            log.info("analysis_missing_session_token")
            raise AuthorizationFailure(INVALID_SESSION)

        record = await self._sessions.get(token)
        if record is None:
            log.info("analysis_invalid_session", token=token[:8])
            raise AuthorizationFailure(INVALID_SESSION)
        if self._settings.enforce_single_use and record.used:
            log.info("analysis_session_already_used", token=token[:8])
            raise AuthorizationFailure(SESSION_ALREADY_USED)

        touched = await self._sessions.touch(token, record)
        if touched is None:
            log.info("analysis_session_expired", token=token[:8])
            raise AuthorizationFailure(INVALID_SESSION)
        return touched

    async def call_provider(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST to Chat Completions; retries only timeouts, network errors and 429/5xx."""
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self._settings.openai_api_key}"}
        attempts = 1 + max(self._settings.analysis_max_retries, 0)
        attempt = 0

        while True:
            attempt += 1
            last = attempt >= attempts
            try:
                response = await self._client.post(
                    url,
                    json=body,
                    headers=headers,
                    timeout=self._settings.analysis_timeout_seconds,
                )
            except httpx.TimeoutException as exc:
                log.warning("analysis_provider_timeout", attempt=attempt)
                if last:
                    raise UpstreamTimeout("Analysis provider timed out") from exc
                await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)
                continue
            except httpx.RequestError as exc:
                log.warning(
                    "analysis_provider_network_error",
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                if last:
                    raise UpstreamFailure(GENERIC_FAILURE) from exc
                await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)
                continue

            if response.is_success:
                try:
                    return response.json()
                except ValueError as exc:
                    raise UpstreamFailure(GENERIC_FAILURE, details="Response is not JSON") from exc

            log.error(
                "openai_api_error",
                status=response.status_code,
                attempt=attempt,
                body=response.text[:500],
            )
            if last or response.status_code not in _RETRYABLE_STATUS:
                raise UpstreamFailure(
                    "OpenAI API error",
                    upstream_status=response.status_code,
                    details=response.text,
                )
            await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)

    async def analyze(self, form: Any) -> dict[str, Any]:
        """Validate the photos in already-parsed multipart data and analyze them.

        Call ``authorize`` first; the form is not parsed for unpaid requests.
        """
        uploads = require_uploads(form)
        photos = await validate_photos(uploads)
        context = context_from_form(form)

        log.info(
            "analysis_start",
            photo_count=len(photos),
            sizes=[len(p.data) for p in photos],
            language=context.language,
        )
        response = await self.call_provider(build_request_body(photos, context, self._settings))
        analysis = extract_analysis(response)
        log.info(
            "analysis_complete",
            body_fat=analysis.get("bodyFat"),
            skin_type=analysis.get("skinType"),
            section_count=len(analysis.get("sections") or []),
        )
        return analysis

    def _claim_ttl(self) -> int:
        attempts = 1 + max(self._settings.analysis_max_retries, 0)
        return int(self._settings.analysis_timeout_seconds * attempts) + CLAIM_GRACE_SECONDS

    @asynccontextmanager
    async def spend(self, token: str | None, session: SessionRecord | None) -> AsyncIterator[None]:
        """Hold the session for one analysis when single-use is on.

        The claim is taken atomically before the body runs, so a concurrent
        request with the same token is refused. On failure the claim is
        released and the session stays spendable. On success the claim is
        sealed for the session's lifetime and the record is marked used.
        """
        if (
            self._sessions is None
            or session is None
            or not token
            or not self._settings.enforce_single_use
        ):
            yield
            return

        if not await self._sessions.claim(token, self._claim_ttl()):
            log.info("analysis_session_in_flight_or_spent", token=token[:8])
            raise AuthorizationFailure(SESSION_ALREADY_USED)
        try:
            yield
        except BaseException:
            await self._sessions.release(token)
            raise
        await self._sessions.seal(token)
        await self._sessions.mark_used(token, session)
