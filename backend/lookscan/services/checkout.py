"""Polar checkout creation, the unauthenticated entry point of the paid flow."""

from __future__ import annotations

from collections.abc import Mapping

import httpx
import structlog

from lookscan.config import Settings
from lookscan.errors import UpstreamFailure, UpstreamTimeout
from lookscan.models.contracts import CheckoutRequest, CheckoutResponse

logger = structlog.get_logger()

# Polar substitutes the real checkout id for this literal placeholder.
CHECKOUT_ID_PLACEHOLDER = "{CHECKOUT_ID}"
SUCCESS_PATH = f"/result?checkout=success&checkout_id={CHECKOUT_ID_PLACEHOLDER}"


def _url_origin(url: str) -> str | None:
    """``scheme://host[:port]`` of an absolute URL, or None if it has no host."""
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return None
    if not parsed.scheme or not parsed.host:
        return None
    port = f":{parsed.port}" if parsed.port is not None else ""
    return f"{parsed.scheme}://{parsed.host}{port}"


def request_origin(headers: Mapping[str, str], base_url: str) -> str:
    """Origin header, else the origin part of Referer, else our own base URL."""
    origin = headers.get("origin")
    if origin:
        return origin
    referer = headers.get("referer")
    if referer:
        referer_origin = _url_origin(referer)
        if referer_origin:
            return referer_origin
    return _url_origin(base_url) or base_url.rstrip("/")


def resolve_success_url(body: CheckoutRequest, app_url: str, fallback_origin: str) -> str:
    if body.success_url:
        return body.success_url
    origin = app_url.rstrip("/") if app_url else fallback_origin
    return f"{origin}{SUCCESS_PATH}"


class CheckoutService:
    def __init__(self, settings: Settings, client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._client = client

    async def create_checkout(self, body: CheckoutRequest, fallback_origin: str) -> CheckoutResponse:
        success_url = resolve_success_url(body, self._settings.app_url, fallback_origin)
        payload: dict[str, object] = {
            "products": [self._settings.polar_product_id],
            "success_url": success_url,
        }
        if body.customer_email:
            payload["customer_email"] = body.customer_email

        api_base = self._settings.polar_api_base
        logger.info(
            "checkout_create_start",
            api_base=api_base,
            sandbox=self._settings.polar_sandbox,
            product_id=self._settings.polar_product_id,
            success_url=success_url,
        )

        try:
            response = await self._client.post(
                f"{api_base}/v1/checkouts/",
                json=payload,
                headers={"Authorization": f"Bearer {self._settings.polar_access_token}"},
                timeout=self._settings.checkout_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            logger.error("checkout_timeout", api_base=api_base)
            raise UpstreamTimeout("Payment provider timed out") from exc
        except httpx.RequestError as exc:
            logger.error("checkout_network_error", error_type=type(exc).__name__)
            raise UpstreamFailure("An error occurred") from exc

        if not response.is_success:
            logger.error("polar_api_error", status=response.status_code, body=response.text[:500])
            raise UpstreamFailure(
                "Failed to create checkout session",
                details=response.text,
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
            result = CheckoutResponse(checkout_url=data["url"], checkout_id=data["id"])
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("polar_unexpected_response", body=response.text[:500])
            raise UpstreamFailure("An error occurred") from exc

        logger.info("checkout_created", checkout_id=result.checkout_id)
        return result
