"""Error taxonomy for the payment-gated analysis flow.

Services raise these; the exception handler in ``lookscan.main`` turns them
into ``{error, status?, details?}`` JSON bodies. ``message`` is always safe to
show to the client.
"""

from __future__ import annotations


class LookscanError(Exception):
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        details: str | None = None,
        upstream_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.upstream_status = upstream_status


class AuthenticationFailure(LookscanError):
    """Webhook signature missing, malformed or wrong."""

    status_code = 401


class AuthorizationFailure(LookscanError):
    """Session credential missing, expired, unknown or already used."""

    status_code = 403


class ValidationFailure(LookscanError):
    status_code = 400


class UpstreamFailure(LookscanError):
    """Payment or vision provider failed, or succeeded with unusable content."""

    status_code = 500


class UpstreamTimeout(UpstreamFailure):
    status_code = 504


class StoreUnavailable(LookscanError):
    """Credential store not configured, or unreachable."""

    status_code = 503
