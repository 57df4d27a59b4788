import uuid
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lookscan.api.routes import analyze, checkout, health, payments, webhook
from lookscan.config import APP_VERSION, Settings
from lookscan.errors import LookscanError
from lookscan.logging import configure_logging
from lookscan.models.contracts import ErrorResponse
from lookscan.services.analysis import AnalysisGateway
from lookscan.services.checkout import CheckoutService
from lookscan.services.session_exchange import SessionExchange
from lookscan.services.sessions import SessionRepository
from lookscan.services.webhook import WebhookProcessor
from lookscan.utils.credential_store import CredentialStore, build_credential_store

logger = structlog.get_logger()


def _with_request_id(request: Request, response: JSONResponse) -> JSONResponse:
    response.headers["X-Request-ID"] = getattr(
        request.state, "request_id", request.headers.get("X-Request-ID", "")
    )
    return response


async def request_id_middleware(request: Request, call_next):
    """Attach a unique request ID to every request for log correlation.

    The ID is bound into structlog context vars and echoed back in the
    X-Request-ID response header.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


async def lookscan_error_handler(request: Request, exc: LookscanError) -> JSONResponse:
    """Map the error taxonomy onto ``{error, status?, details?}``."""
    logger.info(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        upstream_status=exc.upstream_status,
    )
    body = ErrorResponse(error=exc.message, status=exc.upstream_status, details=exc.details)
    response = JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))
    return _with_request_id(request, response)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return ErrorResponse JSON instead of FastAPI's default ``{"detail": [...]}``."""
    messages = []
    for err in exc.errors():
        loc = " -> ".join(str(part) for part in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    response = JSONResponse(
        status_code=422,
        content=ErrorResponse(error="Invalid request", details="; ".join(messages)).model_dump(
            exclude_none=True
        ),
    )
    return _with_request_id(request, response)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework errors (unknown route, wrong method, multipart limits) as ErrorResponse."""
    logger.info("http_error", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail)).model_dump(exclude_none=True),
        headers=getattr(exc, "headers", None),
    )
    return _with_request_id(request, response)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Consistent JSON 500 for anything unexpected; details stay in the logs."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    response = JSONResponse(
        status_code=500,
        content=ErrorResponse(error="An error occurred").model_dump(exclude_none=True),
    )
    return _with_request_id(request, response)


def create_app(
    settings: Settings | None = None,
    *,
    store: CredentialStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the API with every service wired from one explicit Settings object.

    ``store`` and ``http_client`` override what settings would build (tests
    pass an in-memory store and an httpx.MockTransport client). A
    ``credential_store`` of "none" always means no store.
    """
    settings = settings or Settings()
    configure_logging(settings)

    if settings.credential_store == "none":
        store = None
    elif store is None:
        store = build_credential_store(settings)
    client = http_client or httpx.AsyncClient()
    sessions = SessionRepository(store, settings.session_ttl_seconds) if store else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await client.aclose()
        if store is not None:
            await store.close()

    app = FastAPI(
        title="Lookscan API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.webhooks = WebhookProcessor(settings, sessions)
    app.state.checkout = CheckoutService(settings, client)
    app.state.exchange = SessionExchange(sessions)
    app.state.analysis = AnalysisGateway(settings, sessions, client)

    app.middleware("http")(request_id_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Session-Token"],
        expose_headers=["X-Request-ID"],
    )

    app.add_exception_handler(LookscanError, lookscan_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(checkout.router, prefix="/api")
    app.include_router(webhook.router, prefix="/api")
    app.include_router(payments.router, prefix="/api")
    app.include_router(analyze.router, prefix="/api")

    logger.info(
        "app_configured",
        environment=settings.environment,
        credential_store=settings.credential_store,
        webhook_secret_configured=bool(settings.polar_webhook_secret),
        allow_unsigned_webhooks=settings.allow_unsigned_webhooks,
        allow_unpaid_analysis=settings.allow_unpaid_analysis,
        enforce_single_use=settings.enforce_single_use,
    )
    return app


app = create_app()
