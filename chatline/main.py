"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatline.core.config import settings
from chatline.core.errors import ChatServiceError
from chatline.core.rate_limit import limiter
from chatline.core.structured_logging import build_log_context
from chatline.db.session import engine
from chatline.routers import (
    attachments_router,
    catalog_router,
    conversations_router,
    identity_router,
    internal_router,
    messages_router,
    notifications_router,
)
from chatline.services.blob_store import BlobStore, build_blob_store
from chatline.services.bot_service import BotResponder
from chatline.services.notification_dispatch_service import NotificationDispatcher
from chatline.services.notification_transports import build_default_transports

logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
    )
    logging.info("Sentry initialized for error tracking")


# ============================================================================
# Error Handlers
# ============================================================================


async def chat_service_error_handler(request: Request, exc: ChatServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


HTTP_ERROR_CODES = {
    401: "NOT_AUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework errors (unknown route, wrong method) in the same {code, message} shape."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "code": HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
            "message": str(exc.detail),
        },
        headers=getattr(exc, "headers", None),
    )


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request body or parameters are invalid",
            "details": {"errors": errors},
        },
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = JSONResponse(
        status_code=429,
        content={"code": "RATE_LIMITED", "message": f"Rate limit exceeded: {exc.detail}"},
    )
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        extra=build_log_context(route=request.url.path, method=request.method),
    )
    return JSONResponse(
        status_code=500,
        content={"code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


# ============================================================================
# FastAPI App
# ============================================================================


def create_app(
    *,
    dispatcher: NotificationDispatcher | None = None,
    blob_store: BlobStore | None = None,
    bot: BotResponder | None = None,
) -> FastAPI:
    """
    Build the application.

    Collaborators are passed in explicitly; a missing dispatcher or blob
    store is built from settings when the app starts. Without a bot the
    assistant endpoint answers 503.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.dispatcher is None:
            app.state.dispatcher = NotificationDispatcher(build_default_transports())
        if app.state.blob_store is None:
            app.state.blob_store = build_blob_store()
        started_bot = app.state.bot is not None and not app.state.bot.started
        if started_bot:
            app.state.bot.start()
        yield
        if started_bot:
            app.state.bot.stop()

    app = FastAPI(
        title="Chatline API",
        description="Conversations, message ledger and notification dispatch",
        version=settings.VERSION,
        docs_url="/docs" if settings.ENV == "dev" else None,
        redoc_url="/redoc" if settings.ENV == "dev" else None,
        lifespan=lifespan,
    )

    app.state.dispatcher = dispatcher
    app.state.blob_store = blob_store
    app.state.bot = bot

    # Add rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(ChatServiceError, chat_service_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # CORS middleware - must be added before routers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-User-Id"],
        expose_headers=["Content-Disposition"],
    )

    # ========================================================================
    # Routers
    # ========================================================================

    app.include_router(identity_router, prefix="/me", tags=["identity"])
    app.include_router(notifications_router, prefix="/me", tags=["notifications"])
    app.include_router(conversations_router, prefix="/conversations", tags=["conversations"])
    app.include_router(messages_router, tags=["messages"])  # Mixed paths: /conversations/{id}/messages and /messages/{id}
    app.include_router(attachments_router)  # Already has /attachments prefix
    app.include_router(catalog_router)
    app.include_router(internal_router)

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health")
    def health():
        """
        Health check endpoint.

        Verifies database connectivity and returns environment info.
        """
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}

    return app


app = create_app()
