"""FastAPI application entry point."""
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.core.config import settings
from app.core.exceptions import ReconciliationError
from app.core.request_audit_context import reset_request_audit_context, start_request_audit_context
from app.core.structured_logging import build_log_context, configure_logging
from app.db.session import engine

configure_logging()
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
        traces_sample_rate=0.1,  # 10% of requests for performance monitoring
        send_default_pii=False,  # Don't send PII to Sentry
    )
    logger.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from app.core.rate_limit import limiter

# ============================================================================
# Migrations
# ============================================================================

if settings.DB_AUTO_MIGRATE:
    from app.core.migrations import ensure_migrations

    ensure_migrations(engine, auto_migrate=True)

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Case Ledger API",
    description="External reconciliation and case ledger API",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "X-External-Api-Key",
        "X-Internal-Secret",
        "X-Actor-User-Id",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Stamp every request with an id visible to logs and the audit trail."""
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    token = start_request_audit_context(
        request_id=request_id[:64],
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    try:
        response = await call_next(request)
    finally:
        reset_request_audit_context(token)
    response.headers["X-Request-ID"] = request_id[:64]
    return response


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    """Typed domain errors -> HTTP status with a machine-readable code."""
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message, extra=build_log_context())
    else:
        logger.info("%s: %s", exc.code, exc.message, extra=build_log_context())
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============================================================================
# Routers
# ============================================================================

from app.routers import admin, audit, external, portal

# External system of record (X-External-Api-Key)
app.include_router(external.router)

# Internal portal surface (X-Internal-Secret + X-Actor-User-Id)
app.include_router(admin.router)
app.include_router(portal.router)
app.include_router(audit.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
