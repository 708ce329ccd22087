"""FastAPI application entry point."""
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from consult_api.core.config import settings
from consult_api.core.errors import SessionBillingError
from consult_api.core.structured_logging import build_log_context
from consult_api.db.session import engine

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
        send_default_pii=False,  # Session ids only; never patient details
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from consult_api.core.rate_limit import limiter

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Consultation Session API",
    description="Session lifecycle and billing for text, voice and video consultations",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id", "X-Requested-With"],
    expose_headers=["X-Request-ID"],
)


@app.exception_handler(SessionBillingError)
async def session_billing_error_handler(request: Request, exc: SessionBillingError):
    logger.info(
        "Request rejected: %s",
        exc.error_code,
        extra=build_log_context(route=request.url.path, method=request.method),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "error_code": exc.error_code},
    )


# ============================================================================
# Degraded-mode job polling
# ============================================================================

from consult_api.services.degraded_poller import poller

_poll_tasks: set[asyncio.Task] = set()


@app.middleware("http")
async def degraded_poll_middleware(request: Request, call_next):
    """After serving a request, give overdue session jobs a chance to run."""
    response = await call_next(request)
    if poller.enabled and not request.url.path.startswith("/internal/"):
        task = asyncio.create_task(poller.maybe_poll())
        _poll_tasks.add(task)
        task.add_done_callback(_poll_tasks.discard)
    return response


# ============================================================================
# Routers
# ============================================================================

from consult_api.routers import appointments, call_sessions, internal, jobs, text_sessions

app.include_router(text_sessions.router, prefix="/text-sessions")
app.include_router(call_sessions.router, prefix="/call-sessions")
app.include_router(appointments.router, prefix="/appointments")
app.include_router(jobs.router, prefix="/jobs")

# Internal scheduled endpoints (cron jobs) - protected by X-Internal-Secret
app.include_router(internal.router)


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
