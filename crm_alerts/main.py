"""CRM Alerts: Main FastAPI Application.

Notification back end of the CRM: goal risk monitoring, KPI alerts with
leveled escalation, and signed webhook delivery.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .core import (
    AlertAlreadyResolvedError,
    AlertNotFoundError,
    AuthenticationError,
    close_db,
    get_settings,
    init_db,
)
from .schemas import ErrorResponse, HealthResponse

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info(f"Starting {settings.app_name} {settings.app_version} ({settings.environment})")

    # Tables already exist in production (migrations)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")
    yield
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## CRM Alerts API

    Scheduled and on-demand functions behind the CRM notification center.

    ### Functions

    - **goal-risk-monitor**: flags goals trailing their time-elapsed pace
    - **check-alerts**: evaluates KPI alert definitions
    - **escalate-alerts**: escalates unresolved alerts level by level
    - **dispatch-webhook**: delivers a notification event to subscribed webhooks

    ### Authentication

    Every function accepts one of: the `X-Cron-Secret` header, the service
    role key as `Authorization: Bearer <key>`, or a user JWT.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    lifespan=lifespan,
)

# Functions are called server-to-server and from the admin UI on any origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-cron-secret"],
    max_age=86400,
)


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    return _error(status.HTTP_401_UNAUTHORIZED, str(exc) or "Unauthorized")


@app.exception_handler(AlertNotFoundError)
async def alert_not_found_handler(request: Request, exc: AlertNotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(AlertAlreadyResolvedError)
async def alert_already_resolved_handler(request: Request, exc: AlertAlreadyResolvedError):
    return _error(status.HTTP_409_CONFLICT, str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception on {request.url.path}: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc)[:200] or "Internal server error")


# Health check endpoint
@app.get("/health", tags=["health"], response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=settings.app_version)


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crm_alerts.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
