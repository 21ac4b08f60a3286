"""AgriMarket API - FastAPI application."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from agrimarket.errors import (
    AuthorizationError,
    ConflictError,
    DependencyError,
    MarketplaceError,
    NotFoundError,
    ValidationError,
)

from .config import get_settings
from .database import Marketplace
from .logging_config import get_logger
from .rate_limit import limiter
from .routes import jobs_router, maintenance_router, offers_router, service_config_router

logger = get_logger("main")

API_PREFIX = "/api/v1"

# Most specific first: StateConflictError and DuplicateOfferError are ConflictErrors
_ERROR_STATUS = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (DependencyError, 500),
)


def status_for_error(exc: MarketplaceError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info(
        f"Starting AgriMarket API (debug={settings.debug}, storage={settings.storage_backend})"
    )
    yield
    logger.info("Shutting down AgriMarket API")


app = FastAPI(
    title="AgriMarket API",
    description="Marketplace for agricultural drone services",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    """Map marketplace errors onto HTTP status codes."""
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} | {exc.code}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} | {status_code} {exc.code}: {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs_router, prefix=API_PREFIX)
app.include_router(offers_router, prefix=API_PREFIX)
app.include_router(service_config_router, prefix=API_PREFIX)
app.include_router(maintenance_router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "agrimarket-api",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
async def health(service: Marketplace):
    """Detailed health check with an actual storage round-trip."""
    db_status = "disconnected"
    try:
        await asyncio.to_thread(service.storage.list_jobs, None, None, None, 1)
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if db_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "database": db_status,
    }
