"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, stats, sync
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import dispose_engine
from core.exceptions import (
    SyncException,
    UnknownTenant,
    SessionNotFound,
    LockContention,
    InvalidStageTransition,
    ReconciliationNotAllowed,
)
from core.logging import setup_logging
from gallery_sync.scheduler import SyncScheduler
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Gallery Sync Backend API",
    description="Incremental sync of upstream gallery cases, procedures and doctors",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Created on startup when SCHEDULER_ENABLED
scheduler = None


# Include routers
app.include_router(health.router)
app.include_router(sync.router)
app.include_router(stats.router)


ERROR_STATUS_CODES = {
    UnknownTenant: 404,
    SessionNotFound: 404,
    LockContention: 409,
    InvalidStageTransition: 409,
    ReconciliationNotAllowed: 409,
}


@app.exception_handler(SyncException)
async def sync_exception_handler(request: Request, exc: SyncException):
    status_code = next(
        (code for exc_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, exc_type)),
        503 if exc.retryable else 502
    )
    request_id = getattr(request.state, "request_id", None)
    if status_code >= 500:
        logger.error(f"[{request_id}] {exc}", extra={"error_context": exc.to_dict()})
    else:
        logger.info(f"[{request_id}] {type(exc).__name__}: {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_class": type(exc).__name__,
            "retryable": exc.retryable,
            "request_id": request_id,
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    global scheduler
    logger.info("Starting Gallery Sync Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")
    logger.info(f"Configured tenants: {len(settings.SYNC_TENANTS)}")

    if settings.SCHEDULER_ENABLED:
        scheduler = SyncScheduler()
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Gallery Sync Backend API")
    if scheduler is not None:
        await scheduler.stop()
    await dispose_engine()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Gallery Sync Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "sync": "/sync",
            "stats": "/stats"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
