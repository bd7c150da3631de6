"""
FastAPI application entry point.

WHAT: Main application setup and wiring
WHY: Initialize all components and routes
HOW: Create FastAPI app, register middleware, routers, handlers
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .core.config import settings
from .core.database import init_db, close_db
from .utils.logger import setup_logging, get_logger
from .middleware.error_handler import register_exception_handlers
from .api.v1.router import api_router
from .services.negotiation_service import get_negotiation_service

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    WHAT: Startup and shutdown logic
    WHY: Schema and collaborators must be ready before the first negotiation write
    HOW: Async context manager; the service singleton is built here, not per request
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()
    service = get_negotiation_service()
    logger.info(
        f"Collaborators: payment={settings.PAYMENT_PROVIDER}, "
        f"directory={settings.DIRECTORY_PROVIDER}, catalog={settings.CATALOG_PROVIDER}"
    )
    logger.info(
        f"Governance fee {service.governance_fee} {settings.GOVERNANCE_FEE_CURRENCY} per party, "
        f"conflict retries={service.max_conflict_retries}"
    )
    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application")
    close_db()
    logger.info("Application shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register exception handlers
register_exception_handlers(app)

# Include API router
app.include_router(api_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "blindtrade.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
