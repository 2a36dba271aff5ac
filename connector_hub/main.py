"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from connector_hub.core.config import settings
from connector_hub.core.middleware import setup_middleware
from connector_hub.core.exceptions import (
    ConnectorHubError, ResourceNotFoundError, SyncInProgressError, Unauthorized,
    UnsupportedProvider, ValidationError,
)

from connector_hub.api.connectors import router as connectors_router
from connector_hub.api.webhooks import router as webhooks_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("connector_hub")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting Connector Hub API")
    if not settings.CONNECTOR_ENCRYPTION_KEY:
        logger.warning("CONNECTOR_ENCRYPTION_KEY is not set; connector credentials cannot be stored")

    from connector_hub.services.cache_service import cache_service
    if cache_service.health_check():
        logger.info("Redis connected")
    else:
        logger.warning("Redis not available; sync events will not be published")

    yield

    logger.info("Shutting down Connector Hub API")


app = FastAPI(
    title="Connector Hub API",
    description="Multi-tenant third-party connector integration engine",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Middleware
setup_middleware(app)


# Exception handlers, most specific first
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": exc.message, "errors": [e.to_dict() for e in exc.errors]},
    )


@app.exception_handler(ResourceNotFoundError)
async def not_found_exception_handler(request: Request, exc: ResourceNotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(Unauthorized)
async def unauthorized_exception_handler(request: Request, exc: Unauthorized):
    return JSONResponse(status_code=401, content={"detail": exc.message})


@app.exception_handler(SyncInProgressError)
async def conflict_exception_handler(request: Request, exc: SyncInProgressError):
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(UnsupportedProvider)
async def unsupported_exception_handler(request: Request, exc: UnsupportedProvider):
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(ConnectorHubError)
async def connector_hub_exception_handler(request: Request, exc: ConnectorHubError):
    return JSONResponse(status_code=400, content={"detail": exc.message})


# Register routers
app.include_router(connectors_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/api/health")
async def health():
    """Quick health check endpoint."""
    from connector_hub.services.cache_service import cache_service
    return {"status": "ok", "redis": cache_service.health_check()}
