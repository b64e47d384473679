"""
HookRelay - webhook delivery retry engine

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

# Import observability modules
from hookrelay.config import settings
from hookrelay.logging_config import logger
from hookrelay.sentry_config import configure_sentry
from hookrelay.middleware.logging import LoggingMiddleware
from hookrelay.routes.metrics import router as metrics_router

# Import route modules
from hookrelay.routes.retries import router as retries_router
from hookrelay.exceptions import StoreUnavailable

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Share one HTTP connection pool across delivery attempts."""
    app.state.http_client = httpx.AsyncClient(timeout=settings.DELIVERY_TIMEOUT_SECONDS)
    try:
        yield
    finally:
        await app.state.http_client.aclose()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Durable retry queue for outbound webhook deliveries",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.error("store_unavailable", route=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include retry queue routes
app.include_router(retries_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Liveness check. Database reachability shows up as 503s on the retry routes."""
    return {"status": "healthy"}
