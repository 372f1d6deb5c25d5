"""
FastAPI application entry point.
Initializes the FastAPI app, configures logging, maps domain errors to
HTTP responses and includes the product, store and sync routes.
"""

import pydantic
import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.errors import (
    InsufficientInventoryError,
    NotFoundError,
    StaleWriteError,
    StoreAdapterError,
    ValidationError,
)
from app.integrations.registry import integration_registry
from app.routers import products, stores, sync
from app.utils.logger import configure_logging

# Configure logging first
configure_logging()
logger = structlog.get_logger()

# Create FastAPI app
app = FastAPI(
    title="Multi-Store Product Sync",
    description="Create products once and push them to many connected Shopify stores",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(products.router)
app.include_router(sync.router)
app.include_router(stores.router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


@app.exception_handler(pydantic.ValidationError)
async def model_validation_error_handler(request: Request, exc: pydantic.ValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.errors(include_url=False, include_context=False, include_input=False)},
    )


@app.exception_handler(InsufficientInventoryError)
async def insufficient_inventory_handler(request: Request, exc: InsufficientInventoryError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "variant_id": exc.variant_id,
            "available": exc.available,
            "requested": exc.requested,
        },
    )


@app.exception_handler(StaleWriteError)
async def stale_write_handler(request: Request, exc: StaleWriteError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(StoreAdapterError)
async def store_adapter_error_handler(request: Request, exc: StoreAdapterError):
    logger.error("Store request failed", store_id=exc.store_id, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": str(exc), "store_id": exc.store_id},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path, method=request.method)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    logger.info("Multi-store sync service started")

    loaded_integrations = integration_registry.list_available()
    logger.info(
        "Integration adapters loaded",
        integrations=loaded_integrations,
        count=len(loaded_integrations),
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event."""
    logger.info("Multi-store sync service shutting down")


@app.get("/")
async def root():
    """Root endpoint - also serves as a simple health check."""
    return {
        "status": "healthy",
        "service": "Multi-Store Product Sync",
        "version": "1.0.0",
        "integrations": integration_registry.list_available(),
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "integrations": integration_registry.list_available(),
    }


@app.get("/healthz")
async def healthz():
    """Alternative health check endpoint (Kubernetes-style)."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
