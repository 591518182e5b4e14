"""Main FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from devenv_api.core.config import get_settings
from devenv_api.core.telemetry import setup_telemetry
from devenv_api.routes import environments_router, health_router
from devenv_api.services.expiry import get_expiry_controller
from devenv_api.services.vm_worker import WorkerController

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager for startup and shutdown events."""
    settings = get_settings()
    expiry_controller = get_expiry_controller()
    worker_controller = WorkerController(settings) if settings.embedded_worker_enabled else None

    # Startup
    logger.info(f"Starting {settings.app_name} in {settings.environment} mode")

    # Ensure data directories exist
    settings.ensure_data_dirs()
    logger.info(f"Data directory: {settings.data_dir}")

    # Start background controllers
    await expiry_controller.start()
    if worker_controller is not None:
        await worker_controller.start()

    yield

    # Shutdown
    logger.info("Shutting down...")

    # Stop background controllers
    if worker_controller is not None:
        await worker_controller.stop()
    await expiry_controller.stop()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="On-demand development environments: provision, control and destroy VMs",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Setup OpenTelemetry
    setup_telemetry(app, settings)

    # Include routers
    app.include_router(health_router)
    app.include_router(environments_router)

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "devenv_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
