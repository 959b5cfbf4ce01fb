"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fleet import __version__
from fleet.api import jobs, workers
from fleet.config import settings
from fleet.coordinator import Coordinator
from fleet.errors import FleetError
from fleet.utils.logging import AccessLogMiddleware, get_logger, setup_logging

# Setup logging first
setup_logging()
logger = get_logger(__name__)


def create_app(coordinator: Coordinator | None = None, run_loop: bool = True) -> FastAPI:
    """
    Build the coordinator API.

    Args:
        coordinator: Pre-built coordinator; a fresh one from settings otherwise
        run_loop: Whether the lifespan starts the background scheduling loop
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown events."""
        logger.info("Starting fleet coordinator", version=__version__)

        instance = coordinator or Coordinator(settings)
        app.state.coordinator = instance
        await instance.start(run_loop=run_loop)

        yield

        logger.info("Shutting down...")
        await instance.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Fleet Coordinator API",
        description="Job scheduling and worker fleet management for browser automation",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(AccessLogMiddleware)

    @app.exception_handler(FleetError)
    async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message, "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": details, "code": "validation_error"},
        )

    app.include_router(jobs.router)
    app.include_router(workers.router)

    @app.get("/health")
    async def health_check(request: Request) -> dict[str, object]:
        """Health check endpoint."""
        instance: Coordinator = request.app.state.coordinator
        return {
            "status": "healthy",
            "version": __version__,
            "workers": instance.registry.count,
            "jobs": instance.store.count,
            "queued": await instance.queue.size(),
        }

    return app


app = create_app()
