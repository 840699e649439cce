"""Main FastAPI application for the plan generation gateway.

This is the lean API server - model inference runs in pooled worker
subprocesses that speak length-prefixed JSON over stdin/stdout.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from plangen.api.routers import plans, settings, workers
from plangen.config import GatewayConfig, load_gateway_config
from plangen.db import worker_logs
from plangen.db.settings import init_settings_table
from plangen.worker import get_orchestrator, shutdown_orchestrator, start_orchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def create_app(config: Optional[GatewayConfig] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Gateway configuration (default: loaded from settings at startup)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan events (startup and shutdown)."""
        try:
            # Startup
            logger.info("Starting up application...")

            logger.info("Initializing database...")
            init_settings_table()
            worker_logs.ensure_table()
            try:
                removed = worker_logs.cleanup_old_logs(days=30)
                if removed:
                    logger.info(f"Removed {removed} exchange logs older than 30 days")
            except Exception as e:
                logger.warning(f"Failed to clean up exchange logs: {e}")

            gateway_config = config or load_gateway_config()
            logger.info(
                f"Starting worker pool: size={gateway_config.pool_size}, "
                f"command={' '.join(gateway_config.worker_command)}"
            )
            await start_orchestrator(gateway_config)

            logger.info("Startup complete")

            yield  # Application runs here

        finally:
            # Shutdown
            logger.info("Shutting down application...")
            try:
                logger.info("Shutting down all workers...")
                await shutdown_orchestrator()
                logger.info("All workers shut down")
            except Exception as e:
                logger.warning(f"Error shutting down workers: {e}")
            logger.info("Shutdown complete")

    app = FastAPI(
        title="Plan Generation Gateway API",
        description="REST API serving workout and nutrition plans from pooled model workers",
        version="0.1.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(plans.router)
    app.include_router(workers.router)
    app.include_router(settings.router)

    @app.get("/api")
    async def root():
        """Root API endpoint with service information."""
        return {
            "name": "Plan Generation Gateway API",
            "version": "0.1.0",
            "status": "running",
            "endpoints": {
                "plans": "/api/plans",
                "workers": "/api/workers",
                "worker_logs": "/api/workers/logs",
                "settings": "/api/settings",
                "docs": "/api/docs",
                "health": "/api/health",
            },
        }

    @app.get("/api/health")
    async def health():
        """Health check endpoint with worker pool status."""
        try:
            status = get_orchestrator().status()
        except RuntimeError as e:
            return JSONResponse(status_code=503, content={"status": "unavailable", "message": str(e)})

        if status["fatal"] or status["closed"]:
            state, code = "unavailable", 503
        elif status["degraded"] or status["live"] < status["capacity"]:
            state, code = "degraded", 200
        else:
            state, code = "healthy", 200

        return JSONResponse(
            status_code=code,
            content={
                "status": state,
                "capacity": status["capacity"],
                "live": status["live"],
                "idle": status["idle"],
                "busy": status["busy"],
                "waiting": status["waiting"],
            },
        )

    return app


# Create FastAPI app with lifespan handler
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=12310)
