"""
Administrative FastAPI application.

Hosts the sync engine in its lifespan unless DISABLE_MDW_SYNC is set, in
which case the engine is only initialized so the admin routes keep working.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

import structlog

from mdw_sync.api.routes import sync
from mdw_sync.api.schemas.common import APIResponse, HealthCheckResponse, create_error_response
from mdw_sync.core.config import settings
from mdw_sync.core.database import close_database, get_async_session
from mdw_sync.core.exceptions import MdwSyncException, NotFoundError
from mdw_sync.core.logging import setup_logging
from mdw_sync.indexer.main import get_indexer_main


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting MDW sync API server")
    engine = get_indexer_main()
    sync_task = None

    try:
        await engine.initialize()
        if settings.disable_mdw_sync:
            logger.warning("MDW sync disabled, loops not started")
        else:
            sync_task = asyncio.create_task(engine.start())
            logger.info("Sync engine started in background")
    except Exception as e:
        logger.error("Failed to start sync engine", error=str(e))

    yield

    logger.info("Shutting down MDW sync API server")
    try:
        await engine.stop()
        if sync_task is not None and not sync_task.done():
            sync_task.cancel()
        await close_database()
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Administrative API of the middleware sync engine.",
        version=settings.app_version,
        lifespan=lifespan,
    )

    @app.exception_handler(MdwSyncException)
    async def sync_exception_handler(request: Request, exc: MdwSyncException):
        status_code = (
            status.HTTP_404_NOT_FOUND if isinstance(exc, NotFoundError)
            else status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=status_code,
            content=create_error_response(exc.message, exc.code, exc.details).model_dump(mode="json")
        )

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server and database health"
    )
    async def health_check():
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))

            engine = get_indexer_main()
            return HealthCheckResponse(
                status="healthy",
                version=settings.app_version,
                services={
                    "database": "healthy",
                    "api": "healthy",
                    "sync": "running" if engine.running else "stopped"
                }
            )
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "unhealthy",
                    "services": {
                        "database": "unhealthy",
                        "api": "healthy"
                    },
                    "error": str(e)
                }
            )

    @app.get("/", response_model=APIResponse, tags=["System"], summary="API Information")
    async def root():
        return APIResponse(message=f"{settings.app_name} v{settings.app_version}")

    app.include_router(
        sync.router,
        prefix=f"{settings.api_v1_prefix}/sync",
        tags=["Sync"]
    )

    logger.info("FastAPI application created successfully")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mdw_sync.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
