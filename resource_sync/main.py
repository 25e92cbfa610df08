"""Main FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from resource_sync.api import api_router, webhooks_router
from resource_sync.api.dependencies import limiter
from resource_sync.auth.credentials import StoredCredentialProvider
from resource_sync.config import get_encryption_key, get_settings
from resource_sync.database import Database
from resource_sync.encryption import CredentialCipher
from resource_sync.jobs.scheduler import setup_scheduler, shutdown_scheduler
from resource_sync.providers import get_provider_factories
from resource_sync.sync.engine import SyncEngine
from resource_sync.utils.tasks import wait_for_background_tasks

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Starting Resource Sync Engine...")
    logger.info(f"Public URL: {settings.public_url}")
    logger.info(f"Database: {settings.database_path}")

    db = Database(settings.database_path)
    await db.connect()
    logger.info("Database initialized")

    credentials = StoredCredentialProvider(db, CredentialCipher(get_encryption_key()))
    engine = SyncEngine(db, settings, get_provider_factories(settings), credentials)
    app.state.engine = engine
    app.state.credentials = credentials
    logger.info(f"Sync engine ready for families: {', '.join(engine.families)}")

    # Runs interrupted by the previous process
    recovered = await engine.recover_stale()
    if recovered:
        logger.warning(f"Recovered {recovered} interrupted sync(s) on startup")

    scheduler = setup_scheduler(engine)

    yield

    # Shutdown
    logger.info("Shutting down...")
    shutdown_scheduler(scheduler)
    await wait_for_background_tasks()
    await db.close()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(
        title="Resource Sync Engine",
        description="Keeps local copies of mailboxes and calendars consistent with their providers",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add rate limiter
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @application.get("/health")
    async def health_check(request: Request):
        """Health check endpoint for monitoring."""
        engine = getattr(request.app.state, "engine", None)
        try:
            if engine is None:
                raise RuntimeError("Engine not initialized")
            await engine.db.ping()
            return {"status": "healthy", "database": "connected", "families": engine.families}
        except Exception as e:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "error": str(e)},
            )

    application.include_router(api_router)
    application.include_router(webhooks_router, prefix=settings.webhook_path_prefix)

    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    log_level = settings.log_level.lower()

    uvicorn.run(
        "resource_sync.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=log_level,
        reload=False,
    )
