"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from jirasync import __version__
from jirasync.api import sync
from jirasync.config import configure_logging, settings
from jirasync.models.base import init_db
from jirasync.scheduler import scheduler
from jirasync.security import ApiTokenMiddleware

# Configure logging
configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting GitHub to Jira Sync Service")
    init_db()
    if settings.scheduler_enabled:
        scheduler.start()
    yield
    # Shutdown
    logger.info("Stopping GitHub to Jira Sync Service")
    if settings.scheduler_enabled:
        scheduler.stop()


app = FastAPI(
    title="GitHub to Jira Sync Service",
    description="Incrementally synchronize GitHub issues, milestones and iterations into Jira",
    version=__version__,
    lifespan=lifespan,
)

# Optional built-in auth (recommended if exposed beyond localhost/private networks)
if settings.api_token:
    app.add_middleware(ApiTokenMiddleware, token=settings.api_token, allow_paths={"/health"})

app.include_router(sync.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "GitHub to Jira Sync"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jirasync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
