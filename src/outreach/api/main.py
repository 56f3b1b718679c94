"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from outreach.config import get_settings
from outreach.db.engine import get_engine
from outreach.api.routes import connections, sync as sync_routes

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """
    Build and return the FastAPI app.

    With RECOVERY_IN_API set, the stuck-sync sweep runs on the API's event
    loop and resumes chains through the same continuation scheduler the
    /sync routes use.
    """
    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)

        scheduler = None
        if get_settings().recovery_in_api:
            from outreach.scheduler.jobs import build_scheduler

            runner = app.dependency_overrides.get(sync_routes.get_runner, sync_routes.get_runner)()
            scheduler = build_scheduler(engine, runner.continuations)
            scheduler.start()
            logger.info("Stuck-sync recovery running in the API process")
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)

    app = FastAPI(
        title="Outreach Sync API",
        description="Checkpointed, time-boxed sync of Smartlead, Reply.io and PhoneBurner",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(connections.router, prefix="/connections", tags=["connections"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
