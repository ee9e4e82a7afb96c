"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from catalogsync.db.engine import get_engine
from catalogsync.api.routes import imports, integrations
from catalogsync.scheduler.jobs import build_scheduler


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    engine = get_engine()
    scheduler = build_scheduler(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        scheduler.start()
        yield
        scheduler.shutdown(wait=False)

    app = FastAPI(
        title="Catalog Sync API",
        description="Provider catalog import and reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.scheduler = scheduler

    app.include_router(imports.router, prefix="/imports", tags=["imports"])
    app.include_router(integrations.router, prefix="/integrations", tags=["integrations"])

    return app


# Module-level app instance for uvicorn
app = create_app()
