"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from fieldsync.db.engine import get_engine
from fieldsync.api.routes import records, targets


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(get_engine())
        yield

    app = FastAPI(
        title="Field Sync API",
        description="Sync record intake, history and target administration",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(records.router, prefix="/records", tags=["records"])
    app.include_router(targets.router, prefix="/targets", tags=["targets"])

    return app


# Module-level app instance for uvicorn
app = create_app()
