"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from feedengine.api.routes import router
from feedengine.config import EngineSettings, load_settings
from feedengine.engine import FeedEngine


def create_app(engine: FeedEngine | None = None, settings: EngineSettings | None = None) -> FastAPI:
    """Build the API around one :class:`FeedEngine`, closed when the app shuts down."""

    engine = engine or FeedEngine(settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        engine.close()

    app = FastAPI(
        title="Feed Engine",
        description="Feed ingestion, validation and discovery API",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.include_router(router, prefix="/api")
    return app
