"""FastAPI server for the shop health monitor."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shopwatch.api.routes import router
from shopwatch.config import settings
from shopwatch.monitor.engine import create_engine
from shopwatch.monitor.scheduler import MonitorScheduler
from shopwatch.monitor.store import load_config, open_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize shared resources on startup."""
    store = open_store(settings)
    app.state.store = store

    engine = create_engine(store, settings)
    app.state.engine = engine

    scheduler = MonitorScheduler(
        engine,
        config=lambda: load_config(store, settings),
        watchdog_interval=settings.stall_watchdog_seconds,
    )
    app.state.scheduler = scheduler

    try:
        await scheduler.start()
    except Exception:
        logger.exception("Monitor scheduler failed to start")

    yield

    # Shutdown
    await scheduler.stop()
    store.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Shopwatch - Shop Health Monitor",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
