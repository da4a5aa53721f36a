"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import accounts, admin, connections
from api.helpers import set_sync_engine
from config import settings
from database import get_session_factory, init_db
from logging_config import setup_logging
from services.sync_engine import build_sync_engine

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, wire the sync engine and run the background scheduler."""
    await init_db()
    engine = build_sync_engine(get_session_factory())
    set_sync_engine(engine)

    if settings.SCHEDULER_ENABLED:
        engine.scheduler.start()
    else:
        logger.info("Background scheduler disabled")

    try:
        yield
    finally:
        await engine.scheduler.stop()
        set_sync_engine(None)


app = FastAPI(
    title="Account Sync Engine",
    description="Balance refresh, transaction sync and duplicate resolution for linked accounts",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(accounts.router)
app.include_router(connections.router)
app.include_router(admin.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
