"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import models  # noqa: F401  (registers tables on Base.metadata)
from api import connections
from config import settings
from database import Base, get_engine
from logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, fail syncs a previous process left running, and stop jobs on exit."""
    Base.metadata.create_all(bind=get_engine())

    service = connections.get_service()
    try:
        service.registry.recover_interrupted_syncs()
    except Exception:
        logger.warning("Interrupted sync recovery failed on startup", exc_info=True)

    yield

    service.shutdown()


app = FastAPI(
    title="Connection Manager",
    description="Lifecycle management for external financial-data connections",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(connections.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
