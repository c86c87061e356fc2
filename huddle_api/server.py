"""
FastAPI app for the huddle planning service.
Serves the huddle ingestion and read API plus a health check.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from logging_setup import get_logger, Component
from observability.event_store import event_store
from . import huddles_api
from .huddles_api import router as huddles_router

logger = get_logger(Component.API)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # let queued chunks finish before the process exits
    pipeline = huddles_api._pipeline
    if pipeline is not None and pipeline.serializer.active_keys():
        logger.info("Draining queued conversations", conversations=len(pipeline.serializer.active_keys()))
        await pipeline.serializer.drain()


app = FastAPI(title="Huddle Planning API", lifespan=lifespan)
app.include_router(huddles_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "component": "huddle_api", "events": event_store.get_stats()}
