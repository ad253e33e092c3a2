"""
Polygon Gap-Fill - Main FastAPI Application
Entry point: runs the stream/backfill worker and exposes its status
"""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
import uvicorn

from config.settings import settings, load_fetcher_config
from config.database import init_db, close_db
from core.database.market_data_service import MarketDataService
from data.backfill.errors import ConfigurationError
from data.backfill.worker import PolygonBackfillWorker

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Live Polygon.io ingestion with automatic gap backfill",
    version="1.0.0",
    debug=settings.debug
)

worker: Optional[PolygonBackfillWorker] = None


def build_worker() -> PolygonBackfillWorker:
    """
    Build the worker from the configured fetcher config file.

    Raises:
        ConfigurationError: If the fetcher config is missing or invalid
    """
    if not settings.fetcher_config_path:
        raise ConfigurationError("FETCHER_CONFIG_PATH is not set")

    config = load_fetcher_config(settings.fetcher_config_path)
    if not config.api_key and settings.polygon_api_key:
        config = config.model_copy(update={"api_key": settings.polygon_api_key})

    return PolygonBackfillWorker(config, MarketDataService())


@app.on_event("startup")
async def startup_event():
    """Initialize database and start the worker"""
    global worker
    init_db()
    try:
        worker = build_worker()
    except ConfigurationError as e:
        logger.critical(f"Invalid startup configuration: {e}")
        raise
    await worker.start()
    logger.info(f"{settings.app_name} started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the worker, draining in-flight backfills"""
    if worker is not None:
        await worker.stop()
    close_db()


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring"""
    if worker is None:
        status, stream_ok, scheduler_ok = "starting", False, False
    else:
        stream_ok = worker.stream_running
        scheduler_ok = worker.scheduler.is_running
        status = "healthy" if stream_ok and scheduler_ok else "unhealthy"
    return JSONResponse(
        status_code=200 if status == "healthy" else 503,
        content={
            "status": status,
            "stream": stream_ok,
            "scheduler": scheduler_ok,
            "app": settings.app_name,
            "version": "1.0.0"
        }
    )


@app.get("/backfill/status")
async def backfill_status():
    """Scheduler, stream and fetcher statistics"""
    if worker is None:
        return JSONResponse(status_code=503, content={"status": "not running"})
    return worker.get_status()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
