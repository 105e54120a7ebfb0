"""
ERP Sync Service
Main Application Entry Point
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import config
from .controllers.sync_controller import require_admin, router as sync_router
from .exceptions import UnknownStream
from .models.streams import STREAMS
from .services.database_service import database_service
from .services.erp_client import erp_client
from .services.scheduler_service import scheduler_service
from .utils.constants import APP_NAME, APP_VERSION
from .utils.logger import setup_logger, logger


# Setup logging
setup_logger(
    level=config.logging.level,
    log_file=config.logging.file,
    max_size=config.logging.max_size,
    backup_count=config.logging.backup_count,
    console=config.logging.console,
    colorize=config.logging.colorize
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info(f"{APP_NAME} starting...")
    await database_service.connect()
    await database_service.create_tables(STREAMS.values())
    if config.scheduler.enabled:
        scheduler_service.start()
    logger.info(f"API running on http://{config.api.host}:{config.api.port}")
    yield
    scheduler_service.stop()
    await erp_client.aclose()
    await database_service.disconnect()
    logger.info(f"{APP_NAME} shutting down...")


# Create FastAPI application
app = FastAPI(
    title=APP_NAME,
    description="Incremental ERP to SQLite synchronization",
    version=APP_VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sync_router, prefix="/api/sync", tags=["Sync"])


@app.get("/")
async def root():
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "status": "running",
        "streams": list(STREAMS),
        "docs": "/docs"
    }


# ============== Schedule API ==============

class ScheduleUpdate(BaseModel):
    stream: str
    crontab: Optional[str] = None


@app.get("/api/schedule", dependencies=[Depends(require_admin)])
async def get_schedule():
    """Get current schedule configuration"""
    return scheduler_service.get_status()


@app.post("/api/schedule", dependencies=[Depends(require_admin)])
async def update_schedule(update: ScheduleUpdate):
    """Set or clear the cron schedule of one stream"""
    try:
        return scheduler_service.update_schedule(update.stream, update.crontab)
    except UnknownStream as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid crontab: {e}")


@app.post("/api/schedule/{stream}/run", dependencies=[Depends(require_admin)])
async def run_scheduled_sync(stream: str):
    """Trigger a stream's scheduled sync immediately"""
    try:
        return scheduler_service.run_now(stream)
    except UnknownStream as e:
        raise HTTPException(status_code=404, detail=str(e))
