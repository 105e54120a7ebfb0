"""
Sync Controller
===============
Administrative trigger surface for the sync jobs.

ENDPOINTS:
---------
POST /api/sync/{stream}/incremental  - Incremental sync (default, ids, force_all)
POST /api/sync/{stream}/snapshot     - Manifest-driven full snapshot
GET  /api/sync/{stream}/status       - Current status of a stream
POST /api/sync/{stream}/cancel       - Cancel a running sync (between batches)
GET  /api/sync/history               - Sync history
GET  /api/sync/cursors               - Stored watermarks

streams: invoices, fulfillments, sales_orders

AUTH:
----
Every endpoint requires the x-admin-secret header to match the configured
ERP_SYNC_ADMIN_SECRET; otherwise 401.

USAGE:
-----
1. Default incremental run, waiting for the result:
   POST /api/sync/invoices/incremental
2. Explicit ids, dry run:
   POST /api/sync/invoices/incremental?ids=101,102&dry_run=true
3. Forced rescan since a date, in the background:
   POST /api/sync/fulfillments/incremental?force_all=true&since=2024-01-01&background=true

ERRORS:
------
404 unknown stream or manifest not found, 409 stream already running,
422 invalid manifest or parameters.
"""

import hmac
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from pydantic import ValidationError

from ..config import secrets
from ..exceptions import InvalidManifest, ManifestNotFound, SyncError, SyncInProgress, UnknownStream
from ..models.sync import IncrementalRequest, SnapshotRequest
from ..services.cursor_store import cursor_store
from ..services.sync_service import SyncService, get_sync_history, get_sync_service
from ..utils.constants import SyncStatus
from ..utils.helpers import parse_id_list
from ..utils.logger import logger


def require_admin(x_admin_secret: Optional[str] = Header(None)) -> None:
    """Reject requests without the admin secret"""
    expected = secrets.admin_secret
    if not expected or not x_admin_secret or not hmac.compare_digest(x_admin_secret, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def resolve_service(stream: str) -> SyncService:
    try:
        return get_sync_service(stream)
    except UnknownStream as e:
        raise HTTPException(status_code=404, detail=str(e))


router = APIRouter(dependencies=[Depends(require_admin)])


def _ensure_idle(service: SyncService) -> None:
    if service.status == SyncStatus.RUNNING:
        raise HTTPException(status_code=409, detail=f"Sync already running for {service.stream}")


async def _run_detached(job, request) -> None:
    """Background runner; failures end up in the log and sync history"""
    try:
        await job(request)
    except SyncError as e:
        logger.error(f"Background sync failed: {e}")


@router.post("/{stream}/incremental")
async def trigger_incremental_sync(
    background_tasks: BackgroundTasks,
    service: SyncService = Depends(resolve_service),
    dry_run: bool = False,
    ids: Optional[str] = None,
    force_all: bool = False,
    since: Optional[str] = None,
    scope: str = Query("profiles", pattern="^(profiles|all)$"),
    batch_size: Optional[int] = None,
    detail_concurrency: Optional[int] = None,
    background: bool = False,
):
    """Trigger incremental synchronization of one stream"""
    try:
        request = IncrementalRequest(
            dry_run=dry_run,
            ids=parse_id_list(ids),
            force_all=force_all,
            since=since,
            scope=scope,
            batch_size=batch_size,
            detail_concurrency=detail_concurrency,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    _ensure_idle(service)
    logger.info(f"Incremental sync requested: {service.stream} mode={request.mode} dry_run={dry_run}")

    if background:
        background_tasks.add_task(_run_detached, service.run_incremental, request)
        return {"status": "started", "stream": service.stream, "mode": request.mode}

    try:
        result = await service.run_incremental(request)
    except SyncInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.model_dump()


@router.post("/{stream}/snapshot")
async def trigger_snapshot_sync(
    background_tasks: BackgroundTasks,
    service: SyncService = Depends(resolve_service),
    dry_run: bool = False,
    background: bool = False,
):
    """Trigger manifest-driven snapshot synchronization of one stream"""
    request = SnapshotRequest(dry_run=dry_run)
    _ensure_idle(service)
    logger.info(f"Snapshot sync requested: {service.stream} dry_run={dry_run}")

    if background:
        background_tasks.add_task(_run_detached, service.run_snapshot, request)
        return {"status": "started", "stream": service.stream, "mode": "snapshot"}

    try:
        result = await service.run_snapshot(request)
    except ManifestNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidManifest as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SyncInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.model_dump()


@router.get("/{stream}/status")
async def get_sync_status(service: SyncService = Depends(resolve_service)):
    """Get current sync status"""
    return service.get_status()


@router.post("/{stream}/cancel")
async def cancel_sync(service: SyncService = Depends(resolve_service)):
    """Cancel running sync"""
    if service.cancel():
        return {"status": "cancelling", "message": "Sync will stop after the current batch"}
    return {"status": "idle", "message": "No sync in progress"}


@router.get("/history")
async def sync_history(limit: int = Query(50, ge=1, le=500), stream: Optional[str] = None):
    """Get sync history"""
    history = await get_sync_history(limit=limit, stream=stream)
    return {"history": history, "count": len(history)}


@router.get("/cursors")
async def sync_cursors():
    """Stored watermarks per stream key"""
    cursors = await cursor_store.list_all()
    return {"cursors": [cursor.as_dict() for cursor in cursors]}
