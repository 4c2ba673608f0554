"""
Sync administration endpoints - thin wrappers over the queue and bulk sync.

- POST /api/v1/sync/bulk                  - start a backfill (returns immediately)
- GET  /api/v1/sync/bulk/{sync_id}        - progress snapshot
- POST /api/v1/sync/bulk/{sync_id}/cancel - cooperative cancel
- GET  /api/v1/sync/queue/stats           - record counts per status
- POST /api/v1/sync/queue/drain           - drain now
- POST /api/v1/sync/queue/{id}/retry      - failed -> pending
"""
import logging
import uuid
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from motocrm.api.deps import get_services
from motocrm.schemas.api_responses import BulkSyncStartRequest, BulkSyncStartResponse, SyncRecordSummary
from motocrm.services.container import Services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


@router.post("/bulk", status_code=202, response_model=BulkSyncStartResponse)
async def start_bulk_sync(
    payload: Optional[BulkSyncStartRequest] = None,
    services: Services = Depends(get_services),
):
    handle = await services.bulk_sync.start(payload.sync_id if payload else None)
    return BulkSyncStartResponse(sync_id=handle.sync_id, status="running")


@router.get("/bulk/{sync_id}")
async def get_bulk_sync(sync_id: str, services: Services = Depends(get_services)):
    progress = await services.bulk_sync.get_progress(sync_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Sync not found")
    return progress.model_dump(mode="json")


@router.post("/bulk/{sync_id}/cancel")
async def cancel_bulk_sync(sync_id: str, services: Services = Depends(get_services)):
    progress = await services.bulk_sync.get_progress(sync_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Sync not found")
    cancelled = services.bulk_sync.cancel(sync_id)
    logger.info("Bulk sync cancel requested (accepted=%s)", cancelled, extra={"sync_id": sync_id})
    return {"sync_id": sync_id, "cancelled": cancelled}


@router.get("/queue/stats")
async def queue_stats(services: Services = Depends(get_services)):
    return await services.sync_queue.get_stats()


@router.post("/queue/drain")
async def drain_queue(services: Services = Depends(get_services)):
    """Drain now. Per-record failures are reported in the counts, never as an error."""
    stats = await services.sync_queue.get_stats()
    if stats["pending"] + stats["failed"] == 0:
        return {"processed": 0, "succeeded": 0, "failed": 0, "errors": [], "skipped": True}
    result = await services.sync_queue.drain_pending()
    return {**asdict(result), "skipped": False}


@router.post("/queue/{record_id}/retry", response_model=SyncRecordSummary)
async def retry_record(record_id: uuid.UUID, services: Services = Depends(get_services)):
    record = await services.sync_queue.retry(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Sync record not found")
    return SyncRecordSummary(
        id=str(record.id),
        kind=record.kind,
        status=record.status,
        attempts=record.attempts,
        last_error=record.last_error,
    )
