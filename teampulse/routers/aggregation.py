"""
Aggregation operations router - recompute, backfill, sweep and watermarks.

Wired to:
- AggregationEngine for recompute, backfill and sweep passes
- StorageBackend (through the engine) for watermark reads
"""

from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from teampulse.dependencies import get_engine
from teampulse.engine import AggregationEngine
from teampulse.storage import StorageError
from teampulse.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class RecomputeRequest(BaseModel):
    """Entity-day to recompute."""

    user_id: str = Field(..., min_length=1)
    day: date


class BackfillRequest(BaseModel):
    """Explicit activity window to backfill."""

    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(..., alias="from")
    to: datetime


@router.post("/organizations/{organization_id}/recompute")
def recompute_entity_day(
    organization_id: str,
    request: RecomputeRequest,
    engine: AggregationEngine = Depends(get_engine),
):
    """Synchronously recompute one entity-day and return the resulting buckets."""
    try:
        result = engine.recompute(organization_id, request.user_id, request.day)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Recompute failed: {e}") from e

    return {
        "success": True,
        "data": {
            "organization_id": organization_id,
            "user_id": request.user_id,
            "bucket_date": result.bucket_date.isoformat(),
            "pulse": result.pulse.model_dump(mode="json") if result.pulse else None,
            "recognition": result.recognition.model_dump(mode="json") if result.recognition else None,
            "compliance": result.compliance.model_dump(mode="json") if result.compliance else None,
        },
    }


@router.post("/organizations/{organization_id}/backfill")
def backfill_organization(
    organization_id: str,
    request: BackfillRequest,
    engine: AggregationEngine = Depends(get_engine),
):
    """Recompute every entity-day with activity in the window and reset the watermark."""
    logger.info("backfill_requested", organization_id=organization_id)
    try:
        report = engine.backfill_historical_data(organization_id, request.from_, request.to)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Backfill failed: {e}") from e

    return {"success": True, "data": report.to_dict()}


@router.post("/sweep")
def run_sweep(engine: AggregationEngine = Depends(get_engine)):
    """Run one sweep pass now."""
    try:
        report = engine.run_sweep()
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Sweep failed: {e}") from e

    return {"success": True, "data": report.to_dict()}


@router.get("/organizations/{organization_id}/watermark")
def get_watermark(organization_id: str, engine: AggregationEngine = Depends(get_engine)):
    """Current sweep watermark for an organization."""
    try:
        watermark = engine.storage.read_watermark(organization_id)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    if watermark is None:
        raise HTTPException(status_code=404, detail=f"No watermark for organization {organization_id}")

    return {"success": True, "data": watermark.model_dump(mode="json")}


@router.get("/status")
def get_status(engine: AggregationEngine = Depends(get_engine)):
    """Sweep scheduler and recompute queue state."""
    scheduler = engine.scheduler
    queue = engine.recompute_queue
    return {
        "success": True,
        "data": {
            "sweep": {
                "running": scheduler.running,
                "sweep_count": scheduler.sweep_count,
                "error_count": scheduler.error_count,
                "last_report": scheduler.last_report.to_dict() if scheduler.last_report else None,
            },
            "recompute_queue": {
                "running": queue.running,
                "pending": queue.pending,
                "processed": queue.processed_count,
                "failed": queue.failed_count,
                "dropped": queue.dropped_count,
                "coalesced": queue.coalesced_count,
            },
            "cache_entries": len(engine.cache),
        },
    }
