"""
Analytics router - pulse, shoutout and compliance metrics.

Wired to:
- AggregationEngine query methods (rollups or raw log chosen per query)
"""

from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from teampulse.dependencies import get_engine
from teampulse.engine import AggregationEngine, InvalidQueryError
from teampulse.storage import StorageError
from teampulse.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


def query_options(
    scope: Optional[str] = Query(None, description="organization, team or user"),
    entity_id: Optional[str] = Query(None, description="Team or user id for team/user scope"),
    period: Optional[str] = Query(None, description="day, week, month, quarter or year"),
    from_: Optional[str] = Query(None, alias="from", description="Window start (ISO date or datetime)"),
    to: Optional[str] = Query(None, description="Window end (ISO date or datetime)"),
    direction: Optional[str] = Query(None, description="Shoutout direction: all, received, given"),
    visibility: Optional[str] = Query(None, description="Shoutout visibility: all, public, private"),
) -> dict:
    """Collect the supplied query parameters; omitted ones take their defaults."""
    raw = {
        "scope": scope,
        "entity_id": entity_id,
        "period": period,
        "from": from_,
        "to": to,
        "direction": direction,
        "visibility": visibility,
    }
    return {key: value for key, value in raw.items() if value is not None}


def _run_query(
    method: str,
    fn: Callable[[str, dict], list],
    organization_id: str,
    options: dict,
) -> dict:
    try:
        results = fn(organization_id, options)
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StorageError as e:
        logger.error(
            "analytics_query_failed",
            organization_id=organization_id,
            method=method,
            error=str(e),
        )
        raise HTTPException(status_code=503, detail="Analytics temporarily unavailable") from e

    return {
        "success": True,
        "data": [row.model_dump(mode="json") for row in results],
    }


@router.get("/{organization_id}/analytics/pulse")
def get_pulse_metrics(
    organization_id: str,
    options: dict = Depends(query_options),
    engine: AggregationEngine = Depends(get_engine),
):
    """Average mood and check-in volume per period."""
    return _run_query("pulse", engine.get_pulse_metrics, organization_id, options)


@router.get("/{organization_id}/analytics/shoutouts")
def get_shoutout_metrics(
    organization_id: str,
    options: dict = Depends(query_options),
    engine: AggregationEngine = Depends(get_engine),
):
    """Shoutout counts per period, filtered by direction and visibility."""
    return _run_query("shoutouts", engine.get_shoutout_metrics, organization_id, options)


@router.get("/{organization_id}/analytics/compliance/checkins")
def get_checkin_compliance(
    organization_id: str,
    options: dict = Depends(query_options),
    engine: AggregationEngine = Depends(get_engine),
):
    """Vacation-aware check-in submission compliance."""
    return _run_query(
        "checkin_compliance", engine.get_checkin_compliance_metrics, organization_id, options
    )


@router.get("/{organization_id}/analytics/compliance/reviews")
def get_review_compliance(
    organization_id: str,
    options: dict = Depends(query_options),
    engine: AggregationEngine = Depends(get_engine),
):
    """Vacation-aware review compliance."""
    return _run_query(
        "review_compliance", engine.get_review_compliance_metrics, organization_id, options
    )
