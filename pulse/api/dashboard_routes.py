"""Pulse — Dashboard & Cache API Routes."""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from pulse.cache.query_cache import QueryCache
from pulse.core.errors import QueryTimeoutError
from pulse.engine.dashboard import DashboardService
from pulse.engine.orchestrator import validate_client_id
from pulse.models.engine_models import DashboardPayload
from pulse.store.metric_store import ALL_SEGMENTS
from pulse.core.logging import get_logger

logger = get_logger("api.dashboard")

router = APIRouter(tags=["Dashboard"])


@router.get("/clients/{client_id}/dashboard", response_model=DashboardPayload)
async def get_dashboard(
    client_id: str,
    request: Request,
    time_period: str = Query("Last Month", description="Last Month | Last Quarter | Last Year | '<start> to <end>'"),
    periods: Optional[List[str]] = Query(None, description="Explicit month keys (YYYY-MM); overrides time_period"),
    business_size: str = Query(ALL_SEGMENTS),
    industry_vertical: str = Query(ALL_SEGMENTS),
):
    """Merged client, competitor and benchmark metrics for a time range."""
    service: DashboardService = request.app.state.dashboard_service
    try:
        validate_client_id(client_id)
        return await service.get_dashboard(
            client_id,
            time_period=time_period,
            periods=periods,
            business_size=business_size,
            industry_vertical=industry_vertical,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except QueryTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))


@router.delete("/cache")
async def clear_cache(
    request: Request,
    pattern: Optional[str] = Query(None, description="Substring of keys to delete; omit to flush"),
):
    """Invalidate cached dashboard payloads."""
    cache: QueryCache = request.app.state.cache
    deleted = cache.clear(pattern)
    return {"status": "success", "deleted": deleted}


@router.get("/cache/stats")
async def cache_stats(request: Request):
    """Current cache size and keys."""
    cache: QueryCache = request.app.state.cache
    return {"status": "success", **cache.stats()}
