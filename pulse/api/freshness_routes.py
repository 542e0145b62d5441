"""Pulse — Freshness API Routes."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from pulse.engine.orchestrator import FreshnessService
from pulse.models.engine_models import FreshnessRunResult
from pulse.core.logging import get_logger

logger = get_logger("api.freshness")

router = APIRouter(tags=["Freshness"])


# ── Request Models ──


class FreshnessRequest(BaseModel):
    """Request body for POST /clients/{client_id}/freshness."""

    force: bool = False
    """Fetch every period even if the stored granularity is already correct."""

    model_config = {"json_schema_extra": {"examples": [{"force": False}]}}


# ── Endpoints ──


@router.post("/clients/{client_id}/freshness", response_model=FreshnessRunResult)
async def run_freshness(client_id: str, request: Request, body: FreshnessRequest | None = None):
    """Bring the client's rolling 15-month window up to date.

    Recent months are kept at daily granularity, older months are rolled up
    to monthly.
    """
    service: FreshnessService = request.app.state.freshness_service
    force = body.force if body else False
    try:
        return await service.run(client_id, force=force)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
