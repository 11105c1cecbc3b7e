from __future__ import annotations

from fastapi import APIRouter, Depends

from ...core.security import verify_service_token
from ...schemas.stats import TickResponse
from ...services.ingestion import IngestionScheduler
from ..deps import get_scheduler

router = APIRouter(prefix="/v1", tags=["admin"], dependencies=[Depends(verify_service_token)])


@router.post("/update_user", response_model=TickResponse)
async def trigger_update(scheduler: IngestionScheduler = Depends(get_scheduler)) -> TickResponse:
    return TickResponse.from_results(await scheduler.run_tick())
