from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from caraml_playground.api.schemas.health import HealthResponse, SlotStateResponse
from caraml_playground.core.config import get_settings
from caraml_playground.worker.pool import WorkerPool

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def get_health(request: Request) -> HealthResponse:
    settings = get_settings()
    pool: WorkerPool | None = getattr(request.app.state, "worker_pool", None)
    slots = [] if pool is None else pool.slots()
    return HealthResponse(
        status="ok",
        service=settings.app_name,
        environment=settings.environment,
        timestamp=datetime.now(tz=timezone.utc),
        worker_pool_running=pool is not None and pool.running,
        worker_slots=[
            SlotStateResponse(
                index=slot.index,
                busy=slot.busy,
                alive=slot.alive,
                pid=slot.pid,
                respawns=slot.respawns,
            )
            for slot in slots
        ],
    )
