from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class SlotStateResponse(BaseModel):
    index: int
    busy: bool
    alive: bool
    pid: int | None
    respawns: int


class HealthResponse(BaseModel):
    status: str
    service: str
    environment: str
    timestamp: datetime
    worker_pool_running: bool
    worker_slots: list[SlotStateResponse]
