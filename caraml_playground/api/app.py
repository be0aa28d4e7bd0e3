from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from caraml_playground.api.routes.health import router as health_router
from caraml_playground.api.routes.jobs import router as jobs_router
from caraml_playground.core.config import get_settings
from caraml_playground.core.logging import configure_logging
from caraml_playground.db.init_db import initialize_database
from caraml_playground.db.session import get_session_factory
from caraml_playground.jobs.service import JobStore
from caraml_playground.worker.pool import WorkerPool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    pool: WorkerPool | None = None
    if settings.worker_pool_enabled:
        job_store = JobStore(settings=settings, session_factory=get_session_factory())
        pool = WorkerPool.from_settings(settings, job_store)
        pool.start()
    app.state.worker_pool = pool
    try:
        yield
    finally:
        if pool is not None:
            pool.stop()
        app.state.worker_pool = None


async def _store_unavailable(_request: Request, exc: Exception) -> JSONResponse:
    logger.error("Job store error: %s", exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Job store unavailable"})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_exception_handler(SQLAlchemyError, _store_unavailable)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    return app
