from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone

from caraml_playground.core.config import Settings
from caraml_playground.db.models import JobStatus
from caraml_playground.jobs.service import JobStore
from caraml_playground.jobs.types import ArtifactPaths, ClaimedJob
from caraml_playground.worker.pipeline import CompilationPipeline
from caraml_playground.worker.unit import ExecutionUnit, UnitOutcome

logger = logging.getLogger(__name__)


@dataclass
class WorkerSlot:
    index: int
    unit: ExecutionUnit
    busy: bool = False
    respawns: int = 0


@dataclass(frozen=True)
class SlotState:
    index: int
    busy: bool
    alive: bool
    pid: int | None
    respawns: int


class WorkerPool:
    """Binds a fixed set of execution units to the job backlog.

    A single coordinator thread scans idle slots every ``poll_interval_seconds``
    and hands each one to a dispatch thread, so a slot waiting on its job never
    delays the scan of another. Slot records are private to the pool; a lost
    unit is replaced in its slot as soon as the loss is observed.
    """

    def __init__(
        self,
        job_store: JobStore,
        pipeline: CompilationPipeline,
        *,
        size: int = 2,
        poll_interval_seconds: float = 1.0,
        job_timeout_seconds: float = 30.0,
        start_method: str = "spawn",
        log_level: str = "INFO",
        prepare_runtime: bool = False,
        stale_job_grace_seconds: int | None = None,
    ):
        if size <= 0:
            raise ValueError("size must be greater than zero")
        self._job_store = job_store
        self._pipeline = pipeline
        self._size = size
        self._poll_interval_seconds = poll_interval_seconds
        self._job_timeout_seconds = job_timeout_seconds
        self._start_method = start_method
        self._log_level = log_level
        self._prepare_runtime = prepare_runtime
        self._stale_job_grace_seconds = stale_job_grace_seconds

        self._slots: list[WorkerSlot] = []
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._coordinator: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        job_store: JobStore,
        pipeline: CompilationPipeline | None = None,
    ) -> "WorkerPool":
        return cls(
            job_store,
            pipeline or CompilationPipeline.from_settings(settings),
            size=settings.worker_pool_size,
            poll_interval_seconds=settings.worker_poll_interval_seconds,
            job_timeout_seconds=settings.job_timeout_seconds,
            start_method=settings.unit_start_method,
            log_level=settings.log_level,
            prepare_runtime=settings.prepare_runtime_on_start,
            stale_job_grace_seconds=settings.stale_job_grace_seconds,
        )

    @property
    def size(self) -> int:
        return self._size

    @property
    def running(self) -> bool:
        return self._coordinator is not None and self._coordinator.is_alive()

    def _make_unit(self, index: int) -> ExecutionUnit:
        unit = ExecutionUnit(
            self._pipeline,
            name=f"unit-{index}",
            start_method=self._start_method,
            log_level=self._log_level,
        )
        unit.start()
        return unit

    def _respawn(self, slot: WorkerSlot) -> None:
        slot.unit.terminate()
        slot.unit = self._make_unit(slot.index)
        slot.respawns += 1
        logger.warning("[pool] respawned unit in slot %d (respawns=%d)", slot.index, slot.respawns)

    def start(self) -> None:
        if self._coordinator is not None:
            raise RuntimeError("Worker pool already started")

        if self._prepare_runtime:
            self._pipeline.prepare_runtime()
        if self._stale_job_grace_seconds is not None:
            recovered = self._job_store.fail_stale_jobs(self._stale_job_grace_seconds)
            if recovered:
                logger.warning("[pool] marked %d stale running job(s) as failed", recovered)

        self._stopping.clear()
        self._slots = [WorkerSlot(index=index, unit=self._make_unit(index)) for index in range(self._size)]
        self._executor = ThreadPoolExecutor(max_workers=self._size, thread_name_prefix="caraml-slot")
        self._coordinator = threading.Thread(target=self._run_loop, name="caraml-pool", daemon=True)
        self._coordinator.start()
        logger.info("[pool] started %d unit(s)", self._size)

    def stop(self, timeout: float = 10.0) -> None:
        self._stopping.set()
        if self._coordinator is not None:
            self._coordinator.join(timeout=timeout)
            self._coordinator = None

        with self._lock:
            for slot in self._slots:
                if slot.busy:
                    slot.unit.kill()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        for slot in self._slots:
            slot.unit.stop()
        logger.info("[pool] stopped")

    def _run_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.scan_once()
            except Exception:
                logger.exception("[pool] scan failed")
            self._stopping.wait(self._poll_interval_seconds)

    def scan_once(self) -> int:
        if self._executor is None:
            raise RuntimeError("Worker pool is not started")

        dispatched = 0
        for slot in self._slots:
            with self._lock:
                if slot.busy or self._stopping.is_set():
                    continue
                if not slot.unit.is_alive():
                    logger.warning("[pool] unit in slot %d is not alive", slot.index)
                    self._respawn(slot)
                slot.busy = True
            self._executor.submit(self._claim_and_run, slot)
            dispatched += 1
        return dispatched

    def _claim_and_run(self, slot: WorkerSlot) -> None:
        try:
            if self._stopping.is_set():
                return
            job = self._job_store.claim_job()
            if job is None:
                return
            logger.debug("[pool] slot %d claimed job %s", slot.index, job.id)

            outcome = slot.unit.run(job, self._job_timeout_seconds)
            if outcome.unit_lost:
                logger.warning("[pool] slot %d lost its unit: %s", slot.index, outcome.kind.value)
                self._pipeline.discard_scratch(job.id)
                if not self._stopping.is_set():
                    with self._lock:
                        self._respawn(slot)
            self._record_outcome(job, outcome)
        except Exception:
            logger.exception("[pool] claim_and_run failed in slot %d", slot.index)
        finally:
            slot.busy = False

    def _record_outcome(self, job: ClaimedJob, outcome: UnitOutcome) -> None:
        result = outcome.result
        completed_at = datetime.now(tz=timezone.utc)
        if result.success:
            artifacts = result.artifacts or ArtifactPaths()
            self._job_store.update_job(
                job.id,
                status=JobStatus.SUCCEEDED,
                completed_at=completed_at,
                artifact_paths=artifacts,
            )
            logger.info("[pool] job %s succeeded (js=%s, wasm=%s)", job.id, artifacts.js, artifacts.wasm)
        else:
            error = result.error or "unknown error"
            self._job_store.update_job(
                job.id,
                status=JobStatus.FAILED,
                completed_at=completed_at,
                error_message=error,
            )
            logger.error("[pool] job %s failed: %s", job.id, error)

    def slots(self) -> list[SlotState]:
        with self._lock:
            return [
                SlotState(
                    index=slot.index,
                    busy=slot.busy,
                    alive=slot.unit.is_alive(),
                    pid=slot.unit.pid,
                    respawns=slot.respawns,
                )
                for slot in self._slots
            ]

    def available_slots(self) -> int:
        return sum(1 for state in self.slots() if state.alive)
