from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session, aliased, sessionmaker

from caraml_playground.core.config import Settings
from caraml_playground.db.models import TERMINAL_STATUSES, Job, JobStatus
from caraml_playground.jobs.types import (
    UNKNOWN_STATUS,
    ArtifactPaths,
    ClaimedJob,
    JobSnapshot,
    JobStatusSnapshot,
)


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
    JobStatus.SUCCEEDED: set(),
    JobStatus.FAILED: set(),
}

UPDATABLE_FIELDS = frozenset(
    {"status", "started_at", "completed_at", "error_message", "artifact_paths", "updated_at"}
)

STALE_JOB_ERROR = "stale running job recovered by control plane"


class JobStore:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _enforce_transition(self, from_status: JobStatus, to_status: JobStatus) -> None:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    def create_job(self, source_code: str) -> JobSnapshot:
        now = self._now()
        with self._session_factory() as session:
            job = Job(
                id=str(uuid4()),
                source_code=source_code,
                status=JobStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def claim_job(self) -> ClaimedJob | None:
        """Flip the oldest pending job to running and hand it to this caller only.

        The candidate select carries ``FOR UPDATE SKIP LOCKED`` where the dialect
        supports it, so concurrent claimers pass over each other's rows instead of
        blocking. The outer ``status = 'pending'`` guard keeps the update a no-op
        for a caller that lost the race on dialects without row locks.
        """
        with self._session_factory() as session:
            now = self._now()
            candidate = aliased(Job)
            oldest_pending = (
                select(candidate.id)
                .where(candidate.status == JobStatus.PENDING)
                .order_by(candidate.created_at.asc(), candidate.id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            claimed_id = session.execute(
                update(Job)
                .where(Job.id.in_(oldest_pending.scalar_subquery()), Job.status == JobStatus.PENDING)
                .values(status=JobStatus.RUNNING, started_at=now, updated_at=now)
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None
            session.commit()

            claimed = session.get(Job, claimed_id)
            if claimed is None:
                raise JobNotFoundError(f"Claimed job disappeared before snapshot fetch: {claimed_id}")
            return ClaimedJob(id=claimed.id, source_code=claimed.source_code, status=claimed.status)

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._to_snapshot(job)

    def get_job_status(self, job_id: str) -> JobStatusSnapshot:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                return JobStatusSnapshot(
                    id=job_id,
                    status=UNKNOWN_STATUS,
                    error_message=None,
                    started_at=None,
                    completed_at=None,
                )
            return JobStatusSnapshot(
                id=job.id,
                status=job.status.value,
                error_message=job.error_message,
                started_at=self._coerce_utc(job.started_at),
                completed_at=self._coerce_utc(job.completed_at),
            )

    def get_job_artifacts(self, job_id: str) -> ArtifactPaths:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._artifact_paths(job)

    def update_job(self, job_id: str, **changes: Any) -> JobSnapshot:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported job fields: {sorted(unknown)}")

        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")

            if job.status in TERMINAL_STATUSES and set(changes) - {"updated_at"}:
                raise InvalidJobStateError(f"Job {job_id} is already {job.status.value}")

            target_status = job.status
            if "status" in changes:
                target_status = JobStatus(changes["status"])
                if target_status != job.status:
                    self._enforce_transition(job.status, target_status)

            if "error_message" in changes and target_status != JobStatus.FAILED:
                raise InvalidJobStateError("error_message can only be set on failed jobs")
            if "artifact_paths" in changes and target_status != JobStatus.SUCCEEDED:
                raise InvalidJobStateError("artifact_paths can only be set on succeeded jobs")

            now = self._now()
            if "started_at" in changes:
                if job.started_at is not None:
                    raise InvalidJobStateError(f"Job {job_id} already has started_at")
                job.started_at = changes["started_at"]
            if "completed_at" in changes:
                if job.completed_at is not None:
                    raise InvalidJobStateError(f"Job {job_id} already has completed_at")
                job.completed_at = changes["completed_at"]

            job.status = target_status
            if target_status == JobStatus.RUNNING and job.started_at is None:
                job.started_at = now
            if target_status in TERMINAL_STATUSES and job.completed_at is None:
                job.completed_at = now

            if "error_message" in changes:
                job.error_message = changes["error_message"]
            if "artifact_paths" in changes:
                paths: ArtifactPaths = changes["artifact_paths"]
                job.artifact_js_path = paths.js
                job.artifact_wasm_path = paths.wasm
                job.artifact_ir_path = paths.ir

            job.updated_at = changes.get("updated_at", now)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def fail_stale_jobs(self, older_than_seconds: int) -> int:
        if older_than_seconds <= 0:
            raise ValueError("older_than_seconds must be greater than zero")

        now = self._now()
        cutoff = now - timedelta(seconds=older_than_seconds)
        with self._session_factory() as session:
            stale_jobs = list(
                session.scalars(
                    select(Job).where(
                        Job.status == JobStatus.RUNNING,
                        Job.started_at.is_not(None),
                        Job.started_at <= cutoff,
                    )
                ).all()
            )
            for job in stale_jobs:
                self._enforce_transition(job.status, JobStatus.FAILED)
                job.status = JobStatus.FAILED
                job.error_message = STALE_JOB_ERROR
                job.completed_at = now
                job.updated_at = now
            if stale_jobs:
                session.commit()
            return len(stale_jobs)

    def _artifact_paths(self, job: Job) -> ArtifactPaths:
        return ArtifactPaths(js=job.artifact_js_path, wasm=job.artifact_wasm_path, ir=job.artifact_ir_path)

    def _to_snapshot(self, job: Job) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            status=job.status,
            source_code=job.source_code,
            error_message=job.error_message,
            artifacts=self._artifact_paths(job),
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


def status_snapshot_to_dict(snapshot: JobStatusSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "status": snapshot.status,
        "error_message": snapshot.error_message,
        "started_at": snapshot.started_at,
        "completed_at": snapshot.completed_at,
    }
