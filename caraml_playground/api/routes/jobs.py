from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from caraml_playground.api.schemas.jobs import (
    CreateJobRequest,
    CreateJobResponse,
    JobStatusResponse,
    RecoverStaleJobsResponse,
)
from caraml_playground.core.config import get_settings
from caraml_playground.core.path_safety import PathSafetyError
from caraml_playground.db.models import ArtifactKind
from caraml_playground.db.session import get_session_factory
from caraml_playground.jobs.service import JobNotFoundError, JobStore, status_snapshot_to_dict
from caraml_playground.storage.artifacts import ArtifactStore, LocalArtifactStore

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_store() -> JobStore:
    return JobStore(settings=get_settings(), session_factory=get_session_factory())


def get_artifact_store() -> ArtifactStore:
    return LocalArtifactStore(get_settings().artifacts_root)


@router.post("", response_model=CreateJobResponse, status_code=status.HTTP_201_CREATED)
def create_job(request: CreateJobRequest, store: JobStore = Depends(get_job_store)) -> CreateJobResponse:
    limit = get_settings().max_source_chars
    if len(request.source_code) > limit:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"sourceCode exceeds {limit} characters",
        )
    job = store.create_job(request.source_code)
    return CreateJobResponse(id=job.id, status=job.status.value)


@router.post("/recover-stale", response_model=RecoverStaleJobsResponse)
def recover_stale_jobs(
    older_than_seconds: int = Query(ge=1),
    store: JobStore = Depends(get_job_store),
) -> RecoverStaleJobsResponse:
    return RecoverStaleJobsResponse(recovered=store.fail_stale_jobs(older_than_seconds))


@router.get("/{job_id}", response_model=JobStatusResponse)
def get_job_status(job_id: str, store: JobStore = Depends(get_job_store)) -> JobStatusResponse:
    snapshot = store.get_job_status(job_id)
    return JobStatusResponse.model_validate(status_snapshot_to_dict(snapshot))


@router.get("/{job_id}/artifacts/{kind}")
def get_job_artifact(
    job_id: str,
    kind: ArtifactKind,
    store: JobStore = Depends(get_job_store),
    artifacts: ArtifactStore = Depends(get_artifact_store),
) -> StreamingResponse:
    try:
        paths = store.get_job_artifacts(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    artifact_name = paths.for_kind(kind)
    if artifact_name is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No {kind.value} artifact for job {job_id}")

    try:
        blob = artifacts.get(artifact_name)
    except PathSafetyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if blob is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Artifact blob missing")

    return StreamingResponse(
        blob.iter_chunks(),
        media_type=blob.content_type,
        headers={"Content-Length": str(blob.size)},
    )
