from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from caraml_playground.db.models import ArtifactKind, JobStatus

UNKNOWN_STATUS = "unknown"


@dataclass(frozen=True)
class ArtifactPaths:
    js: str | None = None
    wasm: str | None = None
    ir: str | None = None

    def for_kind(self, kind: ArtifactKind) -> str | None:
        return getattr(self, kind.value)


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    source_code: str
    status: JobStatus


@dataclass(slots=True)
class JobSnapshot:
    id: str
    status: JobStatus
    source_code: str
    error_message: str | None
    artifacts: ArtifactPaths
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(frozen=True)
class JobStatusSnapshot:
    id: str
    status: str
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def is_known(self) -> bool:
        return self.status != UNKNOWN_STATUS
