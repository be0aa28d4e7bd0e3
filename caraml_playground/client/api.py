"""
HTTP client for the compile service.

    client = PlaygroundClient("http://localhost:3000")
    queued = client.queue_compilation(source)
    update = client.fetch_run_status(queued.id)
    js_bytes = client.fetch_artifact(queued.id, "js")
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Literal

import requests
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:3000"
RUN_STATUSES = ("pending", "running", "succeeded", "failed", "unknown")
RESOLVED_STATUSES = frozenset({"succeeded", "failed"})

RunStatus = Literal["pending", "running", "succeeded", "failed", "unknown"]


class ClientError(RuntimeError):
    pass


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class QueuedRun(_WireModel):
    id: str
    status: RunStatus


class RunUpdate(_WireModel):
    id: str
    status: RunStatus
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def resolved(self) -> bool:
        return self.status in RESOLVED_STATUSES


class PlaygroundClient:
    def __init__(self, server_url: str | None = None, *, timeout_seconds: float = 10.0):
        self.server_url = (server_url or os.environ.get("CARAML_SERVER_URL") or DEFAULT_SERVER_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _url(self, path: str) -> str:
        return f"{self.server_url}/api/v1{path}"

    def queue_compilation(self, source_code: str) -> QueuedRun:
        response = self.session.post(
            self._url("/jobs"),
            json={"sourceCode": source_code},
            timeout=self.timeout_seconds,
        )
        if response.status_code != 201:
            raise ClientError(f"Error queueing compilation ({response.status_code}): {response.text}")
        return QueuedRun.model_validate(response.json())

    def fetch_run_status(self, run_id: str) -> RunUpdate:
        """Raise on any transport or HTTP failure; a failed fetch must never be
        mistaken for a failed run."""
        response = self.session.get(self._url(f"/jobs/{run_id}"), timeout=self.timeout_seconds)
        response.raise_for_status()
        return RunUpdate.model_validate(response.json())

    def fetch_artifact(self, run_id: str, kind: str) -> bytes | None:
        response = self.session.get(self._url(f"/jobs/{run_id}/artifacts/{kind}"), timeout=self.timeout_seconds)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.content

    def health_check(self) -> bool:
        try:
            response = self.session.get(self._url("/health"), timeout=5)
        except requests.RequestException as exc:
            logger.debug("Health check failed: %s", exc)
            return False
        return response.status_code == 200
