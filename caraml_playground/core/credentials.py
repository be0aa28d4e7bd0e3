from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from caraml_playground.core.config import Settings

logger = logging.getLogger(__name__)


class CredentialError(RuntimeError):
    pass


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime


class CredentialProvider(Protocol):
    def get_token(self) -> str: ...


class StaticCredentialProvider:
    def __init__(self, token: str):
        self._token = token

    def get_token(self) -> str:
        return self._token


class RefreshingCredentialProvider:
    """Caches a token from ``fetch`` and refreshes it once it is within
    ``refresh_margin`` of expiry. Safe to share between threads."""

    def __init__(
        self,
        fetch: Callable[[], AccessToken],
        *,
        refresh_margin: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] | None = None,
    ):
        self._fetch = fetch
        self._refresh_margin = refresh_margin
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._lock = threading.Lock()
        self._cached: AccessToken | None = None

    def get_token(self) -> str:
        with self._lock:
            cached = self._cached
            if cached is not None and self._clock() < cached.expires_at - self._refresh_margin:
                return cached.token
            fresh = self._fetch()
            if not fresh.token:
                raise CredentialError("Credential source returned an empty token")
            logger.debug("Refreshed access token, expires at %s", fresh.expires_at.isoformat())
            self._cached = fresh
            return fresh.token


class CommandTokenFetcher:
    def __init__(self, command: str, ttl_seconds: int, *, timeout_seconds: float = 30.0):
        self._command = shlex.split(command)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._timeout_seconds = timeout_seconds

    def __call__(self) -> AccessToken:
        try:
            result = subprocess.run(
                self._command,
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise CredentialError(f"Token command could not run: {exc}") from exc

        if result.returncode != 0:
            details = result.stderr.strip() or result.stdout.strip() or "token command failed without output"
            raise CredentialError(details)
        return AccessToken(token=result.stdout.strip(), expires_at=datetime.now(tz=timezone.utc) + self._ttl)


def build_credential_provider(settings: Settings) -> CredentialProvider | None:
    if not settings.database_token_command:
        return None
    fetcher = CommandTokenFetcher(settings.database_token_command, settings.database_token_ttl_seconds)
    return RefreshingCredentialProvider(fetcher)
