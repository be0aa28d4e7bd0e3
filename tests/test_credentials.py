from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from conftest import FakeToolchain
from sqlalchemy import event

from caraml_playground.core.credentials import (
    AccessToken,
    CommandTokenFetcher,
    CredentialError,
    RefreshingCredentialProvider,
    StaticCredentialProvider,
    build_credential_provider,
)
from caraml_playground.db.session import create_db_engine


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2030, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_token_is_cached_until_refresh_margin() -> None:
    clock = FakeClock()
    issued: list[str] = []

    def fetch() -> AccessToken:
        token = f"token-{len(issued)}"
        issued.append(token)
        return AccessToken(token=token, expires_at=clock.now + timedelta(minutes=10))

    provider = RefreshingCredentialProvider(fetch, refresh_margin=timedelta(minutes=1), clock=clock)

    assert provider.get_token() == "token-0"
    clock.now += timedelta(minutes=8)
    assert provider.get_token() == "token-0"
    clock.now += timedelta(minutes=1, seconds=1)
    assert provider.get_token() == "token-1"
    assert issued == ["token-0", "token-1"]


def test_empty_token_is_rejected() -> None:
    provider = RefreshingCredentialProvider(
        lambda: AccessToken(token="", expires_at=datetime.now(tz=timezone.utc) + timedelta(hours=1))
    )
    with pytest.raises(CredentialError):
        provider.get_token()


def test_command_fetcher_reads_token_from_stdout(toolchain: FakeToolchain) -> None:
    script = toolchain.write("issue-token", "#!/bin/sh\necho '  secret-token  '\n")

    token = CommandTokenFetcher(script.as_posix(), ttl_seconds=120)()

    assert token.token == "secret-token"
    assert token.expires_at > datetime.now(tz=timezone.utc) + timedelta(seconds=60)


def test_command_fetcher_surfaces_failures(toolchain: FakeToolchain, tmp_path: Path) -> None:
    failing = toolchain.write("deny-token", "#!/bin/sh\necho 'access denied' >&2\nexit 2\n")

    with pytest.raises(CredentialError, match="access denied"):
        CommandTokenFetcher(failing.as_posix(), ttl_seconds=60)()
    with pytest.raises(CredentialError):
        CommandTokenFetcher((tmp_path / "missing").as_posix(), ttl_seconds=60)()


def test_provider_is_only_built_when_a_command_is_configured(configure_env, toolchain: FakeToolchain) -> None:
    settings = configure_env()
    assert build_credential_provider(settings) is None

    script = toolchain.write("issue-token", "#!/bin/sh\necho db-token\n")
    provider = build_credential_provider(settings.model_copy(update={"database_token_command": script.as_posix()}))

    assert provider is not None
    assert provider.get_token() == "db-token"


def test_engine_injects_provider_token_as_password(tmp_path: Path) -> None:
    engine = create_db_engine(
        f"sqlite:///{(tmp_path / 'tokens.sqlite3').as_posix()}",
        StaticCredentialProvider("db-token"),
    )
    captured: list[str | None] = []

    @event.listens_for(engine, "do_connect")
    def _capture(_dialect, _conn_rec, _cargs, cparams) -> None:  # type: ignore[no-untyped-def]
        captured.append(cparams.pop("password", None))

    try:
        with engine.connect():
            pass
    finally:
        engine.dispose()

    assert captured == ["db-token"]
