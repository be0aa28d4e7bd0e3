from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from caraml_playground.core.config import get_settings
from caraml_playground.core.credentials import CredentialProvider, build_credential_provider

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _configure_sqlite_pragma(engine: Engine) -> None:
    if not engine.url.drivername.startswith("sqlite"):
        return

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA busy_timeout=5000;")
        cursor.close()


def _configure_token_auth(engine: Engine, credentials: CredentialProvider) -> None:
    @event.listens_for(engine, "do_connect")
    def _inject_token(_dialect, _conn_rec, _cargs, cparams) -> None:  # type: ignore[no-untyped-def]
        cparams["password"] = credentials.get_token()


def create_db_engine(database_url: str, credentials: CredentialProvider | None = None) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(
        database_url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )
    _configure_sqlite_pragma(engine)
    if credentials is not None:
        _configure_token_auth(engine, credentials)
    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    _engine = create_db_engine(settings.effective_database_url, build_credential_provider(settings))
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is not None:
        return _session_factory

    _session_factory = sessionmaker(
        bind=get_engine(),
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        class_=Session,
    )
    return _session_factory

