from __future__ import annotations

import logging

from sqlalchemy import Engine, text

from caraml_playground.db.models import Base
from caraml_playground.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database(engine: Engine | None = None) -> None:
    """Create the job table if missing. Safe to call on every startup."""
    engine = engine or get_engine()
    logger.debug("Initializing job database at %s", engine.url.render_as_string(hide_password=True))
    Base.metadata.create_all(bind=engine, checkfirst=True)

    if engine.dialect.name == "sqlite":
        with engine.begin() as conn:
            conn.execute(text("PRAGMA optimize;"))
