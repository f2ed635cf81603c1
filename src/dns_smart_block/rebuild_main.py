"""
Projection Rebuild
==================

Empties the ``domains`` and ``domain_classifications`` projections and
replays the whole event log into them, in one transaction. Use it after
restoring a backup or when the projections are suspected to be wrong.
Stop the queue processors while it runs.
"""

from __future__ import annotations

import structlog

from .config import Settings, sanitize_database_url
from .db import create_db_engine, init_db, make_session_factory
from .logging_config import configure_logging
from .projector import Projector


def main() -> None:
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings, service="rebuild-projections")
        database_url = settings.database_url
    except ValueError as e:
        log.error("Configuration error", error=str(e))
        return

    log.info("Rebuilding projections", database=sanitize_database_url(database_url))

    engine = create_db_engine(database_url)
    try:
        init_db(engine)
        session_factory = make_session_factory(engine)
        with session_factory() as session:
            events_replayed, classifications_created = Projector(session).rebuild()
            session.commit()
    finally:
        engine.dispose()

    log.info(
        "Rebuild complete",
        events_replayed=events_replayed,
        classifications_created=classifications_created,
    )


if __name__ == "__main__":
    main()
