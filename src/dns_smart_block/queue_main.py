"""
Domain Classification Queue Processor
=====================================

Consumes domain sightings from the bus and classifies each one for the
configured classification type. Run one process per classification type.
"""

from __future__ import annotations

import structlog

from .bus import build_consumer
from .classifier import DomainClassifier
from .config import Settings, sanitize_database_url, setup_libraries
from .consumer_loop import run_consumer_loop
from .db import create_db_engine, init_db, make_session_factory
from .logging_config import configure_logging
from .orchestrator import ClassificationOrchestrator


def main() -> None:
    """Main loop for the queue processor."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings, service="queue-processor")
        setup_libraries(settings)
        classifier_config = settings.classifier_config()
        database_url = settings.database_url
    except ValueError as e:
        log.error("Configuration error", error=str(e))
        return

    log.info(
        "Starting queue processor",
        classification_type=classifier_config.classification_type,
        prompt_template=classifier_config.prompt_template_source,
        llm_provider=settings.LLM_PROVIDER,
        llm_model=classifier_config.llm_model,
        min_confidence=classifier_config.min_confidence,
        ttl_days=classifier_config.ttl_days,
        message_deadline_seconds=classifier_config.message_deadline_seconds,
        topic=settings.KAFKA_TOPIC,
        max_in_flight=settings.BUS_MAX_IN_FLIGHT,
        database=sanitize_database_url(database_url),
    )

    engine = create_db_engine(database_url, settings.DB_STATEMENT_TIMEOUT_MS)
    init_db(engine)
    orchestrator = ClassificationOrchestrator(
        classifier_config,
        make_session_factory(engine),
        DomainClassifier(classifier_config),
    )
    consumer = build_consumer(settings)

    try:
        run_consumer_loop(
            consumer=consumer,
            handle_message=orchestrator.handle_message,
            max_in_flight=settings.BUS_MAX_IN_FLIGHT,
            poll_timeout_seconds=settings.BUS_POLL_TIMEOUT_MS / 1000,
            nak_delay_seconds=settings.NAK_DELAY_SECONDS,
        )
    finally:
        orchestrator.close()
        consumer.close()
        engine.dispose()


if __name__ == "__main__":
    main()
