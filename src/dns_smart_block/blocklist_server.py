"""
Blocklist Server
================

HTTP surface for DNS enforcement tools:

- ``GET /blocklist?type=<classification_type>`` returns the blocked domains
  for that type as plain text, one per line, sorted. ``at`` (ISO-8601)
  evaluates the list at another instant and ``min_confidence`` overrides
  the configured threshold.
- ``GET /health`` returns ``OK``.
- ``GET /metrics`` exposes Prometheus metrics.

When the database cannot be read, the last list served for the same type is
returned with ``X-Blocklist-Stale: true``; without one the response is 503.
Only plain ``?type=`` requests are remembered for this, without ``at`` or
``min_confidence``, and for a bounded number of types.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable

import structlog
import uvicorn
from fastapi import FastAPI, Query, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .blocklist import BlocklistReader
from .config import Settings, sanitize_database_url
from .db import create_db_engine, make_session_factory
from .logging_config import configure_logging
from .utils import utcnow

log = structlog.get_logger(__name__)

STALE_HEADER = "X-Blocklist-Stale"
STALE_CACHE_MAX_ENTRIES = 32


class BlocklistMetrics:
    """Prometheus metrics of one app instance, in their own registry."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.requests = Counter(
            "dns_smart_block_blocklist_requests",
            "Blocklist requests by classification type and response status",
            ["classification_type", "status"],
            registry=self.registry,
        )
        self.health_requests = Counter(
            "dns_smart_block_health_check_requests",
            "Health check requests",
            registry=self.registry,
        )
        self.metrics_requests = Counter(
            "dns_smart_block_metrics_requests",
            "Metrics scrape requests",
            registry=self.registry,
        )
        self.served_domains = Gauge(
            "dns_smart_block_blocklist_domains",
            "Number of domains in the last blocklist served for a type",
            ["classification_type"],
            registry=self.registry,
        )
        self.current_classifications = Gauge(
            "dns_smart_block_current_classifications",
            "Currently valid classifications by type",
            ["classification_type"],
            registry=self.registry,
        )
        self.current_classifications_total = Gauge(
            "dns_smart_block_current_classifications_all",
            "Currently valid classifications across all types",
            registry=self.registry,
        )
        self.domains_seen = Gauge(
            "dns_smart_block_domains_seen",
            "Domains present in the domains projection",
            registry=self.registry,
        )
        self.events = Gauge(
            "dns_smart_block_events",
            "Events in the event log by action",
            ["action"],
            registry=self.registry,
        )
        self.classifications_created = Gauge(
            "dns_smart_block_classifications_created",
            "Classification rows ever created, by type",
            ["classification_type"],
            registry=self.registry,
        )
        self.classifications_created_total = Gauge(
            "dns_smart_block_classifications_created_all",
            "Classification rows ever created across all types",
            registry=self.registry,
        )

    def refresh(self, reader: BlocklistReader, at: datetime) -> None:
        stats = reader.stats(at)
        self.domains_seen.set(stats.domains_seen)

        self.events.clear()
        for action, count in stats.events_by_action.items():
            self.events.labels(action=action).set(count)

        self.classifications_created.clear()
        for classification_type, count in stats.classifications_by_type.items():
            self.classifications_created.labels(
                classification_type=classification_type
            ).set(count)
        self.classifications_created_total.set(sum(stats.classifications_by_type.values()))

        self.current_classifications.clear()
        for classification_type, count in stats.current_by_type.items():
            self.current_classifications.labels(
                classification_type=classification_type
            ).set(count)
        self.current_classifications_total.set(sum(stats.current_by_type.values()))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LastServedLists:
    """
    The most recent list served per classification type.

    Holds at most ``max_entries`` types; storing a new type beyond that
    evicts the least recently stored one.
    """

    def __init__(self, max_entries: int = STALE_CACHE_MAX_ENTRIES):
        self.max_entries = max_entries
        self._lists: OrderedDict[str, list[str]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, classification_type: str) -> list[str] | None:
        with self._lock:
            return self._lists.get(classification_type)

    def put(self, classification_type: str, domains: list[str]) -> None:
        with self._lock:
            self._lists[classification_type] = domains
            self._lists.move_to_end(classification_type)
            while len(self._lists) > self.max_entries:
                self._lists.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lists)


def _render(domains: list[str]) -> str:
    return "".join(f"{domain}\n" for domain in domains)


def create_app(
    settings: Settings,
    session_factory: sessionmaker,
    clock: Callable[[], datetime] = utcnow,
    metrics: BlocklistMetrics | None = None,
) -> FastAPI:
    """Build the blocklist application around an existing session factory."""
    reader = BlocklistReader(session_factory)
    metrics = metrics or BlocklistMetrics()
    last_served = LastServedLists()

    app = FastAPI(title="DNS Smart Block blocklist", docs_url=None, redoc_url=None)
    app.state.last_served = last_served

    @app.get("/health", response_class=PlainTextResponse)
    def health() -> str:
        metrics.health_requests.inc()
        return "OK"

    @app.get("/blocklist", response_class=PlainTextResponse)
    def blocklist(
        classification_type: str = Query(..., alias="type", min_length=1),
        at: datetime | None = Query(None),
        min_confidence: float | None = Query(None, ge=0.0, le=1.0),
    ) -> Response:
        threshold = (
            min_confidence
            if min_confidence is not None
            else settings.blocklist_threshold(classification_type)
        )
        evaluated_at = _as_utc(at) if at is not None else clock()
        # Only the list enforcement tools poll for is kept for stale serving.
        cacheable = at is None and min_confidence is None

        try:
            domains = reader.blocked_domains(classification_type, threshold, evaluated_at)
        except SQLAlchemyError as e:
            cached = last_served.get(classification_type) if cacheable else None
            if cached is None:
                log.error(
                    "Blocklist query failed and nothing cached",
                    classification_type=classification_type,
                    error=str(e),
                )
                metrics.requests.labels(
                    classification_type=classification_type, status="503"
                ).inc()
                return PlainTextResponse("Blocklist unavailable\n", status_code=503)

            log.warning(
                "Blocklist query failed; serving stale list",
                classification_type=classification_type,
                domain_count=len(cached),
                error=str(e),
            )
            metrics.requests.labels(
                classification_type=classification_type, status="stale"
            ).inc()
            return PlainTextResponse(_render(cached), headers={STALE_HEADER: "true"})

        if cacheable:
            last_served.put(classification_type, domains)
        metrics.requests.labels(classification_type=classification_type, status="200").inc()
        metrics.served_domains.labels(classification_type=classification_type).set(
            len(domains)
        )
        log.debug(
            "Served blocklist",
            classification_type=classification_type,
            min_confidence=threshold,
            domain_count=len(domains),
        )
        return PlainTextResponse(_render(domains))

    @app.get("/metrics")
    def prometheus_metrics() -> Response:
        metrics.metrics_requests.inc()
        try:
            metrics.refresh(reader, clock())
        except SQLAlchemyError as e:
            log.warning("Could not refresh database metrics", error=str(e))
        return Response(generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)

    return app


def main() -> None:
    """Run the blocklist server."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings, service="blocklist-server")
        database_url = settings.database_url
    except ValueError as e:
        log.error("Configuration error", error=str(e))
        return

    log.info(
        "Starting blocklist server",
        host=settings.BIND_HOST,
        port=settings.BIND_PORT,
        default_min_confidence=settings.BLOCKLIST_MIN_CONFIDENCE,
        thresholds=settings.BLOCKLIST_THRESHOLDS,
        database=sanitize_database_url(database_url),
    )

    engine = create_db_engine(database_url, settings.DB_STATEMENT_TIMEOUT_MS)
    app = create_app(settings, make_session_factory(engine))
    try:
        uvicorn.run(app, host=settings.BIND_HOST, port=settings.BIND_PORT, log_config=None)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
