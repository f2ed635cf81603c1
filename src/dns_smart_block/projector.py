"""
Projections derived from the event log.

The projection rule lives in one place, `project_event`, which turns a
single event into a `ProjectionDelta`. Two consumers apply that delta:

- `ProjectionState`/`fold` keep the projections in memory. This is a pure
  reducer over an ordered sequence of events, independent of any storage.
- `Projector` writes the same delta to the `domains` and
  `domain_classifications` tables, using idempotent upserts so that
  projecting an event twice changes nothing.

Because both paths share the rule, rebuilding the tables from the log
(`Projector.rebuild`) reproduces exactly what `fold` computes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

import structlog
from sqlalchemy import case, delete, select
from sqlalchemy.orm import Session

from .db import dialect_insert
from .events import EventLog
from .models import (
    ClassificationAction,
    ClassificationRecord,
    Domain,
    DomainClassification,
    EventRecord,
)

log = structlog.get_logger(__name__)

CLASSIFIED_REQUIRED_FIELDS = (
    "classification_type",
    "is_matching_site",
    "confidence",
    "valid_on",
    "valid_until",
    "model",
    "prompt_id",
)


class ProjectionError(ValueError):
    """Raised when an event cannot be projected."""


@dataclass(frozen=True)
class ProjectionDelta:
    """The effect of one event on the projections."""

    domain: str
    last_updated: datetime
    classification: ClassificationRecord | None = None


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def project_event(event: EventRecord) -> ProjectionDelta:
    """
    Compute the projection delta of one event.

    Every action marks the domain as seen at the event's ``created_at``. A
    ``classified`` event additionally produces one classification row whose
    fields are taken verbatim from ``action_data``.
    """
    action = ClassificationAction(event.action)
    if action is not ClassificationAction.CLASSIFIED:
        return ProjectionDelta(domain=event.domain, last_updated=event.created_at)

    data = event.action_data
    missing = [name for name in CLASSIFIED_REQUIRED_FIELDS if name not in data]
    if missing:
        raise ProjectionError(
            f"classified event {event.id} is missing fields: {', '.join(missing)}"
        )
    try:
        classification = ClassificationRecord(
            event_id=event.id,
            domain=event.domain,
            classification_type=str(data["classification_type"]),
            is_matching_site=bool(data["is_matching_site"]),
            confidence=float(data["confidence"]),
            valid_on=_parse_timestamp(data["valid_on"]),
            valid_until=_parse_timestamp(data["valid_until"]),
            model=str(data["model"]),
            prompt_id=int(data["prompt_id"]),
            created_at=event.created_at,
        )
    except (TypeError, ValueError) as e:
        raise ProjectionError(f"classified event {event.id} is malformed: {e}") from e

    return ProjectionDelta(
        domain=event.domain,
        last_updated=event.created_at,
        classification=classification,
    )


@dataclass
class ProjectionState:
    """In-memory projections: domains and classification rows."""

    domains: dict[str, datetime] = field(default_factory=dict)
    classifications: dict[int, ClassificationRecord] = field(default_factory=dict)

    def apply(self, delta: ProjectionDelta) -> None:
        previous = self.domains.get(delta.domain)
        if previous is None or delta.last_updated > previous:
            self.domains[delta.domain] = delta.last_updated
        if delta.classification is not None:
            self.classifications.setdefault(
                delta.classification.event_id, delta.classification
            )

    def current(
        self, domain: str, classification_type: str, at: datetime
    ) -> ClassificationRecord | None:
        """The current classification for ``(domain, classification_type)`` at ``at``."""
        candidates = [
            row
            for row in self.classifications.values()
            if row.domain == domain
            and row.classification_type == classification_type
            and row.is_current(at)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda row: (row.valid_on, row.event_id))


def apply_event(state: ProjectionState, event: EventRecord) -> ProjectionState:
    state.apply(project_event(event))
    return state


def fold(events: Iterable[EventRecord]) -> ProjectionState:
    """Build projections from scratch by folding events in causal order."""
    state = ProjectionState()
    for event in events:
        apply_event(state, event)
    return state


class Projector:
    """Applies projection deltas to the database tables."""

    def __init__(self, session: Session):
        self.session = session

    def project(self, event: EventRecord) -> ProjectionDelta:
        """Apply one event to the projection tables. Safe to call repeatedly."""
        delta = project_event(event)
        self._upsert_domain(delta.domain, delta.last_updated)
        if delta.classification is not None:
            self._insert_classification(delta.classification)
        return delta

    def _upsert_domain(self, domain: str, last_updated: datetime) -> None:
        stmt = dialect_insert(self.session, Domain.__table__).values(
            domain=domain, last_updated=last_updated
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["domain"],
            set_={
                "last_updated": case(
                    (
                        stmt.excluded.last_updated > Domain.__table__.c.last_updated,
                        stmt.excluded.last_updated,
                    ),
                    else_=Domain.__table__.c.last_updated,
                )
            },
        )
        self.session.execute(stmt)

    def _insert_classification(self, row: ClassificationRecord) -> None:
        stmt = (
            dialect_insert(self.session, DomainClassification.__table__)
            .values(
                event_id=row.event_id,
                domain=row.domain,
                classification_type=row.classification_type,
                is_matching_site=row.is_matching_site,
                confidence=row.confidence,
                valid_on=row.valid_on,
                valid_until=row.valid_until,
                model=row.model,
                prompt_id=row.prompt_id,
                created_at=row.created_at,
            )
            .on_conflict_do_nothing(index_elements=["event_id"])
        )
        self.session.execute(stmt)

    def rebuild(self) -> tuple[int, int]:
        """
        Empty the projection tables and replay the whole event log into them.

        Returns ``(events_replayed, classifications_created)``. The caller
        commits; doing so in one transaction means readers never see the
        tables half-built.
        """
        self.session.execute(delete(DomainClassification))
        self.session.execute(delete(Domain))

        events_replayed = 0
        classifications_created = 0
        for event in EventLog(self.session).iter_events():
            delta = self.project(event)
            events_replayed += 1
            if delta.classification is not None:
                classifications_created += 1
        log.info(
            "Projections rebuilt",
            events_replayed=events_replayed,
            classifications_created=classifications_created,
        )
        return events_replayed, classifications_created

    def snapshot(self) -> ProjectionState:
        """Read the projection tables back into a `ProjectionState`."""
        state = ProjectionState()
        for domain in self.session.execute(select(Domain)).scalars():
            state.domains[domain.domain] = domain.last_updated
        for row in self.session.execute(select(DomainClassification)).scalars():
            state.classifications[row.event_id] = row.to_record()
        return state


def find_current_classification(
    session: Session, domain: str, classification_type: str, at: datetime
) -> ClassificationRecord | None:
    """
    Return the classification of ``domain`` that is current at ``at``.

    A row is valid when ``valid_on <= at < valid_until``; among valid rows the
    one with the latest ``valid_on`` wins, ties going to the later event.
    """
    row = session.execute(
        select(DomainClassification)
        .where(
            DomainClassification.domain == domain,
            DomainClassification.classification_type == classification_type,
            DomainClassification.valid_on <= at,
            DomainClassification.valid_until > at,
        )
        .order_by(
            DomainClassification.valid_on.desc(), DomainClassification.event_id.desc()
        )
        .limit(1)
    ).scalar_one_or_none()
    return row.to_record() if row is not None else None
