"""
The classification event log.

Events are immutable facts about a domain's classification lifecycle. This
module only ever inserts into and reads from `domain_classification_events`;
nothing here updates or deletes a row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import ClassificationAction, ClassificationEvent, EventRecord
from .utils import utcnow

log = structlog.get_logger(__name__)

TERMINAL_ACTIONS = (ClassificationAction.CLASSIFIED, ClassificationAction.ERROR)


class EventLog:
    """Append-only access to the event log within one session."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        domain: str,
        action: ClassificationAction,
        action_data: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> EventRecord:
        """
        Append an event and return it with its assigned id.

        The row is flushed but not committed; the caller owns the transaction.
        """
        event = ClassificationEvent(
            domain=domain,
            action=ClassificationAction(action),
            created_at=created_at or utcnow(),
            action_data=dict(action_data or {}),
        )
        self.session.add(event)
        self.session.flush()
        log.debug("Event appended", domain=domain, action=event.action.value, event_id=event.id)
        return event.to_record()

    def get(self, event_id: int) -> EventRecord | None:
        event = self.session.get(ClassificationEvent, event_id)
        return event.to_record() if event is not None else None

    def events_for_domain(self, domain: str) -> list[EventRecord]:
        """All events for ``domain`` in causal order."""
        rows = self.session.execute(
            select(ClassificationEvent)
            .where(ClassificationEvent.domain == domain)
            .order_by(ClassificationEvent.created_at, ClassificationEvent.id)
        ).scalars()
        return [row.to_record() for row in rows]

    def iter_events(self, batch_size: int = 1000) -> Iterator[EventRecord]:
        """Yield every event in causal order, ``(created_at, id)`` ascending."""
        stmt = (
            select(ClassificationEvent)
            .order_by(ClassificationEvent.created_at, ClassificationEvent.id)
            .execution_options(yield_per=batch_size)
        )
        for row in self.session.execute(stmt).scalars():
            yield row.to_record()

    def latest_event(self, domain: str) -> EventRecord | None:
        row = self.session.execute(
            select(ClassificationEvent)
            .where(ClassificationEvent.domain == domain)
            .order_by(ClassificationEvent.created_at.desc(), ClassificationEvent.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        return row.to_record() if row is not None else None

    def count_consecutive_errors(
        self, domain: str, classification_type: str, limit: int = 10
    ) -> int:
        """
        Count ``error`` outcomes for this domain and type since its last success.

        Only terminal events (``classified``/``error``) are considered, newest
        first; at most ``limit`` of them are inspected.
        """
        rows = self.session.execute(
            select(ClassificationEvent)
            .where(
                ClassificationEvent.domain == domain,
                ClassificationEvent.action.in_(TERMINAL_ACTIONS),
            )
            .order_by(ClassificationEvent.created_at.desc(), ClassificationEvent.id.desc())
        ).scalars()

        count = 0
        inspected = 0
        for row in rows:
            if (row.action_data or {}).get("classification_type") != classification_type:
                continue
            inspected += 1
            if row.action != ClassificationAction.ERROR:
                break
            count += 1
            if inspected >= limit:
                break
        return count
