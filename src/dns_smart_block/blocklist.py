"""
Blocklist queries.

Read-only views over the projections: which domains are blocked for a
classification type at a given instant, and counts used for metrics. Nothing
in this module writes to the database or triggers classification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from .models import ClassificationEvent, Domain, DomainClassification


@dataclass(frozen=True)
class BlocklistStats:
    domains_seen: int = 0
    events_by_action: dict[str, int] = field(default_factory=dict)
    classifications_by_type: dict[str, int] = field(default_factory=dict)
    current_by_type: dict[str, int] = field(default_factory=dict)


def _current_rows(classification_type: str | None, at: datetime):
    """
    Subquery of classification rows valid at ``at``, ranked per domain and type.

    Rank 1 is the current row: latest ``valid_on``, ties going to the later event.
    """
    rank = (
        func.row_number()
        .over(
            partition_by=(DomainClassification.domain, DomainClassification.classification_type),
            order_by=(DomainClassification.valid_on.desc(), DomainClassification.event_id.desc()),
        )
        .label("rank")
    )
    stmt = select(
        DomainClassification.domain,
        DomainClassification.classification_type,
        DomainClassification.is_matching_site,
        DomainClassification.confidence,
        rank,
    ).where(
        DomainClassification.valid_on <= at,
        DomainClassification.valid_until > at,
    )
    if classification_type is not None:
        stmt = stmt.where(DomainClassification.classification_type == classification_type)
    return stmt.subquery()


class BlocklistReader:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def blocked_domains(
        self, classification_type: str, min_confidence: float, at: datetime
    ) -> list[str]:
        """
        Domains whose current classification of this type is blocking.

        Blocking means ``is_matching_site`` is true and ``confidence`` is at
        least ``min_confidence``. The result is sorted.
        """
        current = _current_rows(classification_type, at)
        stmt = (
            select(current.c.domain)
            .where(
                current.c.rank == 1,
                current.c.is_matching_site.is_(True),
                current.c.confidence >= min_confidence,
            )
            .order_by(current.c.domain)
        )
        with self.session_factory() as session:
            return list(session.execute(stmt).scalars())

    def stats(self, at: datetime) -> BlocklistStats:
        with self.session_factory() as session:
            domains_seen = session.execute(select(func.count()).select_from(Domain)).scalar_one()
            events_by_action = {
                getattr(action, "value", action): count
                for action, count in session.execute(
                    select(ClassificationEvent.action, func.count()).group_by(
                        ClassificationEvent.action
                    )
                )
            }
            classifications_by_type = dict(
                session.execute(
                    select(DomainClassification.classification_type, func.count()).group_by(
                        DomainClassification.classification_type
                    )
                ).all()
            )
            current = _current_rows(None, at)
            current_by_type = dict(
                session.execute(
                    select(current.c.classification_type, func.count())
                    .where(current.c.rank == 1)
                    .group_by(current.c.classification_type)
                ).all()
            )
        return BlocklistStats(
            domains_seen=domains_seen,
            events_by_action=events_by_action,
            classifications_by_type=classifications_by_type,
            current_by_type=current_by_type,
        )
