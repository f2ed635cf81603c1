"""
Database models.

The `domain_classification_events` table is the append-only source of
truth. `domains` and `domain_classifications` are projections derived
from it by `dns_smart_block.projector`; `prompts` is a content-addressed
store referenced by classifications.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamp that works with both SQLite and PostgreSQL.

    SQLite has no timezone support, so values are stored there as naive UTC
    and re-attached to UTC when loaded.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; use UTC-aware values")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ClassificationAction(str, enum.Enum):
    """Closed set of lifecycle transitions recorded in the event log."""

    QUEUED = "queued"
    CLASSIFYING = "classifying"
    CLASSIFIED = "classified"
    ERROR = "error"


class Prompt(Base):
    __tablename__ = "prompts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content = Column(Text, nullable=False)
    hash = Column(String, nullable=False, unique=True)
    created_at = Column(UTCDateTime, nullable=False)


class ClassificationEvent(Base):
    __tablename__ = "domain_classification_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain = Column(String, nullable=False)
    action = Column(
        Enum(
            ClassificationAction,
            name="classification_action",
            values_callable=lambda actions: [a.value for a in actions],
        ),
        nullable=False,
    )
    created_at = Column(UTCDateTime, nullable=False)
    action_data = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_events_domain_created", "domain", "created_at"),
        Index("idx_events_action", "action"),
    )

    def to_record(self) -> "EventRecord":
        return EventRecord(
            id=self.id,
            domain=self.domain,
            action=ClassificationAction(self.action),
            created_at=self.created_at,
            action_data=dict(self.action_data or {}),
        )


class Domain(Base):
    __tablename__ = "domains"

    domain = Column(String, primary_key=True)
    last_updated = Column(UTCDateTime, nullable=False)

    __table_args__ = (Index("idx_domains_last_updated", "last_updated"),)


class DomainClassification(Base):
    __tablename__ = "domain_classifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        Integer,
        ForeignKey("domain_classification_events.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    domain = Column(
        String, ForeignKey("domains.domain", ondelete="CASCADE"), nullable=False
    )
    classification_type = Column(String, nullable=False)
    is_matching_site = Column(Boolean, nullable=False)
    confidence = Column(Float, nullable=False)
    valid_on = Column(UTCDateTime, nullable=False)
    valid_until = Column(UTCDateTime, nullable=False)
    model = Column(String, nullable=False)
    prompt_id = Column(Integer, ForeignKey("prompts.id"), nullable=False)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "confidence >= 0.0 AND confidence <= 1.0", name="ck_classification_confidence"
        ),
        CheckConstraint("valid_on <= valid_until", name="ck_classification_window"),
        Index(
            "idx_classifications_lookup",
            "domain",
            "classification_type",
            "valid_until",
        ),
        Index("idx_classifications_type", "classification_type"),
        Index("idx_classifications_prompt", "prompt_id"),
    )

    def to_record(self) -> "ClassificationRecord":
        return ClassificationRecord(
            event_id=self.event_id,
            domain=self.domain,
            classification_type=self.classification_type,
            is_matching_site=self.is_matching_site,
            confidence=self.confidence,
            valid_on=self.valid_on,
            valid_until=self.valid_until,
            model=self.model,
            prompt_id=self.prompt_id,
            created_at=self.created_at,
        )


# ---------------------------------------------------------------------------
# Storage-independent records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventRecord:
    id: int
    domain: str
    action: ClassificationAction
    created_at: datetime
    action_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ClassificationRecord:
    event_id: int
    domain: str
    classification_type: str
    is_matching_site: bool
    confidence: float
    valid_on: datetime
    valid_until: datetime
    model: str
    prompt_id: int
    created_at: datetime

    def is_current(self, at: datetime) -> bool:
        """True if the validity window ``[valid_on, valid_until)`` contains ``at``."""
        return self.valid_on <= at < self.valid_until
