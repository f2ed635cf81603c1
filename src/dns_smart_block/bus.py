"""
Message bus boundary.

Domain sightings travel over a Kafka topic as small JSON objects,
``{"domain": "example.com", "timestamp": 1700000000}``, keyed by domain so
that sightings of one domain stay in one partition.

The log tailer publishes with `DomainPublisher`; each orchestrator process
consumes through `build_consumer`, in its own consumer group so that every
classification type sees every sighting.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Iterable

import structlog
from confluent_kafka import Consumer, Producer

from .config import Settings

log = structlog.get_logger(__name__)

MAX_DOMAIN_LENGTH = 253
_LABEL = re.compile(r"^(?!-)[a-z0-9_-]{1,63}(?<!-)$")


class InvalidMessageError(ValueError):
    """A bus payload that can never be processed."""


def normalize_domain(raw: Any) -> str:
    """
    Lower-case ``raw`` and strip a trailing dot, rejecting invalid names.

    >>> normalize_domain("Example.COM.")
    'example.com'
    """
    if not isinstance(raw, str):
        raise InvalidMessageError("domain must be a string")
    domain = raw.strip().lower().rstrip(".")
    if not domain or len(domain) > MAX_DOMAIN_LENGTH:
        raise InvalidMessageError(f"invalid domain length: {raw!r}")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_LABEL.match(label) for label in labels):
        raise InvalidMessageError(f"invalid domain name: {raw!r}")
    return domain


@dataclass(frozen=True)
class DomainMessage:
    domain: str
    timestamp: int | None = None

    @classmethod
    def from_payload(cls, payload: bytes | str | None) -> "DomainMessage":
        if payload is None:
            raise InvalidMessageError("empty payload")
        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidMessageError(f"payload is not JSON: {e}") from e
        if not isinstance(data, dict) or "domain" not in data:
            raise InvalidMessageError("payload has no 'domain' field")

        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            timestamp = None
        return cls(domain=normalize_domain(data["domain"]), timestamp=timestamp)

    def to_payload(self) -> bytes:
        return json.dumps({"domain": self.domain, "timestamp": self.timestamp}).encode(
            "utf-8"
        )


def build_consumer(settings: Settings) -> Consumer:
    """Create a consumer subscribed to the domain topic with manual commits."""
    consumer = Consumer(
        {
            "bootstrap.servers": settings.KAFKA_BROKERS,
            "group.id": settings.consumer_group,
            "enable.auto.commit": False,
            "auto.offset.reset": "earliest",
        }
    )
    consumer.subscribe([settings.KAFKA_TOPIC])
    log.info(
        "Subscribed to domain topic",
        topic=settings.KAFKA_TOPIC,
        group=settings.consumer_group,
        brokers=settings.KAFKA_BROKERS,
    )
    return consumer


class DomainPublisher:
    """Publishes domain sightings to the bus."""

    def __init__(self, producer: Producer, topic: str):
        self.producer = producer
        self.topic = topic

    @classmethod
    def from_settings(cls, settings: Settings) -> "DomainPublisher":
        producer = Producer({"bootstrap.servers": settings.KAFKA_BROKERS})
        return cls(producer, settings.KAFKA_TOPIC)

    def publish_domain(self, domain: str, timestamp: int | None = None) -> None:
        message = DomainMessage(
            domain=normalize_domain(domain),
            timestamp=int(time.time()) if timestamp is None else timestamp,
        )
        self.producer.produce(
            self.topic,
            key=message.domain.encode("utf-8"),
            value=message.to_payload(),
            on_delivery=self._on_delivery,
        )
        self.producer.poll(0)
        log.debug("Published domain", domain=message.domain, topic=self.topic)

    def publish_domains(self, domains: Iterable[str]) -> None:
        for domain in domains:
            self.publish_domain(domain)

    def flush(self, timeout: float = 10.0) -> int:
        """Wait for outstanding deliveries; returns how many are still queued."""
        return self.producer.flush(timeout)

    @staticmethod
    def _on_delivery(err, msg) -> None:
        if err is not None:
            log.error("Domain delivery failed", error=str(err), topic=msg.topic())
