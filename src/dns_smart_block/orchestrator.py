"""
Queue Orchestrator
==================

Decides what to do with each domain sighting for one classification type,
and does it:

- **Skip** when the domain already has a current classification of this
  type. Nothing is written and the message is acknowledged.
- **Classify** otherwise: append ``queued`` and ``classifying``, run the
  classifier under a hard deadline, then append ``classified`` or
  ``error``.

Every appended event is projected in the same transaction. A ``classified``
event, its prompt and its projection are committed together, so the message
is only acknowledged once the verdict is durable. Redelivered messages are
harmless: the current-classification check runs first and turns them into
skips.

Storage errors are not caught here; they propagate to the consumer loop,
which requests redelivery.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .bus import DomainMessage, InvalidMessageError
from .classifier import (
    ClassificationOutcome,
    ClassifierError,
    ClassifierErrorType,
    DomainClassifier,
)
from .config import ClassifierConfig
from .events import EventLog
from .models import ClassificationAction
from .projector import Projector, find_current_classification
from .prompt_store import PromptStore
from .utils import utcnow

log = structlog.get_logger(__name__)


class Outcome(str, Enum):
    """How the handling of one sighting ended."""

    SKIPPED = "skipped"
    CLASSIFIED = "classified"
    FAILED = "failed"
    RETRY = "retry"
    INVALID = "invalid"

    @property
    def acknowledge(self) -> bool:
        return self is not Outcome.RETRY


class ClassificationOrchestrator:
    """Processes domain sightings for a single classification type."""

    def __init__(
        self,
        config: ClassifierConfig,
        session_factory: sessionmaker,
        classifier: DomainClassifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.session_factory = session_factory
        self.classifier = classifier
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="classifier")

    @property
    def classification_type(self) -> str:
        return self.config.classification_type

    def handle_message(self, payload: bytes | str | None) -> bool:
        """Process one bus payload; returns True if it should be acknowledged."""
        try:
            message = DomainMessage.from_payload(payload)
        except InvalidMessageError as e:
            log.warning("Discarding malformed message", error=str(e))
            return Outcome.INVALID.acknowledge
        return self.process_domain(message.domain).acknowledge

    def process_domain(self, domain: str) -> Outcome:
        with structlog.contextvars.bound_contextvars(
            domain=domain, classification_type=self.classification_type
        ):
            now = self.clock()
            with self.session_factory() as session:
                current = find_current_classification(
                    session, domain, self.classification_type, now
                )
            if current is not None:
                log.info(
                    "Valid classification cached; skipping",
                    confidence=current.confidence,
                    valid_until=current.valid_until.isoformat(),
                )
                return Outcome.SKIPPED

            base_data = {"classification_type": self.classification_type}
            self._record(domain, ClassificationAction.QUEUED, base_data)
            self._record(
                domain,
                ClassificationAction.CLASSIFYING,
                {**base_data, "model": self.config.llm_model},
            )

            try:
                outcome = self._classify_with_deadline(domain)
            except ClassifierError as e:
                return self._record_failure(domain, e)

            self._record_classification(domain, outcome)
            return Outcome.CLASSIFIED

    def close(self) -> None:
        """Stop the classifier worker; a call still running is not waited for."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _classify_with_deadline(self, domain: str) -> ClassificationOutcome:
        """
        Run the classifier on the single worker thread, bounded by the deadline.

        A call abandoned at its deadline keeps the worker until its own fetch
        and LLM timeouts end it. The next domain queues behind it and its wait
        counts against its own deadline, so two classifications never overlap.
        """
        deadline = self.config.message_deadline_seconds
        future = self._executor.submit(self.classifier.classify, domain)
        try:
            return future.result(timeout=deadline)
        except FuturesTimeoutError as e:
            future.cancel()
            raise ClassifierError(
                ClassifierErrorType.DEADLINE_EXCEEDED,
                f"Classification did not finish within {deadline}s",
            ) from e
        except (ClassifierError, SQLAlchemyError):
            raise
        except Exception as e:
            log.exception("Classifier raised an unexpected error")
            raise ClassifierError(
                ClassifierErrorType.UNEXPECTED_ERROR, f"{type(e).__name__}: {e}"
            ) from e

    def _record(
        self, domain: str, action: ClassificationAction, action_data: dict[str, Any]
    ) -> int:
        with self.session_factory() as session:
            event = EventLog(session).append(
                domain, action, action_data, created_at=self.clock()
            )
            Projector(session).project(event)
            session.commit()
        log.debug("Recorded event", action=action.value, event_id=event.id)
        return event.id

    def _record_failure(self, domain: str, error: ClassifierError) -> Outcome:
        action_data = {
            "classification_type": self.classification_type,
            "error_type": error.error_type.value,
            "message": error.message,
            "retryable": error.retryable,
        }
        with self.session_factory() as session:
            events = EventLog(session)
            event = events.append(
                domain, ClassificationAction.ERROR, action_data, created_at=self.clock()
            )
            Projector(session).project(event)
            session.commit()
            consecutive_errors = events.count_consecutive_errors(
                domain, self.classification_type
            )

        if error.retryable and consecutive_errors < self.config.max_consecutive_errors:
            log.warning(
                "Classification failed; will retry on redelivery",
                error_type=error.error_type.value,
                error=error.message,
                consecutive_errors=consecutive_errors,
                event_id=event.id,
            )
            return Outcome.RETRY

        log.error(
            "Classification failed",
            error_type=error.error_type.value,
            error=error.message,
            retryable=error.retryable,
            consecutive_errors=consecutive_errors,
            event_id=event.id,
        )
        return Outcome.FAILED

    def _record_classification(self, domain: str, outcome: ClassificationOutcome) -> int:
        valid_on = self.clock()
        valid_until = valid_on + timedelta(days=self.config.ttl_days)
        result = outcome.result

        with self.session_factory() as session:
            prompt_id = PromptStore(session).ensure_prompt(outcome.prompt, now=valid_on)
            event = EventLog(session).append(
                domain,
                ClassificationAction.CLASSIFIED,
                {
                    "classification_type": self.classification_type,
                    "is_matching_site": result.is_matching_site,
                    "confidence": result.confidence,
                    "valid_on": valid_on.isoformat(timespec="microseconds"),
                    "valid_until": valid_until.isoformat(timespec="microseconds"),
                    "model": outcome.model,
                    "prompt_id": prompt_id,
                    "prompt_hash": outcome.prompt_hash,
                    "http_status": outcome.http_status,
                    "response_time_ms": outcome.response_time_ms,
                },
                created_at=valid_on,
            )
            Projector(session).project(event)
            session.commit()

        log.info(
            "Classification stored",
            event_id=event.id,
            prompt_id=prompt_id,
            is_matching_site=result.is_matching_site,
            confidence=result.confidence,
            blocking=self.config.is_blocking(result.is_matching_site, result.confidence),
            valid_until=valid_until.isoformat(),
        )
        return event.id
