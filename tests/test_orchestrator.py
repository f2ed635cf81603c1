import threading
from dataclasses import replace

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from conftest import make_classifier_config
from dns_smart_block.blocklist import BlocklistReader
from dns_smart_block.classifier import (
    ClassificationOutcome,
    ClassificationResult,
    ClassifierError,
    ClassifierErrorType,
)
from dns_smart_block.events import EventLog
from dns_smart_block.models import (
    Base,
    ClassificationAction,
    DomainClassification,
    Prompt,
)
from dns_smart_block.orchestrator import ClassificationOrchestrator, Outcome
from dns_smart_block.prompt_store import compute_prompt_hash


def make_outcome(confidence=0.93, is_matching_site=True, prompt="rendered prompt"):
    return ClassificationOutcome(
        result=ClassificationResult(is_matching_site=is_matching_site, confidence=confidence),
        model="llama3.2:latest",
        prompt=prompt,
        prompt_hash=compute_prompt_hash(prompt),
        http_status=200,
        response_time_ms=42,
    )


class StubClassifier:
    """Returns (or raises) scripted results in order; repeats the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def classify(self, domain):
        self.calls.append(domain)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def make_orchestrator(session_factory, clock):
    def _make(classifier, **config_overrides):
        return ClassificationOrchestrator(
            make_classifier_config(**config_overrides),
            session_factory,
            classifier,
            clock=clock,
        )

    return _make


def _actions(session_factory, domain):
    with session_factory() as session:
        return [event.action for event in EventLog(session).events_for_domain(domain)]


def _classification_rows(session_factory, domain):
    with session_factory() as session:
        return (
            session.execute(
                select(DomainClassification)
                .where(DomainClassification.domain == domain)
                .order_by(DomainClassification.event_id)
            )
            .scalars()
            .all()
        )


def _blocked(session_factory, clock, threshold=0.8):
    return BlocklistReader(session_factory).blocked_domains("gaming", threshold, clock())


def test_new_domain_is_classified_and_blocked(make_orchestrator, session_factory, clock):
    classifier = StubClassifier(make_outcome(confidence=0.93))
    orchestrator = make_orchestrator(classifier)

    assert orchestrator.process_domain("example-game.com") is Outcome.CLASSIFIED

    assert _actions(session_factory, "example-game.com") == [
        ClassificationAction.QUEUED,
        ClassificationAction.CLASSIFYING,
        ClassificationAction.CLASSIFIED,
    ]
    rows = _classification_rows(session_factory, "example-game.com")
    assert len(rows) == 1
    assert rows[0].confidence == 0.93
    assert rows[0].model == "llama3.2:latest"
    assert rows[0].valid_on == clock()
    assert (rows[0].valid_until - rows[0].valid_on).days == 10
    assert _blocked(session_factory, clock) == ["example-game.com"]
    assert _blocked(session_factory, clock, threshold=0.95) == []


def test_classified_event_carries_audit_fields(make_orchestrator, session_factory):
    make_orchestrator(StubClassifier(make_outcome())).process_domain("example-game.com")

    with session_factory() as session:
        event = EventLog(session).latest_event("example-game.com")
        prompt = session.get(Prompt, event.action_data["prompt_id"])

    data = event.action_data
    assert data["classification_type"] == "gaming"
    assert data["is_matching_site"] is True
    assert data["prompt_hash"] == prompt.hash
    assert prompt.content == "rendered prompt"
    assert data["http_status"] == 200
    assert data["response_time_ms"] == 42


def test_redelivery_within_ttl_is_skipped(make_orchestrator, session_factory, clock):
    classifier = StubClassifier(make_outcome())
    orchestrator = make_orchestrator(classifier)
    orchestrator.process_domain("example-game.com")

    clock.advance(hours=1)

    assert orchestrator.process_domain("example-game.com") is Outcome.SKIPPED
    assert classifier.calls == ["example-game.com"]
    assert len(_actions(session_factory, "example-game.com")) == 3


def test_expired_classification_is_redone_and_history_kept(
    make_orchestrator, session_factory, clock
):
    classifier = StubClassifier(make_outcome(confidence=0.93), make_outcome(confidence=0.4))
    orchestrator = make_orchestrator(classifier)
    orchestrator.process_domain("example-game.com")

    clock.advance(days=10)

    assert orchestrator.process_domain("example-game.com") is Outcome.CLASSIFIED
    rows = _classification_rows(session_factory, "example-game.com")
    assert [row.confidence for row in rows] == [0.93, 0.4]
    assert _blocked(session_factory, clock) == []


def test_non_retryable_error_is_acknowledged_and_not_blocked(
    make_orchestrator, session_factory, clock
):
    timeout = ClassifierError(ClassifierErrorType.LLM_API_TIMEOUT_ERROR, "timed out")
    classifier = StubClassifier(timeout, make_outcome(confidence=0.9))
    orchestrator = make_orchestrator(classifier)

    assert orchestrator.process_domain("example-game.com") is Outcome.FAILED
    assert Outcome.FAILED.acknowledge is True
    assert _blocked(session_factory, clock) == []
    with session_factory() as session:
        error = EventLog(session).latest_event("example-game.com")
    assert error.action is ClassificationAction.ERROR
    assert error.action_data["error_type"] == "LlmApiTimeoutError"
    assert error.action_data["retryable"] is False

    clock.advance(minutes=5)

    assert orchestrator.process_domain("example-game.com") is Outcome.CLASSIFIED
    assert _blocked(session_factory, clock) == ["example-game.com"]


def test_retryable_errors_are_capped(make_orchestrator, session_factory):
    error = ClassifierError(ClassifierErrorType.LLM_API_CONNECTION_ERROR, "refused")
    orchestrator = make_orchestrator(StubClassifier(error), max_consecutive_errors=3)

    outcomes = [orchestrator.process_domain("example-game.com") for _ in range(3)]

    assert outcomes == [Outcome.RETRY, Outcome.RETRY, Outcome.FAILED]
    assert _actions(session_factory, "example-game.com").count(ClassificationAction.ERROR) == 3


def test_handle_message_maps_retry_to_nak(make_orchestrator):
    error = ClassifierError(ClassifierErrorType.LLM_API_ERROR, "502", retryable=True)
    orchestrator = make_orchestrator(StubClassifier(error))

    assert orchestrator.handle_message(b'{"domain": "example-game.com"}') is False


def test_deadline_exceeded_is_recorded(make_orchestrator, session_factory):
    release = threading.Event()

    class HangingClassifier:
        def classify(self, domain):
            release.wait(5)
            return make_outcome()

    orchestrator = make_orchestrator(HangingClassifier(), message_deadline_seconds=0.05)
    try:
        assert orchestrator.process_domain("slow.example") is Outcome.FAILED
    finally:
        release.set()

    with session_factory() as session:
        event = EventLog(session).latest_event("slow.example")
    assert event.action is ClassificationAction.ERROR
    assert event.action_data["error_type"] == "DeadlineExceeded"
    assert _classification_rows(session_factory, "slow.example") == []


def test_classifications_never_overlap_after_a_deadline(make_orchestrator, session_factory):
    release = threading.Event()
    finished = threading.Event()
    calls = []

    class HangingOnceClassifier:
        def classify(self, domain):
            calls.append(domain)
            if domain == "slow.example":
                release.wait(5)
                finished.set()
            return make_outcome()

    orchestrator = make_orchestrator(HangingOnceClassifier(), message_deadline_seconds=0.05)
    try:
        assert orchestrator.process_domain("slow.example") is Outcome.FAILED
        assert orchestrator.process_domain("queued.example") is Outcome.FAILED
        assert calls == ["slow.example"]
    finally:
        release.set()
    assert finished.wait(5)
    orchestrator.config = replace(orchestrator.config, message_deadline_seconds=5.0)

    assert orchestrator.process_domain("fast.example") is Outcome.CLASSIFIED
    assert calls == ["slow.example", "fast.example"]
    with session_factory() as session:
        event = EventLog(session).latest_event("queued.example")
    assert event.action_data["error_type"] == "DeadlineExceeded"
    orchestrator.close()


@pytest.mark.parametrize(
    "error",
    [RuntimeError("fetcher bug"), OverflowError("int too large to convert to float")],
)
def test_unexpected_classifier_exception_is_recorded_and_acknowledged(
    make_orchestrator, session_factory, clock, error
):
    orchestrator = make_orchestrator(StubClassifier(error))

    assert orchestrator.handle_message(b'{"domain": "example-game.com"}') is True

    with session_factory() as session:
        event = EventLog(session).latest_event("example-game.com")
    assert event.action is ClassificationAction.ERROR
    assert event.action_data["error_type"] == "UnexpectedError"
    assert event.action_data["retryable"] is False
    assert type(error).__name__ in event.action_data["message"]
    assert _blocked(session_factory, clock) == []


def test_identical_prompts_are_stored_once(make_orchestrator, session_factory):
    orchestrator = make_orchestrator(StubClassifier(make_outcome(prompt="same prompt")))

    orchestrator.process_domain("a.example.com")
    orchestrator.process_domain("b.example.com")

    with session_factory() as session:
        prompts = session.execute(select(Prompt)).scalars().all()
        prompt_ids = {
            row.prompt_id for row in session.execute(select(DomainClassification)).scalars()
        }
    assert len(prompts) == 1
    assert prompt_ids == {prompts[0].id}


def test_malformed_message_is_acknowledged_without_events(make_orchestrator, session_factory):
    classifier = StubClassifier(make_outcome())
    orchestrator = make_orchestrator(classifier)

    assert orchestrator.handle_message(b"{not json") is True
    assert orchestrator.handle_message(b'{"domain": "localhost"}') is True
    assert classifier.calls == []
    with session_factory() as session:
        assert list(EventLog(session).iter_events()) == []


def test_handle_message_normalizes_domain(make_orchestrator):
    classifier = StubClassifier(make_outcome())

    assert make_orchestrator(classifier).handle_message(b'{"domain": "Example-Game.COM."}') is True
    assert classifier.calls == ["example-game.com"]


def test_storage_errors_propagate(make_orchestrator, engine):
    classifier = StubClassifier(make_outcome())
    orchestrator = make_orchestrator(classifier)
    Base.metadata.drop_all(engine)

    with pytest.raises(SQLAlchemyError):
        orchestrator.process_domain("example-game.com")
    assert classifier.calls == []
