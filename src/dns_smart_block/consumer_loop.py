"""
Consumer Loop
=============

The queue processor is a single sequential loop over bus deliveries:

- Fetch up to ``max_in_flight`` messages.
- Hand each one to the message handler, in order.
- Commit the message when the handler says so ("ack"). Otherwise seek back
  so the bus redelivers it ("nak"), pause, and drop the rest of the batch.
- Keep running until SIGINT / Ctrl-C.

An exception from the handler counts as a nak. A failed commit rewinds the
messages after the committed one. Other errors talking to the bus are
logged and the loop carries on after a pause.
"""

from __future__ import annotations

import time
from typing import Callable, Sequence

import structlog
from confluent_kafka import TopicPartition

log = structlog.get_logger(__name__)

ERROR_BACKOFF_SECONDS = 5.0


def run_consumer_loop(
    *,
    consumer,
    handle_message: Callable[[bytes | None], bool],
    max_in_flight: int,
    poll_timeout_seconds: float,
    nak_delay_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Consume and dispatch messages until interrupted.

    Args:
        consumer:
            A subscribed `confluent_kafka.Consumer` (or compatible fake).
        handle_message:
            Processes one payload; returns True to acknowledge, False to
            request redelivery.
        max_in_flight:
            Maximum number of messages fetched, and so unacknowledged, at once.
        poll_timeout_seconds:
            How long one fetch waits for messages.
        nak_delay_seconds:
            Pause after requesting a redelivery.
        sleep:
            Injectable sleep function (primarily for tests).
    """
    max_in_flight = max(1, int(max_in_flight))

    was_idle = False
    while True:
        try:
            messages = consumer.consume(
                num_messages=max_in_flight, timeout=poll_timeout_seconds
            )
            if not messages:
                if not was_idle:
                    log.info("No messages; waiting")
                was_idle = True
                continue

            was_idle = False
            _dispatch_batch(consumer, messages, handle_message, nak_delay_seconds, sleep)
        except KeyboardInterrupt:
            log.info("Ctrl-C received; exiting")
            break
        except Exception:
            log.exception(
                "Unexpected error in consumer loop; sleeping",
                backoff_seconds=ERROR_BACKOFF_SECONDS,
            )
            sleep(ERROR_BACKOFF_SECONDS)


def _dispatch_batch(
    consumer,
    messages: Sequence,
    handle_message: Callable[[bytes | None], bool],
    nak_delay_seconds: float,
    sleep: Callable[[float], None],
) -> None:
    for index, message in enumerate(messages):
        error = message.error()
        if error is not None:
            log.warning("Bus delivery error", error=str(error))
            continue

        try:
            acknowledge = handle_message(message.value())
        except Exception:
            log.exception(
                "Message handling failed; requesting redelivery",
                partition=message.partition(),
                offset=message.offset(),
            )
            acknowledge = False

        if acknowledge:
            try:
                consumer.commit(message=message, asynchronous=False)
            except Exception:
                # The handled message is durable; only the unhandled rest is replayed.
                _rewind(consumer, messages[index + 1 :])
                log.exception(
                    "Commit failed; rewinding the rest of the batch",
                    partition=message.partition(),
                    offset=message.offset(),
                    delay_seconds=nak_delay_seconds,
                )
                sleep(nak_delay_seconds)
                return
            continue

        _rewind(consumer, messages[index:])
        log.info(
            "Message not acknowledged; will be redelivered",
            partition=message.partition(),
            offset=message.offset(),
            delay_seconds=nak_delay_seconds,
        )
        sleep(nak_delay_seconds)
        return


def _rewind(consumer, pending: Sequence) -> None:
    """Seek every partition in ``pending`` back to its first unprocessed offset."""
    seen = set()
    for message in pending:
        if message.error() is not None:
            continue
        key = (message.topic(), message.partition())
        if key in seen:
            continue
        seen.add(key)
        consumer.seek(TopicPartition(message.topic(), message.partition(), message.offset()))
