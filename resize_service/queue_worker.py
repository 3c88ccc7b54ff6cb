"""
Queue worker: pulls upload notifications and delivers resized variants.

The receive loop runs on a single thread and feeds a fixed-size pool of
workers. A notification is acknowledged only once every variant has been
written, or once the object is known to be undeliverable and has been handed
to the dead-letter sink. Anything else is left for the queue to redeliver.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import signal
from threading import BoundedSemaphore, Event, Lock
from typing import Callable, List, Optional, Sequence

import boto3

from . import config
from .consumers import Consumer, SqsConsumer
from .dead_letter import DeadLetterSink, build_dead_letter_sink
from .errors import FatalPipelineError, PipelineError
from .models import (
    DeadLetterRecord,
    Notification,
    NotificationState,
    ObjectReference,
    Overall,
    ProcessingOutcome,
)
from .pipeline import ObjectProcessor

logger = logging.getLogger(__name__)

Processor = Callable[[ObjectReference], ProcessingOutcome]


@dataclass
class PipelineStats:
    """Counters for one `run` or `run_batch` call."""

    received: int = 0
    acknowledged: int = 0
    awaiting_redelivery: int = 0
    dead_lettered: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_received(self, count: int) -> None:
        with self._lock:
            self.received += count

    def count(self, state: NotificationState) -> None:
        with self._lock:
            if state is NotificationState.ACKNOWLEDGED:
                self.acknowledged += 1
            elif state is NotificationState.DEAD_LETTERED:
                self.dead_lettered += 1
            else:
                self.awaiting_redelivery += 1


class PipelineOrchestrator:
    def __init__(
        self,
        processor: Processor,
        dead_letter: DeadLetterSink,
        *,
        max_attempts: int = 5,
        max_concurrency: int = 4,
        batch_size: int = 10,
        source_bucket: Optional[str] = None,
        backoff_base_seconds: int = 5,
        backoff_max_seconds: int = 900,
        idle_sleep_seconds: float = 1.0,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.processor = processor
        self.dead_letter = dead_letter
        self.max_attempts = max_attempts
        self.max_concurrency = max_concurrency
        self.batch_size = batch_size
        self.source_bucket = source_bucket
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.idle_sleep_seconds = idle_sleep_seconds
        self.stats = PipelineStats()
        self._halt = Event()
        self._fatal: Optional[FatalPipelineError] = None
        self._fatal_lock = Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[config.Settings] = None,
        processor: Optional[Processor] = None,
        dead_letter: Optional[DeadLetterSink] = None,
    ) -> "PipelineOrchestrator":
        settings = settings or config.get_settings()
        return cls(
            processor=processor or ObjectProcessor.from_settings(settings),
            dead_letter=dead_letter or build_dead_letter_sink(settings),
            max_attempts=settings.max_attempts,
            max_concurrency=settings.max_concurrency,
            batch_size=settings.batch_size,
            source_bucket=settings.source_bucket,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_max_seconds=settings.backoff_max_seconds,
        )

    def backoff_delay(self, attempt: int) -> int:
        """Exponential redelivery delay for the given 1-based attempt."""
        exponent = max(attempt - 1, 0)
        return int(min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** min(exponent, 16))))

    # ------------------------------------------------------------------
    # Per-notification decision
    # ------------------------------------------------------------------

    def handle(self, notification: Notification, consumer: Consumer) -> NotificationState:
        """
        Process one notification and acknowledge, release or dead-letter it.

        Raises:
            PipelineError: the consumer could not acknowledge the message.
            FatalPipelineError: the outcome carries an authorization or
                configuration failure; the notification is left unacknowledged.
        """
        notification.state = NotificationState.PROCESSING
        notification.state = self._decide(notification, consumer)
        return notification.state

    def _decide(self, notification: Notification, consumer: Consumer) -> NotificationState:
        ref = notification.object_ref
        if ref is None:
            if notification.parse_error:
                entry = DeadLetterRecord(
                    reason=f"malformed notification: {notification.parse_error}",
                    attempt=notification.attempt,
                    message_id=notification.message_id,
                )
                return self._dead_letter(notification, consumer, entry)
            logger.info("Notification %s references no object; acknowledging", notification.message_id)
            consumer.ack(notification)
            return NotificationState.ACKNOWLEDGED

        if self.source_bucket and ref.container_id != self.source_bucket:
            entry = DeadLetterRecord(
                container_id=ref.container_id,
                key=ref.key,
                reason=f"unexpected source bucket {ref.container_id!r}, expected {self.source_bucket!r}",
                attempt=notification.attempt,
                message_id=notification.message_id,
            )
            return self._dead_letter(notification, consumer, entry)

        logger.info("Processing %s (attempt %d)", ref.uri, notification.attempt)
        outcome = self.processor(ref)

        if outcome.overall is Overall.ALL_SUCCEEDED:
            consumer.ack(notification)
            logger.info("Delivered %d variants of %s", len(outcome.per_variant), ref.uri)
            return NotificationState.ACKNOWLEDGED

        if outcome.fatal:
            cause = next((e for e in outcome.failures if e.fatal), None)
            raise FatalPipelineError(f"fatal failure processing {ref.uri}: {cause}", cause=cause)

        if outcome.overall is Overall.TOTAL_FAILURE and not outcome.retryable:
            logger.error("Permanent failure for %s: %s", ref.uri, outcome.describe())
            return self._dead_letter(notification, consumer, DeadLetterRecord.from_outcome(notification, outcome))

        if notification.attempt >= self.max_attempts:
            logger.error(
                "Giving up on %s after %d attempts: %s", ref.uri, notification.attempt, outcome.describe()
            )
            return self._dead_letter(notification, consumer, DeadLetterRecord.from_outcome(notification, outcome))

        delay = self.backoff_delay(notification.attempt)
        logger.warning(
            "%s for %s (attempt %d/%d), redelivering in %ds: %s",
            outcome.overall.value,
            ref.uri,
            notification.attempt,
            self.max_attempts,
            delay,
            outcome.describe(),
        )
        consumer.release(notification, delay)
        return NotificationState.AWAITING_REDELIVERY

    def _dead_letter(self, notification: Notification, consumer: Consumer, entry: DeadLetterRecord) -> NotificationState:
        try:
            self.dead_letter.record(entry)
        except PipelineError as exc:
            # Without a dead-letter record the message must stay on the queue.
            logger.error("Dead-letter write failed for message %s: %s", notification.message_id, exc)
            return NotificationState.AWAITING_REDELIVERY
        consumer.ack(notification)
        return NotificationState.DEAD_LETTERED

    def _run_one(self, notification: Notification, consumer: Consumer) -> NotificationState:
        if self._halt.is_set():
            state = NotificationState.AWAITING_REDELIVERY
        else:
            try:
                state = self.handle(notification, consumer)
            except FatalPipelineError as exc:
                self._record_fatal(exc)
                state = NotificationState.AWAITING_REDELIVERY
            except PipelineError as exc:
                # Raised by the consumer: the acknowledgment did not happen.
                logger.warning("Acknowledging message %s failed: %s", notification.message_id, exc)
                state = NotificationState.AWAITING_REDELIVERY
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected error handling message %s", notification.message_id)
                state = self._give_up_or_wait(notification, consumer, exc)
        notification.state = state
        logger.debug("Message %s is %s", notification.message_id, state.value)
        self.stats.count(state)
        return state

    def _give_up_or_wait(self, notification: Notification, consumer: Consumer, exc: Exception) -> NotificationState:
        if notification.attempt < self.max_attempts:
            return NotificationState.AWAITING_REDELIVERY
        ref = notification.object_ref
        entry = DeadLetterRecord(
            container_id=ref.container_id if ref else None,
            key=ref.key if ref else None,
            reason=f"unexpected error after {notification.attempt} attempts: {exc!r}",
            attempt=notification.attempt,
            message_id=notification.message_id,
        )
        try:
            return self._dead_letter(notification, consumer, entry)
        except FatalPipelineError as fatal:
            self._record_fatal(fatal)
            return NotificationState.AWAITING_REDELIVERY
        except PipelineError as ack_exc:
            logger.warning("Acknowledging message %s failed: %s", notification.message_id, ack_exc)
            return NotificationState.AWAITING_REDELIVERY

    def _start_run(self) -> None:
        with self._fatal_lock:
            self._fatal = None
        self._halt.clear()
        self.stats = PipelineStats()

    def _record_fatal(self, exc: FatalPipelineError) -> None:
        with self._fatal_lock:
            if self._fatal is None:
                logger.critical("Halting: %s", exc)
                self._fatal = exc
        self._halt.set()

    # ------------------------------------------------------------------
    # Trigger shapes
    # ------------------------------------------------------------------

    def run_batch(self, notifications: Sequence[Notification], consumer: Consumer) -> List[NotificationState]:
        """Process one delivered batch (push trigger) under the concurrency bound."""
        if not notifications:
            return []
        self._start_run()
        self.stats.record_received(len(notifications))
        workers = min(self.max_concurrency, len(notifications))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resize-worker") as pool:
            states = list(pool.map(lambda n: self._run_one(n, consumer), notifications))
        if self._fatal is not None:
            raise self._fatal
        return states

    def run(self, consumer: Consumer, stop_event: Optional[Event] = None) -> PipelineStats:
        """
        Poll `consumer` until `stop_event` is set or a fatal error occurs.

        A pool slot is reserved before every receive so the loop never holds
        more messages than it has workers for. In-flight work always finishes
        before this returns.
        """
        stop_event = stop_event or Event()
        self._start_run()
        slots = BoundedSemaphore(self.max_concurrency)

        def _release_slot(_future) -> None:
            slots.release()

        logger.info(
            "Worker started: concurrency=%d batch_size=%d max_attempts=%d",
            self.max_concurrency,
            self.batch_size,
            self.max_attempts,
        )
        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="resize-worker") as pool:
            while not stop_event.is_set() and not self._halt.is_set():
                if not slots.acquire(timeout=1.0):
                    continue
                if self._halt.is_set():
                    slots.release()
                    break
                reserved = 1
                while reserved < self.batch_size and slots.acquire(blocking=False):
                    reserved += 1

                try:
                    notifications = consumer.receive(reserved)
                except FatalPipelineError as exc:
                    for _ in range(reserved):
                        slots.release()
                    self._record_fatal(exc)
                    break
                except Exception:
                    for _ in range(reserved):
                        slots.release()
                    raise
                self.stats.record_received(len(notifications))

                for index, notification in enumerate(notifications):
                    if index >= reserved:
                        slots.acquire()
                    future = pool.submit(self._run_one, notification, consumer)
                    future.add_done_callback(_release_slot)
                for _ in range(reserved - min(reserved, len(notifications))):
                    slots.release()

                if not notifications:
                    stop_event.wait(self.idle_sleep_seconds)
            logger.info("Receive loop stopped; waiting for in-flight work")

        logger.info(
            "Worker stopped: received=%d acknowledged=%d dead_lettered=%d awaiting_redelivery=%d",
            self.stats.received,
            self.stats.acknowledged,
            self.stats.dead_lettered,
            self.stats.awaiting_redelivery,
        )
        if self._fatal is not None:
            raise self._fatal
        return self.stats


def main() -> None:
    settings = config.get_settings()
    config.configure_logging(settings)
    if not settings.queue_url:
        raise SystemExit("QUEUE_URL is required for the queue worker")

    sqs = boto3.client("sqs", region_name=settings.aws_region)
    consumer = SqsConsumer(
        sqs,
        settings.queue_url,
        wait_time_seconds=settings.wait_time_seconds,
        visibility_timeout=settings.visibility_timeout,
    )
    orchestrator = PipelineOrchestrator.from_settings(
        settings, dead_letter=build_dead_letter_sink(settings, client=sqs)
    )

    stop = Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("Received signal %s; finishing in-flight work", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    try:
        orchestrator.run(consumer, stop)
    except FatalPipelineError as exc:
        logger.critical("Worker halted: %s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
