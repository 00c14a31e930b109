"""Background consumer that moves queued buoy readings into the store."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Callable, Optional

from datastore.base import Store
from datastore.factory import build_default_store
from exceptions import MalformedMessageError
from messaging.decoding import decode_message
from messaging.redis_streams import MessageQueue, QueueMessage, build_default_queue
from models.records import Reading

logger = logging.getLogger(__name__)

MAX_MESSAGES = 10
WAIT_SECONDS = 10.0
INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0
BATCH_PAUSE_SECONDS = 0.1
ERROR_PAUSE_SECONDS = 1.0


class ConsumerState(str, Enum):
    """Lifecycle states of the polling loop."""

    stopped = "stopped"
    polling = "polling"
    draining = "draining"
    backing_off = "backing_off"
    error_paused = "error_paused"


@dataclass
class ConsumerStats:
    processed: int = 0
    failed: int = 0
    empty_polls: int = 0
    transport_errors: int = 0


def backoff_delay(
    empty_polls: int,
    initial: float = INITIAL_BACKOFF_SECONDS,
    multiplier: float = BACKOFF_MULTIPLIER,
    ceiling: float = MAX_BACKOFF_SECONDS,
) -> float:
    """Seconds to wait after ``empty_polls`` consecutive empty polls."""
    if empty_polls <= 1:
        return min(initial, ceiling)
    exponent = min(empty_polls - 1, 64)
    return min(initial * multiplier**exponent, ceiling)


class QueueConsumer:
    """Long-polls a queue, applies each message to the store and acks on success.

    ``poll_once`` performs exactly one cycle and returns how long to pause
    before the next one, so the loop can be driven without real sleeps.
    ``run`` waits on an event between cycles, which lets ``stop`` cut a pause
    short. A message's apply and ack always complete once started.
    """

    def __init__(
        self,
        queue: MessageQueue,
        store: Store,
        *,
        max_messages: int = MAX_MESSAGES,
        wait_seconds: float = WAIT_SECONDS,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        max_backoff: float = MAX_BACKOFF_SECONDS,
        backoff_multiplier: float = BACKOFF_MULTIPLIER,
        batch_pause: float = BATCH_PAUSE_SECONDS,
        error_pause: float = ERROR_PAUSE_SECONDS,
        decoder: Callable[[str], list[Reading]] = decode_message,
    ) -> None:
        self.queue = queue
        self.store = store
        self.max_messages = max_messages
        self.wait_seconds = wait_seconds
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self.batch_pause = batch_pause
        self.error_pause = error_pause
        self.decoder = decoder
        self.stats = ConsumerStats()
        self._state = ConsumerState.stopped
        self._empty_polls = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def consecutive_empty_polls(self) -> int:
        return self._empty_polls

    def poll_once(self) -> float:
        self._state = ConsumerState.polling
        try:
            messages = self.queue.receive(self.max_messages, self.wait_seconds)
        except Exception as exc:
            # Never let a transport fault end the loop; the backoff counter is left alone.
            self._state = ConsumerState.error_paused
            self.stats.transport_errors += 1
            logger.error(
                "Queue receive failed: %s",
                exc,
                extra={
                    "consumer_state": self._state.value,
                    "delay_ms": int(self.error_pause * 1000),
                },
            )
            return self.error_pause

        if not messages:
            self._empty_polls += 1
            self.stats.empty_polls += 1
            delay = backoff_delay(
                self._empty_polls,
                initial=self.initial_backoff,
                multiplier=self.backoff_multiplier,
                ceiling=self.max_backoff,
            )
            self._state = ConsumerState.backing_off
            logger.debug(
                "Queue empty, backing off",
                extra={"consumer_state": self._state.value, "delay_ms": int(delay * 1000)},
            )
            return delay

        self._state = ConsumerState.draining
        logger.info("Received messages", extra={"batch_size": len(messages)})
        for message in messages:
            self._handle_message(message)

        self._empty_polls = 0
        return self.batch_pause

    def run(self) -> None:
        logger.info("Queue consumer started")
        while not self._stop_event.is_set():
            delay = self.poll_once()
            if self._stop_event.wait(delay):
                break
        self._state = ConsumerState.stopped
        logger.info("Queue consumer stopped")

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop_event.clear()
        self._state = ConsumerState.polling
        self._thread = threading.Thread(target=self.run, name="queue-consumer", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _handle_message(self, message: QueueMessage) -> bool:
        context = {"message_id": message.message_id}
        try:
            readings = self.decoder(message.body)
        except MalformedMessageError as exc:
            self.stats.failed += 1
            logger.warning(
                "Skipping malformed message; left for redelivery",
                extra={**context, "reason": str(exc)},
            )
            return False
        except Exception as exc:
            self.stats.failed += 1
            logger.error(
                "Failed to decode message; left for redelivery",
                extra={**context, "reason": repr(exc)},
            )
            return False

        try:
            self.store.update(readings)
        except Exception as exc:
            self.stats.failed += 1
            logger.error(
                "Failed to apply message; left for redelivery",
                extra={**context, "reason": str(exc)},
            )
            return False

        try:
            self.queue.delete(message)
        except Exception as exc:
            # Already applied: a redelivery will store the readings twice.
            self.stats.failed += 1
            logger.error(
                "Failed to delete applied message",
                extra={**context, "reason": str(exc)},
            )
            return False

        self.stats.processed += 1
        if readings:
            logger.debug(
                "Applied message",
                extra={**context, "source_id": readings[0].source_id, "batch_size": len(readings)},
            )
        return True


@lru_cache
def build_default_consumer() -> QueueConsumer:
    """Factory that wires the consumer to the configured queue and store."""
    return QueueConsumer(queue=build_default_queue(), store=build_default_store())
