"""Consumer dispatcher: turns queued rows into handler calls.

Each lane cycles IDLE -> WAITING -> CLAIMING -> HANDLING -> (ACK | RETRY).
A lane wakes on a channel notification or after ``poll_interval`` seconds,
whichever comes first, then drains every eligible message before waiting
again. Delivery is at-least-once: a crash between a successful handler call
and the acknowledgement redelivers the message once its claim lease lapses.
"""
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.database import session_scope
from app.exceptions import DeliveryFailure
from app.messenger.handlers import HandlerRegistry
from app.messenger.notifier import NotificationChannel, PollingChannel
from app.messenger.serializer import SerializationError, decode
from app.messenger.store import QueueMessage, QueueStore
from app.middleware.monitoring import record_message_outcome
from app.utils.clock import utcnow
from app.utils.logger import logger

IDLE = "idle"
WAITING = "waiting"
CLAIMING = "claiming"
HANDLING = "handling"


class Worker:
    def __init__(
        self,
        session_factory: sessionmaker,
        registry: HandlerRegistry,
        store: Optional[QueueStore] = None,
        channel: Optional[NotificationChannel] = None,
        queues: Optional[Iterable[str]] = None,
        poll_interval: float = None,
        retry_delay: float = None,
        retry_multiplier: float = None,
        retry_max_delay: float = None,
        max_retries: int = None,
        failed_queue: str = None,
        storage_backoff_max: float = 60.0,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.channel = channel or PollingChannel()
        self.store = store or QueueStore(channel=self.channel)
        self.queues: List[str] = list(queues or settings.MESSENGER_QUEUES)
        self.poll_interval = poll_interval if poll_interval is not None else settings.MESSENGER_POLL_INTERVAL_SECONDS
        self.retry_delay = retry_delay if retry_delay is not None else settings.MESSENGER_RETRY_DELAY_SECONDS
        self.retry_multiplier = retry_multiplier if retry_multiplier is not None else settings.MESSENGER_RETRY_MULTIPLIER
        self.retry_max_delay = retry_max_delay if retry_max_delay is not None else settings.MESSENGER_RETRY_MAX_DELAY_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.MESSENGER_MAX_RETRIES
        self.failed_queue = failed_queue or settings.MESSENGER_FAILED_QUEUE
        self.storage_backoff_max = storage_backoff_max

        self.lane_state: Dict[str, str] = {queue: IDLE for queue in self.queues}
        self._wakeups: Dict[str, threading.Event] = {queue: threading.Event() for queue in self.queues}
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Synchronous processing
    # ------------------------------------------------------------------

    def run_once(self, queue_name: str, now: Optional[datetime] = None) -> int:
        """Drain a lane: claim and handle until nothing is eligible.

        Returns the number of messages acknowledged. Stops early, between
        messages, once :meth:`stop` has been called.
        """
        delivered = 0
        while not self._stop.is_set():
            outcome = self._process_next(queue_name, now)
            if outcome is None:
                break
            if outcome:
                delivered += 1
        self.lane_state[queue_name] = IDLE
        return delivered

    def _process_next(self, queue_name: str, now: Optional[datetime]) -> Optional[bool]:
        """Claim and handle one message: None if the lane is empty, else whether it was acked."""
        self.lane_state[queue_name] = CLAIMING
        with session_scope(self.session_factory) as db:
            message = self.store.claim_next(db, queue_name, now)
        if message is None:
            return None

        self.lane_state[queue_name] = HANDLING
        try:
            self._handle(message)
        except DeliveryFailure as failure:
            self._retry(message, failure, now)
            return False

        with session_scope(self.session_factory) as db:
            self.store.mark_delivered(db, message.id, now)
        record_message_outcome(queue_name, "delivered")
        logger.info(
            f"Delivered message {message.id}",
            extra={"message_id": message.id, "queue_name": queue_name, "message_type": message.type},
        )
        return True

    def _handle(self, message: QueueMessage) -> None:
        if message.decode_error is not None:
            raise DeliveryFailure(message.id, message.type, SerializationError(message.decode_error))
        handler = self.registry.resolve(message.type)
        if handler is None:
            raise DeliveryFailure(message.id, message.type, LookupError("no handler registered"))
        try:
            payload = decode(message.body, message.headers, self.registry.message_types)
            handler(payload)
        except Exception as exc:
            # Any handler error means "not delivered"; the message is retried.
            raise DeliveryFailure(message.id, message.type, exc) from exc

    def _retry(self, message: QueueMessage, failure: DeliveryFailure, now: Optional[datetime]) -> None:
        retry_count = message.retry_count + 1
        headers = dict(message.headers, retry_count=retry_count, last_error=str(failure.cause or failure))
        log_extra = {
            "message_id": message.id,
            "queue_name": message.queue_name,
            "message_type": message.type,
            "retry_count": retry_count,
            "error": str(failure.cause or failure),
        }

        if self.max_retries and retry_count > self.max_retries:
            headers["original_queue"] = message.queue_name
            with session_scope(self.session_factory) as db:
                self.store.release(db, message.id, 0, headers=headers, queue_name=self.failed_queue, now=now)
            record_message_outcome(message.queue_name, "dead_lettered")
            logger.error(
                f"Message {message.id} exhausted {self.max_retries} retries, moved to {self.failed_queue}",
                extra=log_extra,
            )
            return

        delay = self.retry_delay_for(retry_count)
        with session_scope(self.session_factory) as db:
            self.store.release(db, message.id, delay, headers=headers, now=now)
        record_message_outcome(message.queue_name, "retried")
        logger.warning(f"Handler failed for message {message.id}, retrying in {delay:.1f}s", extra=log_extra)

    def retry_delay_for(self, retry_count: int) -> float:
        delay = self.retry_delay * (self.retry_multiplier ** max(0, retry_count - 1))
        return min(delay, self.retry_max_delay)

    # ------------------------------------------------------------------
    # Background lanes
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._stop.clear()
        for queue_name in self.queues:
            self.channel.subscribe(queue_name, self._wakeups[queue_name])
        self.channel.start()

        for queue_name in self.queues:
            thread = threading.Thread(
                target=self._run_lane,
                args=(queue_name,),
                name=f"messenger-{queue_name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        logger.info(
            f"Messenger worker started for {', '.join(self.queues)}",
            extra={"action": "worker_start"},
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Stop all lanes. A handler already running is allowed to finish."""
        self._stop.set()
        for wakeup in self._wakeups.values():
            wakeup.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self.channel.stop()
        logger.info("Messenger worker stopped", extra={"action": "worker_stop"})

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def _run_lane(self, queue_name: str) -> None:
        wakeup = self._wakeups[queue_name]
        backoff = 0.0
        while not self._stop.is_set():
            try:
                self.run_once(queue_name)
                backoff = 0.0
            except Exception as exc:
                backoff = min(max(backoff * 2, self.poll_interval, 1.0), self.storage_backoff_max)
                self.lane_state[queue_name] = WAITING
                if isinstance(exc, SQLAlchemyError):
                    reason = "Queue storage unavailable"
                else:
                    reason = f"Lane {queue_name} failed unexpectedly"
                logger.error(
                    f"{reason}, backing off {backoff:.0f}s",
                    extra={"queue_name": queue_name, "error": str(exc)},
                    exc_info=not isinstance(exc, SQLAlchemyError),
                )
                self._stop.wait(backoff)
                continue

            self.lane_state[queue_name] = WAITING
            wakeup.wait(self.poll_interval)
            wakeup.clear()
        self.lane_state[queue_name] = IDLE
