"""Notification channels: best-effort wake-ups for queue consumers.

A channel only shortens the time between an insert and a consumer noticing
it. Consumers poll on a timer regardless, so a lost notification costs latency,
never a message.
"""
import select
import threading
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.utils.logger import logger


class NotificationChannel:
    """Fan a lane name out to the wake-up events subscribed to it."""

    def __init__(self):
        self._subscribers: Dict[str, List[threading.Event]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, queue_name: str, wakeup: threading.Event) -> None:
        with self._lock:
            self._subscribers[queue_name].append(wakeup)

    def publish(self, queue_name: str) -> None:
        raise NotImplementedError

    def start(self) -> None:
        """Begin receiving notifications (no-op for in-process channels)."""

    def stop(self) -> None:
        """Stop receiving notifications."""

    def _wake(self, queue_name: str) -> None:
        with self._lock:
            events = list(self._subscribers.get(queue_name, ()))
        for wakeup in events:
            wakeup.set()


class PollingChannel(NotificationChannel):
    """No push at all: consumers rely on their poll timer."""

    def publish(self, queue_name: str) -> None:
        return None


class LocalChannel(NotificationChannel):
    """In-process wake-ups, for single-process deployments and SQLite."""

    def publish(self, queue_name: str) -> None:
        self._wake(queue_name)


class PostgresChannel(NotificationChannel):
    """LISTEN on the channel the ``messenger_messages`` trigger NOTIFYs.

    ``publish`` does nothing: the AFTER INSERT trigger emits the notification
    inside the producing transaction, so it is only delivered on commit.
    The listener runs on its own connection, detached from the pool, and
    reconnects with backoff when that connection drops.
    """

    def __init__(
        self,
        engine: Engine,
        channel_name: str = None,
        select_timeout: float = 1.0,
        max_backoff: float = 30.0,
    ):
        super().__init__()
        self.engine = engine
        self.channel_name = channel_name or settings.MESSENGER_NOTIFY_CHANNEL
        self.select_timeout = select_timeout
        self.max_backoff = max_backoff
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def publish(self, queue_name: str) -> None:
        return None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="messenger-listen", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.select_timeout * 2)
            self._thread = None

    def _run(self) -> None:
        import psycopg2

        backoff = 1.0
        while not self._stop.is_set():
            try:
                self._listen()
                backoff = 1.0
            except (psycopg2.Error, SQLAlchemyError, OSError) as exc:
                logger.warning(
                    f"Notification listener lost its connection, retrying in {backoff:.0f}s",
                    extra={"action": "listen", "error": str(exc)},
                )
                self._stop.wait(backoff)
                backoff = min(backoff * 2, self.max_backoff)

    def _listen(self) -> None:
        raw = self.engine.raw_connection()
        raw.detach()
        conn = raw.driver_connection
        try:
            conn.autocommit = True
            with conn.cursor() as cursor:
                cursor.execute(f'LISTEN "{self.channel_name}"')
            logger.info(f"Listening for queue notifications on {self.channel_name}", extra={"action": "listen"})

            while not self._stop.is_set():
                readable, _, _ = select.select([conn], [], [], self.select_timeout)
                if not readable:
                    continue
                conn.poll()
                while conn.notifies:
                    notification = conn.notifies.pop(0)
                    self._wake(notification.payload)
        finally:
            raw.close()


def create_channel(engine: Engine, mode: str = None) -> NotificationChannel:
    """Build the channel named by ``MESSENGER_NOTIFIER``.

    ``auto`` picks LISTEN/NOTIFY on PostgreSQL and in-process wake-ups
    everywhere else.
    """
    mode = (mode or settings.MESSENGER_NOTIFIER).lower()
    if mode == "auto":
        mode = "postgres" if engine.dialect.name == "postgresql" else "local"

    if mode == "postgres":
        return PostgresChannel(engine)
    if mode == "local":
        return LocalChannel()
    if mode == "polling":
        return PollingChannel()
    raise ValueError(f"Unknown MESSENGER_NOTIFIER: {mode!r}")
