"""Message bus: routes a message onto its lane in the outbox"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.messenger.messages import Message
from app.messenger.serializer import encode
from app.messenger.store import QueueStore
from app.utils.clock import utcnow


class MessageBus:
    def __init__(self, store: QueueStore):
        self.store = store

    def dispatch(
        self,
        db: Session,
        message: Message,
        delay_seconds: float = 0,
        now: Optional[datetime] = None,
    ) -> int:
        """Write ``message`` to the outbox inside the caller's transaction.

        Nothing is delivered unless the caller commits.
        """
        now = now or utcnow()
        body, headers = encode(message)
        available_at = now + timedelta(seconds=delay_seconds) if delay_seconds else now
        return self.store.enqueue(db, message.QUEUE, body, headers, available_at=available_at, now=now)
