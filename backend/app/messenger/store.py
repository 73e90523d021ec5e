"""Queue store: row lifecycle of ``messenger_messages``.

None of these methods commit. ``enqueue`` joins whatever unit of work the
caller has open (that is what makes the outbox atomic with the state change);
``claim_next``/``mark_delivered``/``release`` take effect when the caller
commits, normally through :func:`app.database.session_scope`.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from sqlalchemy import event, func
from sqlalchemy.orm import Session

from app.config import settings
from app.messenger.notifier import NotificationChannel
from app.messenger.serializer import SerializationError, decode_headers
from app.models.messenger_message import MessengerMessage
from app.utils.clock import utcnow
from app.utils.logger import logger

_PENDING_KEY = "messenger_pending_notifications"


@dataclass(frozen=True)
class QueueMessage:
    """Detached snapshot of a claimed row."""

    id: int
    queue_name: str
    body: str
    headers: Dict[str, Any]
    created_at: datetime
    available_at: datetime
    delivered_at: Optional[datetime]
    # Set when the stored headers could not be parsed; headers is then empty
    decode_error: Optional[str] = None

    @property
    def type(self) -> Optional[str]:
        return self.headers.get("type")

    @property
    def retry_count(self) -> int:
        return int(self.headers.get("retry_count", 0))


def _publish_pending(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    channel, lanes = pending
    for queue_name in lanes:
        channel.publish(queue_name)


def _discard_pending(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


class QueueStore:
    """Enqueue, claim, acknowledge and release queued messages."""

    def __init__(
        self,
        channel: Optional[NotificationChannel] = None,
        lease_seconds: int = None,
        max_claim_attempts: int = 5,
    ):
        self.channel = channel
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.MESSENGER_CLAIM_LEASE_SECONDS
        self.max_claim_attempts = max_claim_attempts

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        db: Session,
        queue_name: str,
        body: str,
        headers: Union[Dict[str, Any], str],
        available_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Insert a pending message and return its id.

        The notification for ``queue_name`` goes out after the surrounding
        transaction commits and is dropped if it rolls back.
        """
        now = now or utcnow()
        row = MessengerMessage(
            body=body,
            headers=headers if isinstance(headers, str) else json.dumps(headers),
            queue_name=queue_name,
            created_at=now,
            available_at=available_at or now,
        )
        db.add(row)
        db.flush()

        if self.channel is not None:
            self._notify_after_commit(db, queue_name)

        logger.debug(
            f"Enqueued message {row.id} on {queue_name}",
            extra={"message_id": row.id, "queue_name": queue_name, "action": "enqueue"},
        )
        return row.id

    def _notify_after_commit(self, db: Session, queue_name: str) -> None:
        pending = db.info.get(_PENDING_KEY)
        if pending is None:
            db.info[_PENDING_KEY] = (self.channel, {queue_name})
            if not event.contains(db, "after_commit", _publish_pending):
                event.listen(db, "after_commit", _publish_pending)
                event.listen(db, "after_rollback", _discard_pending)
        else:
            pending[1].add(queue_name)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def claim_next(self, db: Session, queue_name: str, now: Optional[datetime] = None) -> Optional[QueueMessage]:
        """Claim the oldest eligible message of a lane, or return None.

        The claim is a conditional update that moves ``available_at`` to
        ``now + lease``; only the caller whose update matched the row owns it.
        On PostgreSQL the candidate row is also locked with SKIP LOCKED so
        competing consumers pick different rows instead of queueing up.
        """
        now = now or utcnow()
        lease_until = now + timedelta(seconds=self.lease_seconds)
        use_row_locks = db.get_bind().dialect.name == "postgresql"

        for _ in range(self.max_claim_attempts):
            candidate = (
                db.query(MessengerMessage.id)
                .filter(
                    MessengerMessage.queue_name == queue_name,
                    MessengerMessage.delivered_at.is_(None),
                    MessengerMessage.available_at <= now,
                )
                .order_by(MessengerMessage.id.asc())
                .limit(1)
            )
            if use_row_locks:
                candidate = candidate.with_for_update(skip_locked=True)

            message_id = candidate.scalar()
            if message_id is None:
                return None

            claimed = (
                db.query(MessengerMessage)
                .filter(
                    MessengerMessage.id == message_id,
                    MessengerMessage.delivered_at.is_(None),
                    MessengerMessage.available_at <= now,
                )
                .update({MessengerMessage.available_at: lease_until}, synchronize_session=False)
            )
            if claimed == 1:
                row = db.get(MessengerMessage, message_id, populate_existing=True)
                try:
                    headers, decode_error = decode_headers(row.headers), None
                except SerializationError as exc:
                    headers, decode_error = {}, str(exc)
                return QueueMessage(
                    id=row.id,
                    queue_name=row.queue_name,
                    body=row.body,
                    headers=headers,
                    created_at=row.created_at,
                    available_at=row.available_at,
                    delivered_at=row.delivered_at,
                    decode_error=decode_error,
                )
            # Another consumer won this row; look at the next one.

        return None

    def mark_delivered(self, db: Session, message_id: int, now: Optional[datetime] = None) -> bool:
        """Acknowledge a message. Returns False if it was already delivered."""
        updated = (
            db.query(MessengerMessage)
            .filter(MessengerMessage.id == message_id, MessengerMessage.delivered_at.is_(None))
            .update({MessengerMessage.delivered_at: now or utcnow()}, synchronize_session=False)
        )
        return updated == 1

    def release(
        self,
        db: Session,
        message_id: int,
        delay_seconds: float = 0,
        headers: Optional[Dict[str, Any]] = None,
        queue_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Hand a claimed, undelivered message back for another attempt.

        ``queue_name`` moves it to another lane (dead-lettering).
        """
        values: Dict[Any, Any] = {
            MessengerMessage.available_at: (now or utcnow()) + timedelta(seconds=delay_seconds),
        }
        if headers is not None:
            values[MessengerMessage.headers] = json.dumps(headers)
        if queue_name is not None:
            values[MessengerMessage.queue_name] = queue_name

        updated = (
            db.query(MessengerMessage)
            .filter(MessengerMessage.id == message_id, MessengerMessage.delivered_at.is_(None))
            .update(values, synchronize_session=False)
        )
        if updated and queue_name is not None and self.channel is not None:
            self._notify_after_commit(db, queue_name)
        return updated == 1

    def count_pending(self, db: Session, queue_name: Optional[str] = None) -> Dict[str, int]:
        """Undelivered messages per lane (including delayed and in-flight ones)."""
        query = (
            db.query(MessengerMessage.queue_name, func.count(MessengerMessage.id))
            .filter(MessengerMessage.delivered_at.is_(None))
            .group_by(MessengerMessage.queue_name)
        )
        if queue_name is not None:
            query = query.filter(MessengerMessage.queue_name == queue_name)
        return {lane: count for lane, count in query.all()}
