"""Tests for the outbox queue store"""
import threading
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.database import session_scope
from app.messenger.bus import MessageBus
from app.messenger.messages import UserCreatedMessage
from app.messenger.notifier import LocalChannel
from app.messenger.store import QueueStore
from app.models.messenger_message import MessengerMessage
from app.models.user import User
from app.utils.clock import utcnow


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)


def test_enqueue_then_claim(db: Session, store: QueueStore, now):
    message_id = store.enqueue(db, "user.created", '{"user_id": 1}', {"type": "UserCreatedMessage"}, now=now)
    db.commit()

    message = store.claim_next(db, "user.created", now=now)
    db.commit()

    assert message is not None
    assert message.id == message_id
    assert message.type == "UserCreatedMessage"
    assert message.retry_count == 0
    assert message.body == '{"user_id": 1}'


def test_claim_respects_queue_name(db: Session, store: QueueStore, now):
    store.enqueue(db, "user.created", "{}", {"type": "UserCreatedMessage"}, now=now)
    db.commit()

    assert store.claim_next(db, "user.updated", now=now) is None


def test_claim_is_fifo(db: Session, store: QueueStore, now):
    first = store.enqueue(db, "user.created", "{}", {}, now=now)
    second = store.enqueue(db, "user.created", "{}", {}, now=now)
    db.commit()

    assert store.claim_next(db, "user.created", now=now).id == first
    assert store.claim_next(db, "user.created", now=now).id == second


def test_delayed_message_not_visible_early(db: Session, store: QueueStore, now):
    """Test that a message becomes claimable only once available_at has passed"""
    store.enqueue(db, "user.created", "{}", {}, available_at=now + timedelta(seconds=10), now=now)
    db.commit()

    assert store.claim_next(db, "user.created", now=now) is None
    assert store.claim_next(db, "user.created", now=now + timedelta(seconds=9)) is None
    assert store.claim_next(db, "user.created", now=now + timedelta(seconds=11)) is not None


def test_claimed_message_invisible_to_other_consumers(db: Session, store: QueueStore, session_factory, now):
    """Test that a claim from one session hides the row from another until the lease lapses"""
    store.enqueue(db, "user.created", "{}", {}, now=now)
    db.commit()

    first = session_factory()
    second = session_factory()
    try:
        claimed = store.claim_next(first, "user.created", now=now)
        first.commit()
        assert claimed is not None

        assert store.claim_next(second, "user.created", now=now) is None
        second.commit()

        # Lease expired without an acknowledgement: redelivered
        later = now + timedelta(seconds=store.lease_seconds + 1)
        reclaimed = store.claim_next(second, "user.created", now=later)
        second.commit()
        assert reclaimed is not None
        assert reclaimed.id == claimed.id
    finally:
        first.close()
        second.close()


def test_two_consumers_get_different_messages(db: Session, store: QueueStore, session_factory, now):
    store.enqueue(db, "user.created", "{}", {}, now=now)
    store.enqueue(db, "user.created", "{}", {}, now=now)
    db.commit()

    first = session_factory()
    second = session_factory()
    try:
        a = store.claim_next(first, "user.created", now=now)
        first.commit()
        b = store.claim_next(second, "user.created", now=now)
        second.commit()
    finally:
        first.close()
        second.close()

    assert a is not None and b is not None
    assert a.id != b.id


def test_concurrent_consumers_never_claim_the_same_message(db: Session, store: QueueStore, session_factory, now):
    expected = {store.enqueue(db, "user.created", "{}", {}, now=now) for _ in range(40)}
    db.commit()

    claimed = []
    errors = []
    lock = threading.Lock()
    start = threading.Barrier(8)

    def consume():
        try:
            start.wait()
            while True:
                with session_scope(session_factory) as session:
                    message = store.claim_next(session, "user.created", now=now)
                if message is None:
                    return
                with lock:
                    claimed.append(message.id)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=consume) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(claimed) == len(set(claimed))
    assert set(claimed) == expected


def test_mark_delivered_is_idempotent(db: Session, store: QueueStore, now):
    message_id = store.enqueue(db, "user.created", "{}", {}, now=now)
    db.commit()
    store.claim_next(db, "user.created", now=now)

    assert store.mark_delivered(db, message_id, now=now) is True
    assert store.mark_delivered(db, message_id, now=now) is False
    db.commit()

    row = db.get(MessengerMessage, message_id)
    db.refresh(row)
    assert row.delivered_at == now
    # Delivered messages are never claimed again
    assert store.claim_next(db, "user.created", now=now + timedelta(days=1)) is None


def test_release_with_delay(db: Session, store: QueueStore, now):
    message_id = store.enqueue(db, "user.created", "{}", {"type": "UserCreatedMessage"}, now=now)
    db.commit()
    message = store.claim_next(db, "user.created", now=now)

    released = store.release(db, message.id, 5, headers=dict(message.headers, retry_count=1), now=now)
    db.commit()
    assert released is True

    assert store.claim_next(db, "user.created", now=now + timedelta(seconds=4)) is None
    retried = store.claim_next(db, "user.created", now=now + timedelta(seconds=5))
    assert retried.id == message_id
    assert retried.retry_count == 1


def test_release_to_other_queue(db: Session, store: QueueStore, now):
    message_id = store.enqueue(db, "user.created", "{}", {}, now=now)
    db.commit()
    store.claim_next(db, "user.created", now=now)

    store.release(db, message_id, 0, queue_name="failed", now=now)
    db.commit()

    assert store.claim_next(db, "user.created", now=now) is None
    assert store.count_pending(db) == {"failed": 1}


def test_count_pending(db: Session, store: QueueStore, now):
    delivered = store.enqueue(db, "user.created", "{}", {}, now=now)
    store.enqueue(db, "user.created", "{}", {}, now=now)
    store.enqueue(db, "user.updated", "{}", {}, now=now)
    store.mark_delivered(db, delivered, now=now)
    db.commit()

    assert store.count_pending(db) == {"user.created": 1, "user.updated": 1}
    assert store.count_pending(db, "user.updated") == {"user.updated": 1}


# ---------------------------------------------------------------------------
# Outbox atomicity and notifications
# ---------------------------------------------------------------------------

def test_rollback_discards_message_and_state(db: Session, bus: MessageBus):
    """Test that a rolled-back unit of work leaves neither the user nor the message"""
    user = User(email="rollback@example.com", password="x")
    db.add(user)
    db.flush()
    bus.dispatch(db, UserCreatedMessage(user_id=user.id, email=user.email))
    db.rollback()

    assert db.query(User).count() == 0
    assert db.query(MessengerMessage).count() == 0


def test_notification_sent_after_commit(db: Session):
    channel = LocalChannel()
    wakeup = threading.Event()
    channel.subscribe("user.created", wakeup)
    store = QueueStore(channel=channel)

    store.enqueue(db, "user.created", "{}", {})
    assert not wakeup.is_set()

    db.commit()
    assert wakeup.is_set()


def test_notification_dropped_on_rollback(db: Session):
    channel = LocalChannel()
    wakeup = threading.Event()
    channel.subscribe("user.created", wakeup)
    store = QueueStore(channel=channel)

    store.enqueue(db, "user.created", "{}", {})
    db.rollback()
    db.commit()

    assert not wakeup.is_set()


def test_bus_routes_by_message_queue(db: Session, bus: MessageBus, now):
    message_id = bus.dispatch(db, UserCreatedMessage(user_id=7, email="x@example.com"), delay_seconds=30, now=now)
    db.commit()

    row = db.get(MessengerMessage, message_id)
    assert row.queue_name == "user.created"
    assert row.available_at == now + timedelta(seconds=30)
    assert row.created_at == now
