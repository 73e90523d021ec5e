"""Transactional outbox: queue store, notification channels, consumer worker"""
from app.messenger.bus import MessageBus
from app.messenger.handlers import HandlerRegistry, default_registry
from app.messenger.messages import PasswordResetRequestedMessage, UserCreatedMessage, UserUpdatedMessage
from app.messenger.notifier import LocalChannel, NotificationChannel, PollingChannel, PostgresChannel, create_channel
from app.messenger.store import QueueMessage, QueueStore
from app.messenger.worker import Worker

__all__ = [
    "HandlerRegistry",
    "LocalChannel",
    "MessageBus",
    "NotificationChannel",
    "PasswordResetRequestedMessage",
    "PollingChannel",
    "PostgresChannel",
    "QueueMessage",
    "QueueStore",
    "UserCreatedMessage",
    "UserUpdatedMessage",
    "Worker",
    "create_channel",
    "default_registry",
]
