"""Domain event payloads carried through the outbox"""
from datetime import datetime
from typing import ClassVar, Dict, Type

from pydantic import BaseModel


class Message(BaseModel):
    """Base for queued messages; ``QUEUE`` is the lane the bus routes it to."""

    QUEUE: ClassVar[str] = "default"


class UserCreatedMessage(Message):
    QUEUE: ClassVar[str] = "user.created"

    user_id: int
    email: str


class UserUpdatedMessage(Message):
    QUEUE: ClassVar[str] = "user.updated"

    user_id: int
    email: str
    change: str  # verified | password_reset | deleted | restored


class PasswordResetRequestedMessage(Message):
    """Carries the one-time reset token to whatever sends the mail."""

    QUEUE: ClassVar[str] = "user.password_reset"

    user_id: int
    email: str
    token: str
    expires_at: datetime


MESSAGE_TYPES: Dict[str, Type[Message]] = {
    cls.__name__: cls for cls in (UserCreatedMessage, UserUpdatedMessage, PasswordResetRequestedMessage)
}
