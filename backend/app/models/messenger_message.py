"""MessengerMessage model: the transactional outbox / queue table"""
from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text

from app.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


class MessengerMessage(Base):
    """A queued message.

    Claimable while ``delivered_at IS NULL AND available_at <= now``. Claiming
    pushes ``available_at`` forward by the claim lease, so a consumer that dies
    mid-handling only delays the message. ``delivered_at`` is written once, on
    acknowledgement; rows are never deleted here.
    """

    __tablename__ = "messenger_messages"

    id = Column(_ID_TYPE, primary_key=True, autoincrement=True)
    body = Column(Text, nullable=False)
    headers = Column(Text, nullable=False)
    queue_name = Column(String(190), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)
    available_at = Column(DateTime, nullable=False, index=True)
    delivered_at = Column(DateTime, nullable=True, index=True)
