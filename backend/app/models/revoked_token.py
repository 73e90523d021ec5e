"""RevokedToken model: table backend for the logout blacklist"""
from sqlalchemy import Column, DateTime, Integer, String

from app.database import Base
from app.utils.clock import utcnow


class RevokedToken(Base):
    """Stores fingerprints of tokens revoked via logout.

    ``expires_at`` mirrors the token's own expiry: rows past it are ignored by
    lookups and can be pruned safely.
    """

    __tablename__ = "revoked_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_key = Column(String(100), unique=True, nullable=False, index=True)
    revoked_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
