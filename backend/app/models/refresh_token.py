"""RefreshToken model: one-time-use refresh tokens"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from app.database import Base
from app.utils.clock import utcnow


class RefreshToken(Base):
    """A persisted refresh token.

    Only the SHA-256 of the opaque token is stored. A token is usable while
    ``used_at`` and ``revoked_at`` are NULL and ``expires_at`` is in the future;
    a successful refresh stamps ``used_at`` and issues a replacement.
    """

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)

    def is_usable(self, now=None) -> bool:
        now = now or utcnow()
        return self.used_at is None and self.revoked_at is None and self.expires_at > now
