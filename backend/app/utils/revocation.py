"""Revocation cache: the logout blacklist.

Entries are keyed by a fingerprint of the raw token and expire on their own
once the token would have expired anyway. Three interchangeable backends:
process memory (tests, single worker), the ``revoked_tokens`` table, and Redis.
"""
import hashlib
import threading
import time
from datetime import timedelta
from typing import Callable, Dict, Optional

import redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.database import SessionLocal
from app.models.revoked_token import RevokedToken
from app.utils.clock import utcnow

KEY_PREFIX = "jwt_blacklist_"


def fingerprint(token: str) -> str:
    """Deterministic cache key for a raw token string."""
    return KEY_PREFIX + hashlib.sha256(token.encode()).hexdigest()


class RevocationCache:
    def revoke(self, token: str, ttl: int) -> None:
        raise NotImplementedError

    def is_revoked(self, token: str) -> bool:
        raise NotImplementedError


class MemoryRevocationCache(RevocationCache):
    """Lock-protected dict of key -> expiry (monotonic seconds)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def revoke(self, token: str, ttl: int) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._entries[fingerprint(token)] = self._clock() + ttl
            self._purge()

    def is_revoked(self, token: str) -> bool:
        key = fingerprint(token)
        with self._lock:
            expires = self._entries.get(key)
            if expires is None:
                return False
            if expires <= self._clock():
                del self._entries[key]
                return False
            return True

    def _purge(self) -> None:
        now = self._clock()
        for key in [k for k, expires in self._entries.items() if expires <= now]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class DatabaseRevocationCache(RevocationCache):
    """Entries in ``revoked_tokens``; rows past ``expires_at`` count as absent.

    Uses its own short sessions so a logout is durable even if the request's
    session is later rolled back.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def revoke(self, token: str, ttl: int) -> None:
        if ttl <= 0:
            return
        now = utcnow()
        key = fingerprint(token)
        db: Session = self.session_factory()
        try:
            self._delete_expired(db, now)
            existing = db.query(RevokedToken).filter(RevokedToken.token_key == key).first()
            if existing:
                existing.expires_at = max(existing.expires_at, now + timedelta(seconds=ttl))
            else:
                db.add(RevokedToken(token_key=key, revoked_at=now, expires_at=now + timedelta(seconds=ttl)))
            db.commit()
        except IntegrityError:
            # Concurrent logout of the same token already inserted the row
            db.rollback()
        finally:
            db.close()

    def is_revoked(self, token: str) -> bool:
        db: Session = self.session_factory()
        try:
            row = (
                db.query(RevokedToken.id)
                .filter(RevokedToken.token_key == fingerprint(token), RevokedToken.expires_at > utcnow())
                .first()
            )
            return row is not None
        finally:
            db.close()

    def purge_expired(self) -> int:
        """Delete rows whose token has expired anyway.

        Every :meth:`revoke` already does this, so the table only holds live
        entries plus whatever expired since the last logout.
        """
        db: Session = self.session_factory()
        try:
            deleted = self._delete_expired(db, utcnow())
            db.commit()
            return deleted
        finally:
            db.close()

    @staticmethod
    def _delete_expired(db: Session, now) -> int:
        return db.query(RevokedToken).filter(RevokedToken.expires_at <= now).delete(synchronize_session=False)


class RedisRevocationCache(RevocationCache):
    """``SET key 1 EX ttl``; Redis drops the key when the TTL runs out."""

    def __init__(self, client=None, url: Optional[str] = None):
        if client is None:
            client = redis.Redis.from_url(url or settings.REDIS_URL)
        self.client = client

    def revoke(self, token: str, ttl: int) -> None:
        if ttl <= 0:
            return
        self.client.set(fingerprint(token), 1, ex=int(ttl))

    def is_revoked(self, token: str) -> bool:
        return bool(self.client.exists(fingerprint(token)))


def create_revocation_cache(backend: str = None, session_factory: Optional[sessionmaker] = None) -> RevocationCache:
    """Build the backend named by ``REVOCATION_BACKEND``."""
    backend = (backend or settings.REVOCATION_BACKEND).lower()
    if backend == "memory":
        return MemoryRevocationCache()
    if backend == "database":
        return DatabaseRevocationCache(session_factory or SessionLocal)
    if backend == "redis":
        return RedisRevocationCache()
    raise ValueError(f"Unknown REVOCATION_BACKEND: {backend!r}")


