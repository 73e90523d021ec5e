"""Tests for the token revocation cache backends"""
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from app.models.revoked_token import RevokedToken
from app.utils.clock import utcnow
from app.utils.revocation import (
    DatabaseRevocationCache,
    MemoryRevocationCache,
    RedisRevocationCache,
    create_revocation_cache,
    fingerprint,
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of redis.Redis for SET ... EX / EXISTS"""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex
        return True

    def exists(self, key):
        return 1 if key in self.values else 0


def test_fingerprint_is_stable_and_prefixed():
    assert fingerprint("abc") == fingerprint("abc")
    assert fingerprint("abc") != fingerprint("abd")
    assert fingerprint("abc").startswith("jwt_blacklist_")
    assert "abc" not in fingerprint("abc")


def test_memory_cache_expires_entries():
    clock = FakeClock()
    cache = MemoryRevocationCache(clock=clock)

    cache.revoke("token-1", ttl=60)
    assert cache.is_revoked("token-1")
    assert not cache.is_revoked("token-2")

    clock.advance(59)
    assert cache.is_revoked("token-1")

    clock.advance(1)
    assert not cache.is_revoked("token-1")
    assert len(cache) == 0


def test_memory_cache_ignores_non_positive_ttl():
    cache = MemoryRevocationCache()
    cache.revoke("token-1", ttl=0)
    assert not cache.is_revoked("token-1")


def test_database_cache_round_trip(db: Session, session_factory):
    cache = DatabaseRevocationCache(session_factory)

    cache.revoke("token-1", ttl=300)
    cache.revoke("token-1", ttl=300)

    assert cache.is_revoked("token-1")
    assert not cache.is_revoked("token-2")
    assert db.query(RevokedToken).count() == 1


def test_database_cache_treats_expired_rows_as_absent(db: Session, session_factory):
    cache = DatabaseRevocationCache(session_factory)
    db.add(RevokedToken(
        token_key=fingerprint("old-token"),
        revoked_at=utcnow() - timedelta(hours=2),
        expires_at=utcnow() - timedelta(hours=1),
    ))
    db.commit()

    assert not cache.is_revoked("old-token")
    assert cache.purge_expired() == 1
    assert db.query(RevokedToken).count() == 0


def test_database_cache_revoke_prunes_expired_rows(db: Session, session_factory, monkeypatch):
    cache = DatabaseRevocationCache(session_factory)
    start = utcnow()

    monkeypatch.setattr("app.utils.revocation.utcnow", lambda: start)
    cache.revoke("token-1", ttl=60)

    monkeypatch.setattr("app.utils.revocation.utcnow", lambda: start + timedelta(seconds=61))
    cache.revoke("token-2", ttl=60)

    db.expire_all()
    assert [row.token_key for row in db.query(RevokedToken).all()] == [fingerprint("token-2")]
    assert not cache.is_revoked("token-1")
    assert cache.is_revoked("token-2")


def test_redis_cache_sets_key_with_ttl():
    client = FakeRedis()
    cache = RedisRevocationCache(client=client)

    cache.revoke("token-1", ttl=120)

    key = fingerprint("token-1")
    assert client.ttls[key] == 120
    assert cache.is_revoked("token-1")
    assert not cache.is_revoked("token-2")


def test_create_revocation_cache_selects_backend(session_factory):
    assert isinstance(create_revocation_cache("memory"), MemoryRevocationCache)
    assert isinstance(create_revocation_cache("database", session_factory), DatabaseRevocationCache)

    with pytest.raises(ValueError):
        create_revocation_cache("carrier-pigeon")
