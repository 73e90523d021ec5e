"""Pytest configuration and fixtures"""
import os
from typing import Generator

# Must be set before app.config is imported
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["REVOCATION_BACKEND"] = "memory"
os.environ["MESSENGER_CONSUME_IN_PROCESS"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.api.deps import get_session_factory
from app.database import Base, get_db
from app.main import app
from app.messenger.bus import MessageBus
from app.messenger.notifier import LocalChannel
from app.messenger.store import QueueStore
from app.middleware.rate_limit import limiter
from app.models.user import User
from app.services.auth_service import AuthService
from app.utils.passwords import password_hasher
from app.utils.revocation import MemoryRevocationCache

TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def channel() -> LocalChannel:
    return LocalChannel()


@pytest.fixture
def store(channel: LocalChannel) -> QueueStore:
    return QueueStore(channel=channel)


@pytest.fixture
def bus(store: QueueStore) -> MessageBus:
    return MessageBus(store)


@pytest.fixture
def revocation_cache() -> MemoryRevocationCache:
    return MemoryRevocationCache()


@pytest.fixture(scope="function")
def client(
    db: Session,
    bus: MessageBus,
    revocation_cache: MemoryRevocationCache,
) -> Generator[TestClient, None, None]:
    """Create test client with database session and collaborator overrides"""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.state.message_bus = bus
    app.state.revocation_cache = revocation_cache
    limiter.reset()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def service(db: Session, bus: MessageBus, revocation_cache: MemoryRevocationCache) -> AuthService:
    return AuthService(db=db, bus=bus, revocation_cache=revocation_cache)


@pytest.fixture
def user_credentials() -> dict:
    return {"email": "alice@example.com", "password": "s3cret-pass", "name": "Alice"}


@pytest.fixture
def registered_user(client: TestClient, user_credentials: dict) -> dict:
    """Register a user through the API and return the response body"""
    response = client.post("/api/auth/register", json=user_credentials)
    assert response.status_code == 201
    return response.json()["user"]


@pytest.fixture
def tokens(client: TestClient, registered_user: dict, user_credentials: dict) -> dict:
    """Log the registered user in and return the token pair"""
    response = client.post(
        "/api/auth/login",
        json={"email": user_credentials["email"], "password": user_credentials["password"]},
    )
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def auth_headers(tokens: dict) -> dict:
    return {"Authorization": f"Bearer {tokens['token']}"}


@pytest.fixture
def admin_headers(client: TestClient, db: Session) -> dict:
    """Bearer headers for a user holding ROLE_ADMIN"""
    admin = User(email="admin@example.com", password=password_hasher.hash("admin-pass"), roles=["ROLE_ADMIN"])
    db.add(admin)
    db.commit()

    response = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    """Factory for extra sessions on the per-test database (consumers, exports)"""
    return TestingSessionLocal
