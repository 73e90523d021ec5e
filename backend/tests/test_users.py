"""Tests for account lifecycle and export endpoints"""
import json

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.models.messenger_message import MessengerMessage
from app.repositories.users import UserRepository, iter_for_export


def test_soft_delete_blocks_login(client: TestClient, db: Session, auth_headers: dict, user_credentials: dict):
    response = client.delete("/api/users/me", headers=auth_headers)
    assert response.status_code == 204

    # The token of a deleted account no longer authenticates
    assert client.get("/api/auth/me", headers=auth_headers).status_code == 401

    response = client.post(
        "/api/auth/login",
        json={"email": user_credentials["email"], "password": user_credentials["password"]},
    )
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_credentials"

    rows = db.query(MessengerMessage).filter(MessengerMessage.queue_name == "user.updated").all()
    assert [json.loads(row.body)["change"] for row in rows] == ["deleted"]


def test_soft_deleted_email_stays_taken(client: TestClient, auth_headers: dict, user_credentials: dict):
    client.delete("/api/users/me", headers=auth_headers)

    response = client.post("/api/auth/register", json=user_credentials)
    assert response.status_code == 400
    assert response.json()["error"] == "duplicate_email"


def test_admin_restores_user(
    client: TestClient,
    registered_user: dict,
    auth_headers: dict,
    admin_headers: dict,
    user_credentials: dict,
):
    client.delete("/api/users/me", headers=auth_headers)

    response = client.post(f"/api/users/{registered_user['id']}/restore", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["is_active"] is True

    response = client.post(
        "/api/auth/login",
        json={"email": user_credentials["email"], "password": user_credentials["password"]},
    )
    assert response.status_code == 200


def test_restore_requires_admin(client: TestClient, registered_user: dict, auth_headers: dict):
    response = client.post(f"/api/users/{registered_user['id']}/restore", headers=auth_headers)
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


def test_restore_unknown_user(client: TestClient, admin_headers: dict):
    response = client.post("/api/users/9999/restore", headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["error"] == "user_not_found"


def test_export_streams_ndjson(client: TestClient, registered_user: dict, admin_headers: dict):
    response = client.get("/api/users/export", headers=admin_headers)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")

    rows = [json.loads(line) for line in response.text.splitlines() if line]
    assert [row["email"] for row in rows] == ["alice@example.com", "admin@example.com"]
    assert all("password" not in row for row in rows)


def test_export_requires_admin(client: TestClient, auth_headers: dict):
    response = client.get("/api/users/export", headers=auth_headers)
    assert response.status_code == 403


def test_iter_for_export_batches(db: Session, session_factory, service):
    for index in range(5):
        service.register(f"user{index}@example.com", "secret123")

    rows = list(iter_for_export(session_factory, batch_size=2))
    assert [row["email"] for row in rows] == [f"user{index}@example.com" for index in range(5)]
    assert rows[0]["roles"] == ["ROLE_USER"]


def test_email_exists_excludes_user(db: Session, service):
    user = service.register("dave@example.com", "secret123")
    users = UserRepository(db)

    assert users.email_exists("DAVE@example.com")
    assert not users.email_exists("dave@example.com", exclude_user_id=user.id)
