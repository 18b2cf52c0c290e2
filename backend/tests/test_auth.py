from datetime import timedelta
from uuid import UUID, uuid4

from insightledger.auth_utils import create_access_token, decode_access_token, verify_password
from insightledger.store import store

from conftest import register


def test_health_is_public(client) -> None:
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "message": "InsightLedger API is running"}


def test_register_login_and_me(client) -> None:
    body = register(client, email="Mixed.Case@Example.com")
    assert body["user"]["email"] == "mixed.case@example.com"
    assert body["user"]["role"] == "user"

    login = client.post("/api/auth/login", json={"email": "MIXED.case@example.com", "password": "Secret123!"})
    assert login.status_code == 200
    token = login.json()["token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["id"] == body["user"]["id"]
    assert me.json()["name"] == "Test User"


def test_duplicate_registration_returns_409(client) -> None:
    register(client)
    res = client.post("/api/auth/register", json={"email": "tester@example.com", "password": "Secret123!", "name": "Again"})
    assert res.status_code == 409
    assert res.json()["detail"] == "User already exists"


def test_register_validation(client) -> None:
    res = client.post("/api/auth/register", json={"email": "not-an-email", "password": "123", "name": " "})
    assert res.status_code == 422
    body = res.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    fields = {detail["field"] for detail in body["error"]["details"]}
    assert {"email", "password", "name"} <= fields


def test_login_with_wrong_password_returns_401(client) -> None:
    register(client)
    res = client.post("/api/auth/login", json={"email": "tester@example.com", "password": "wrong"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials"

    unknown = client.post("/api/auth/login", json={"email": "nobody@example.com", "password": "wrong"})
    assert unknown.status_code == 401


def test_protected_routes_require_token(client) -> None:
    assert client.get("/api/auth/me").json()["detail"] == "Authentication required"
    assert client.get("/api/categories").status_code == 401

    res = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid token"

    res = client.get("/api/auth/me", headers={"Authorization": "Token abc"})
    assert res.status_code == 401


def test_expired_token_is_rejected(client) -> None:
    user = register(client)["user"]
    token = create_access_token(user["id"], user["email"], user["role"], expires_delta=timedelta(seconds=-5))
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


def test_token_for_deleted_user_returns_401(client) -> None:
    token = create_access_token(uuid4(), "ghost@example.com", "user")
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


def test_token_claims_round_trip() -> None:
    user_id = uuid4()
    claims = decode_access_token(create_access_token(user_id, "a@b.co", "premium"))
    assert claims is not None
    assert claims.user_id == user_id
    assert claims.role == "premium"


def test_passwords_are_stored_as_bcrypt(client) -> None:
    user = register(client)["user"]
    stored = store.user_credentials[UUID(user["id"])]
    assert stored.startswith("$2b$10$")
    assert "Secret123!" not in stored
    assert verify_password("Secret123!", stored)
    assert not verify_password("Secret123?", stored)
    assert not verify_password("Secret123!", "not-a-bcrypt-hash")


def test_register_rejects_passwords_over_72_bytes(client) -> None:
    res = client.post("/api/auth/register", json={"email": "long@example.com", "password": "é" * 40, "name": "Long"})
    assert res.status_code == 422
    assert res.json()["error"]["details"][0]["field"] == "password"
