import pytest
from fastapi.testclient import TestClient

from insightledger.main import app, rate_limiter
from insightledger.store import store


@pytest.fixture(autouse=True)
def reset_state():
    store.reset()
    rate_limiter.reset()
    yield
    store.reset()
    rate_limiter.reset()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def register(client: TestClient, email: str = "tester@example.com", name: str = "Test User") -> dict:
    res = client.post("/api/auth/register", json={"email": email, "password": "Secret123!", "name": name})
    assert res.status_code == 201
    return res.json()


@pytest.fixture
def auth_headers(client: TestClient) -> dict[str, str]:
    token = register(client)["token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def expense_category(client: TestClient, auth_headers: dict[str, str]) -> dict:
    res = client.post(
        "/api/categories",
        json={"name": "Groceries", "type": "expense", "icon": "🛒", "color": "#FF5722"},
        headers=auth_headers,
    )
    assert res.status_code == 201
    return res.json()


@pytest.fixture
def income_category(client: TestClient, auth_headers: dict[str, str]) -> dict:
    res = client.post("/api/categories", json={"name": "Salary", "type": "income"}, headers=auth_headers)
    assert res.status_code == 201
    return res.json()
