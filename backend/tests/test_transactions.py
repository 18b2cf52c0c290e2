from datetime import datetime, timedelta
from uuid import UUID, uuid4

from insightledger.main import persistence
from insightledger.schemas import TransactionCreate

from conftest import register


def _create(client, headers, category_id, amount, kind="expense", date=None, description="Item"):
    payload = {"categoryId": category_id, "type": kind, "amount": amount, "description": description}
    if date is not None:
        payload["date"] = date
    res = client.post("/api/transactions", json=payload, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def test_transaction_crud(client, auth_headers, expense_category) -> None:
    tx = _create(client, auth_headers, expense_category["id"], 42.5, description="  Weekly shop ")
    assert tx["amount"] == 42.5
    assert tx["description"] == "Weekly shop"
    assert tx["category"]["name"] == "Groceries"
    assert tx["category"]["icon"] == "🛒"

    fetched = client.get(f"/api/transactions/{tx['id']}", headers=auth_headers)
    assert fetched.status_code == 200
    assert fetched.json()["date"] == tx["date"]

    updated = client.put(
        f"/api/transactions/{tx['id']}",
        json={"categoryId": expense_category["id"], "type": "expense", "amount": 50, "description": "Bigger shop"},
        headers=auth_headers,
    )
    assert updated.status_code == 200
    assert updated.json()["amount"] == 50
    assert updated.json()["date"] == tx["date"]

    assert client.delete(f"/api/transactions/{tx['id']}", headers=auth_headers).json()["message"] == "Transaction deleted successfully"
    assert client.get(f"/api/transactions/{tx['id']}", headers=auth_headers).status_code == 404


def test_transaction_validation(client, auth_headers, expense_category) -> None:
    base = {"categoryId": expense_category["id"], "type": "expense", "description": "x"}
    assert client.post("/api/transactions", json={**base, "amount": 0}, headers=auth_headers).status_code == 422
    assert client.post("/api/transactions", json={**base, "amount": -3}, headers=auth_headers).status_code == 422
    assert client.post("/api/transactions", json={**base, "amount": 5, "description": "  "}, headers=auth_headers).status_code == 422
    assert client.post("/api/transactions", json={**base, "amount": 5, "type": "gift"}, headers=auth_headers).status_code == 422


def test_unknown_category_returns_404(client, auth_headers) -> None:
    res = client.post(
        "/api/transactions",
        json={"categoryId": str(uuid4()), "type": "expense", "amount": 5, "description": "x"},
        headers=auth_headers,
    )
    assert res.status_code == 404
    assert res.json()["detail"] == "Category not found"


def test_list_is_newest_first_and_filterable(client, auth_headers, expense_category, income_category) -> None:
    _create(client, auth_headers, expense_category["id"], 10, date="2026-01-05T10:00:00Z", description="old")
    _create(client, auth_headers, expense_category["id"], 20, date="2026-03-05T10:00:00Z", description="new")
    _create(client, auth_headers, income_category["id"], 1000, kind="income", date="2026-02-01T09:00:00Z", description="pay")

    rows = client.get("/api/transactions", headers=auth_headers).json()
    assert [row["description"] for row in rows] == ["new", "pay", "old"]

    expenses = client.get("/api/transactions", params={"type": "expense"}, headers=auth_headers).json()
    assert {row["description"] for row in expenses} == {"new", "old"}

    by_category = client.get("/api/transactions", params={"categoryId": income_category["id"]}, headers=auth_headers).json()
    assert [row["description"] for row in by_category] == ["pay"]

    windowed = client.get(
        "/api/transactions",
        params={"startDate": "2026-02-01T00:00:00Z", "endDate": "2026-02-28T23:59:59Z"},
        headers=auth_headers,
    ).json()
    assert [row["description"] for row in windowed] == ["pay"]


def test_list_is_capped_at_100(client, auth_headers, expense_category) -> None:
    user_id = UUID(expense_category["userId"])
    start = datetime(2025, 1, 1)
    for i in range(105):
        payload = TransactionCreate(
            categoryId=expense_category["id"], type="expense", amount=1, description=f"t{i}", date=start + timedelta(hours=i)
        )
        persistence.create_transaction(user_id, payload)
    rows = client.get("/api/transactions", headers=auth_headers).json()
    assert len(rows) == 100
    assert rows[0]["description"] == "t104"


def test_transactions_are_private(client, auth_headers, expense_category) -> None:
    tx = _create(client, auth_headers, expense_category["id"], 12)
    other_headers = {"Authorization": f"Bearer {register(client, email='eve@example.com')['token']}"}

    assert client.get("/api/transactions", headers=other_headers).json() == []
    assert client.get(f"/api/transactions/{tx['id']}", headers=other_headers).status_code == 404
    assert client.delete(f"/api/transactions/{tx['id']}", headers=other_headers).status_code == 404

    # another user's category cannot be referenced either
    res = client.post(
        "/api/transactions",
        json={"categoryId": expense_category["id"], "type": "expense", "amount": 5, "description": "x"},
        headers=other_headers,
    )
    assert res.status_code == 404


def test_deleted_category_leaves_transactions(client, auth_headers, expense_category) -> None:
    tx = _create(client, auth_headers, expense_category["id"], 12)
    client.delete(f"/api/categories/{expense_category['id']}", headers=auth_headers)
    fetched = client.get(f"/api/transactions/{tx['id']}", headers=auth_headers)
    assert fetched.status_code == 200
    assert fetched.json()["category"] is None


def test_amount_precision_is_bounded(client, auth_headers, expense_category) -> None:
    base = {"categoryId": expense_category["id"], "type": "expense", "description": "x"}
    too_big = client.post("/api/transactions", json={**base, "amount": "1E+20"}, headers=auth_headers)
    assert too_big.status_code == 422
    assert too_big.json()["error"]["details"][0]["field"] == "amount"

    too_precise = client.post("/api/transactions", json={**base, "amount": "10.005"}, headers=auth_headers)
    assert too_precise.status_code == 422

    assert client.post("/api/transactions", json={**base, "amount": 10.05}, headers=auth_headers).status_code == 201
    assert client.post("/api/transactions", json={**base, "amount": "10.10"}, headers=auth_headers).status_code == 201
