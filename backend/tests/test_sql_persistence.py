from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi import HTTPException

from insightledger.persistence import SqlPersistence, ensure_demo_user
from insightledger.schemas import BudgetCreate, BudgetPeriod, CategoryCreate, TransactionCreate


@pytest.fixture
def db(tmp_path) -> SqlPersistence:
    return SqlPersistence(f"sqlite:///{tmp_path / 'insightledger.db'}")


@pytest.fixture
def user(db: SqlPersistence) -> dict:
    return db.register_user("owner@example.com", "Secret123!", "Owner")


def _tx(db, user_id, category_id, amount, date, kind="expense", description="item"):
    payload = TransactionCreate(categoryId=category_id, type=kind, amount=amount, description=description, date=date)
    return db.create_transaction(user_id, payload)


def test_users_round_trip(db: SqlPersistence, user: dict) -> None:
    assert db.authenticate_user("OWNER@example.com", "Secret123!")["id"] == user["id"]
    assert db.authenticate_user("owner@example.com", "nope") is None
    assert db.get_user_by_id(user["id"])["name"] == "Owner"
    assert "password_hash" not in db.get_user_by_email("owner@example.com")

    with pytest.raises(HTTPException) as exc:
        db.register_user("owner@example.com", "Secret123!", "Again")
    assert exc.value.status_code == 409


def test_demo_user_is_created_once(db: SqlPersistence) -> None:
    assert ensure_demo_user(db) is True
    assert ensure_demo_user(db) is False


def test_categories(db: SqlPersistence, user: dict) -> None:
    food = db.create_category(user["id"], CategoryCreate(name="Food", type="expense"))
    db.create_category(user["id"], CategoryCreate(name="Bonus", type="income", icon="🎁"))
    assert food["icon"] == "💰"

    assert [row["name"] for row in db.list_categories(user["id"])] == ["Bonus", "Food"]
    assert [row["name"] for row in db.list_categories(user["id"], "income")] == ["Bonus"]

    with pytest.raises(HTTPException) as exc:
        db.create_category(user["id"], CategoryCreate(name="Food", type="expense"))
    assert exc.value.status_code == 409

    updated = db.update_category(user["id"], food["id"], CategoryCreate(name="Meals", type="expense", color="#000000"))
    assert updated["name"] == "Meals"
    assert updated["icon"] == "💰"
    assert db.get_category(user["id"], food["id"])["color"] == "#000000"

    with pytest.raises(HTTPException) as exc:
        db.get_category(uuid4(), food["id"])
    assert exc.value.status_code == 404


def test_transactions_and_aggregates(db: SqlPersistence, user: dict) -> None:
    uid = user["id"]
    food = db.create_category(uid, CategoryCreate(name="Food", type="expense"))
    rent = db.create_category(uid, CategoryCreate(name="Rent", type="expense"))
    salary = db.create_category(uid, CategoryCreate(name="Salary", type="income"))

    _tx(db, uid, food["id"], 20, datetime(2026, 3, 2))
    _tx(db, uid, food["id"], 15, datetime(2026, 3, 9))
    _tx(db, uid, rent["id"], 700, datetime(2026, 3, 1))
    _tx(db, uid, salary["id"], 2000, datetime(2026, 3, 1), kind="income")
    _tx(db, uid, food["id"], 40, datetime(2026, 2, 20))

    rows = db.list_transactions(uid)
    assert rows[0]["date"] == datetime(2026, 3, 9)
    assert rows[0]["category"]["name"] == "Food"
    assert len(db.list_transactions(uid, limit=2)) == 2
    assert len(db.list_transactions(uid, tx_type="income")) == 1
    assert len(db.list_transactions(uid, start=datetime(2026, 3, 1), end=datetime(2026, 3, 31))) == 4

    march = (datetime(2026, 3, 1), datetime(2026, 3, 31, 23, 59, 59))
    assert db.sum_transactions(uid, "expense", *march) == (Decimal("735"), 3)
    assert db.sum_transactions(uid, "expense", *march, category_id=food["id"]) == (Decimal("35"), 2)
    assert db.count_transactions(uid, *march) == 4

    spending = db.spending_by_category(uid, *march)
    assert [(row["category"]["name"], row["total"], row["count"]) for row in spending] == [
        ("Rent", Decimal("700"), 1),
        ("Food", Decimal("35"), 2),
    ]
    assert len(db.spending_by_category(uid, *march, limit=1)) == 1

    db.delete_category(uid, rent["id"])
    assert [row["category"]["name"] for row in db.spending_by_category(uid, *march)] == ["Food"]
    orphaned = db.spending_by_category(uid, *march, include_uncategorized=True)
    assert orphaned[0]["category"] is None

    monthly = db.monthly_totals(uid, datetime(2026, 1, 1))
    assert {(row["month"], row["type"], row["total"]) for row in monthly} == {
        (2, "expense", Decimal("40")),
        (3, "expense", Decimal("735")),
        (3, "income", Decimal("2000")),
    }


def test_transaction_update_keeps_date(db: SqlPersistence, user: dict) -> None:
    food = db.create_category(user["id"], CategoryCreate(name="Food", type="expense"))
    tx = _tx(db, user["id"], food["id"], 10, datetime(2026, 1, 5))
    updated = db.update_transaction(
        user["id"], tx["id"], TransactionCreate(categoryId=food["id"], type="expense", amount=12, description="more")
    )
    assert updated["date"] == datetime(2026, 1, 5)
    assert updated["amount"] == Decimal("12")

    db.delete_transaction(user["id"], tx["id"])
    with pytest.raises(HTTPException) as exc:
        db.get_transaction(user["id"], tx["id"])
    assert exc.value.status_code == 404


def test_budgets(db: SqlPersistence, user: dict) -> None:
    food = db.create_category(user["id"], CategoryCreate(name="Food", type="expense"))
    payload = BudgetCreate(
        categoryId=food["id"],
        amount=300,
        period="monthly",
        startDate=datetime(2026, 3, 1),
        endDate=datetime(2026, 3, 31, 23, 59, 59),
    )
    budget = db.create_budget(user["id"], payload)
    assert budget["category"]["name"] == "Food"

    assert len(db.list_budgets(user["id"], active_at=datetime(2026, 3, 15))) == 1
    assert db.list_budgets(user["id"], active_at=datetime(2026, 4, 2)) == []
    assert db.list_budgets(user["id"], period="weekly") == []

    updated = db.update_budget(user["id"], budget["id"], payload.model_copy(update={"period": BudgetPeriod.yearly}))
    assert updated["period"] == "yearly"

    db.delete_budget(user["id"], budget["id"])
    with pytest.raises(HTTPException):
        db.get_budget(user["id"], budget["id"])
