from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from fastapi import HTTPException
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    Uuid,
    and_,
    create_engine,
    delete,
    extract,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .auth_utils import hash_password, verify_password
from .config import settings
from .schemas import BudgetCreate, CategoryCreate, TransactionCreate, UserRole
from .store import store

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_ICON = "💰"
DEFAULT_CATEGORY_COLOR = "#4CAF50"
TRANSACTION_LIST_LIMIT = 100


def _in_window(moment: datetime, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and moment < start:
        return False
    if end is not None and moment > end:
        return False
    return True


def _rows(table: dict[UUID, dict]) -> list[dict[str, Any]]:
    # Reads run on worker threads while writers mutate the store; iterate a copy.
    return list(table.values())


def _category_summary(row: dict[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {"id": row["id"], "name": row["name"], "type": row["type"], "icon": row["icon"], "color": row["color"]}


class Persistence:
    def register_user(self, email: str, password: str, name: str, role: str = UserRole.user.value) -> dict[str, Any]:
        raise NotImplementedError

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def create_category(self, user_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        raise NotImplementedError

    def list_categories(self, user_id: UUID, category_type: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get_category(self, user_id: UUID, category_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def update_category(self, user_id: UUID, category_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_category(self, user_id: UUID, category_id: UUID) -> None:
        raise NotImplementedError

    def create_transaction(self, user_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        raise NotImplementedError

    def list_transactions(
        self,
        user_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        tx_type: str | None = None,
        category_id: UUID | None = None,
        limit: int = TRANSACTION_LIST_LIMIT,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get_transaction(self, user_id: UUID, transaction_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def update_transaction(self, user_id: UUID, transaction_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_transaction(self, user_id: UUID, transaction_id: UUID) -> None:
        raise NotImplementedError

    def create_budget(self, user_id: UUID, payload: BudgetCreate) -> dict[str, Any]:
        raise NotImplementedError

    def list_budgets(self, user_id: UUID, period: str | None = None, active_at: datetime | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get_budget(self, user_id: UUID, budget_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def update_budget(self, user_id: UUID, budget_id: UUID, payload: BudgetCreate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_budget(self, user_id: UUID, budget_id: UUID) -> None:
        raise NotImplementedError

    def sum_transactions(
        self,
        user_id: UUID,
        tx_type: str,
        start: datetime | None = None,
        end: datetime | None = None,
        category_id: UUID | None = None,
    ) -> tuple[Decimal, int]:
        """Total amount and row count of one transaction type inside an inclusive window."""
        raise NotImplementedError

    def count_transactions(self, user_id: UUID, start: datetime | None = None, end: datetime | None = None) -> int:
        raise NotImplementedError

    def spending_by_category(
        self,
        user_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        include_uncategorized: bool = False,
    ) -> list[dict[str, Any]]:
        """Expense totals grouped by category, largest first.

        Each row has ``category_id``, ``category`` (summary dict, or None when the
        category no longer exists), ``total`` and ``count``. Rows without a live
        category are dropped unless ``include_uncategorized`` is set.
        """
        raise NotImplementedError

    def monthly_totals(self, user_id: UUID, since: datetime) -> list[dict[str, Any]]:
        """Per (year, month, type) totals for transactions dated on or after ``since``, oldest month first."""
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    @staticmethod
    def _owned(rows: dict[UUID, dict], entity_id: UUID, user_id: UUID, label: str) -> dict[str, Any]:
        row = rows.get(entity_id)
        if not row or row["user_id"] != user_id:
            raise HTTPException(status_code=404, detail=f"{label} not found")
        return row

    def _category_for(self, user_id: UUID, category_id: UUID) -> dict[str, Any] | None:
        row = store.categories.get(category_id)
        if row is None or row["user_id"] != user_id:
            return None
        return row

    def _with_category(self, row: dict[str, Any]) -> dict[str, Any]:
        return {**row, "category": _category_summary(self._category_for(row["user_id"], row["category_id"]))}

    def _name_taken(self, user_id: UUID, name: str, exclude_id: UUID | None = None) -> bool:
        for row in _rows(store.categories):
            if row["user_id"] == user_id and row["name"] == name and row["id"] != exclude_id:
                return True
        return False

    def register_user(self, email: str, password: str, name: str, role: str = UserRole.user.value) -> dict[str, Any]:
        if self.get_user_by_email(email) is not None:
            raise HTTPException(status_code=409, detail="User already exists")
        now = store.now()
        user_id = store.make_id()
        row = {"id": user_id, "email": email, "name": name, "role": role, "created_at": now, "updated_at": now}
        store.users[user_id] = row
        store.user_credentials[user_id] = hash_password(password)
        return row

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        row = self.get_user_by_email(email)
        if row is None:
            return None
        stored_hash = store.user_credentials.get(row["id"])
        if stored_hash and verify_password(password, stored_hash):
            return row
        return None

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        return store.users.get(user_id)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        for row in _rows(store.users):
            if row["email"] == email.lower():
                return row
        return None

    def create_category(self, user_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        if self._name_taken(user_id, payload.name):
            raise HTTPException(status_code=409, detail="Category with this name already exists")
        now = store.now()
        category_id = store.make_id()
        row = {
            "id": category_id,
            "user_id": user_id,
            "name": payload.name,
            "type": payload.type.value,
            "icon": payload.icon or DEFAULT_CATEGORY_ICON,
            "color": payload.color or DEFAULT_CATEGORY_COLOR,
            "created_at": now,
            "updated_at": now,
        }
        store.categories[category_id] = row
        return row

    def list_categories(self, user_id: UUID, category_type: str | None = None) -> list[dict[str, Any]]:
        rows = [
            row
            for row in _rows(store.categories)
            if row["user_id"] == user_id and (category_type is None or row["type"] == category_type)
        ]
        return sorted(rows, key=lambda row: row["name"])

    def get_category(self, user_id: UUID, category_id: UUID) -> dict[str, Any]:
        return self._owned(store.categories, category_id, user_id, "Category")

    def update_category(self, user_id: UUID, category_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        row = self._owned(store.categories, category_id, user_id, "Category")
        if self._name_taken(user_id, payload.name, exclude_id=category_id):
            raise HTTPException(status_code=409, detail="Category with this name already exists")
        row["name"] = payload.name
        row["type"] = payload.type.value
        if payload.icon is not None:
            row["icon"] = payload.icon
        if payload.color is not None:
            row["color"] = payload.color
        row["updated_at"] = store.now()
        return row

    def delete_category(self, user_id: UUID, category_id: UUID) -> None:
        self._owned(store.categories, category_id, user_id, "Category")
        del store.categories[category_id]

    def create_transaction(self, user_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        self._owned(store.categories, payload.categoryId, user_id, "Category")
        now = store.now()
        transaction_id = store.make_id()
        row = {
            "id": transaction_id,
            "user_id": user_id,
            "category_id": payload.categoryId,
            "type": payload.type.value,
            "amount": payload.amount,
            "description": payload.description,
            "date": payload.date or now,
            "created_at": now,
            "updated_at": now,
        }
        store.transactions[transaction_id] = row
        return self._with_category(row)

    def list_transactions(
        self,
        user_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        tx_type: str | None = None,
        category_id: UUID | None = None,
        limit: int = TRANSACTION_LIST_LIMIT,
    ) -> list[dict[str, Any]]:
        rows = [
            row
            for row in _rows(store.transactions)
            if row["user_id"] == user_id
            and _in_window(row["date"], start, end)
            and (tx_type is None or row["type"] == tx_type)
            and (category_id is None or row["category_id"] == category_id)
        ]
        rows.sort(key=lambda row: row["date"], reverse=True)
        return [self._with_category(row) for row in rows[:limit]]

    def get_transaction(self, user_id: UUID, transaction_id: UUID) -> dict[str, Any]:
        return self._with_category(self._owned(store.transactions, transaction_id, user_id, "Transaction"))

    def update_transaction(self, user_id: UUID, transaction_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        row = self._owned(store.transactions, transaction_id, user_id, "Transaction")
        self._owned(store.categories, payload.categoryId, user_id, "Category")
        row["category_id"] = payload.categoryId
        row["type"] = payload.type.value
        row["amount"] = payload.amount
        row["description"] = payload.description
        if payload.date is not None:
            row["date"] = payload.date
        row["updated_at"] = store.now()
        return self._with_category(row)

    def delete_transaction(self, user_id: UUID, transaction_id: UUID) -> None:
        self._owned(store.transactions, transaction_id, user_id, "Transaction")
        del store.transactions[transaction_id]

    def create_budget(self, user_id: UUID, payload: BudgetCreate) -> dict[str, Any]:
        self._owned(store.categories, payload.categoryId, user_id, "Category")
        now = store.now()
        budget_id = store.make_id()
        row = {
            "id": budget_id,
            "user_id": user_id,
            "category_id": payload.categoryId,
            "amount": payload.amount,
            "period": payload.period.value,
            "start_date": payload.startDate,
            "end_date": payload.endDate,
            "created_at": now,
            "updated_at": now,
        }
        store.budgets[budget_id] = row
        return self._with_category(row)

    def list_budgets(self, user_id: UUID, period: str | None = None, active_at: datetime | None = None) -> list[dict[str, Any]]:
        rows = [
            row
            for row in _rows(store.budgets)
            if row["user_id"] == user_id
            and (period is None or row["period"] == period)
            and (active_at is None or row["start_date"] <= active_at <= row["end_date"])
        ]
        rows.sort(key=lambda row: row["start_date"], reverse=True)
        return [self._with_category(row) for row in rows]

    def get_budget(self, user_id: UUID, budget_id: UUID) -> dict[str, Any]:
        return self._with_category(self._owned(store.budgets, budget_id, user_id, "Budget"))

    def update_budget(self, user_id: UUID, budget_id: UUID, payload: BudgetCreate) -> dict[str, Any]:
        row = self._owned(store.budgets, budget_id, user_id, "Budget")
        self._owned(store.categories, payload.categoryId, user_id, "Category")
        row["category_id"] = payload.categoryId
        row["amount"] = payload.amount
        row["period"] = payload.period.value
        row["start_date"] = payload.startDate
        row["end_date"] = payload.endDate
        row["updated_at"] = store.now()
        return self._with_category(row)

    def delete_budget(self, user_id: UUID, budget_id: UUID) -> None:
        self._owned(store.budgets, budget_id, user_id, "Budget")
        del store.budgets[budget_id]

    def _matching(self, user_id: UUID, tx_type: str | None, start: datetime | None, end: datetime | None) -> list[dict[str, Any]]:
        return [
            row
            for row in _rows(store.transactions)
            if row["user_id"] == user_id
            and (tx_type is None or row["type"] == tx_type)
            and _in_window(row["date"], start, end)
        ]

    def sum_transactions(
        self,
        user_id: UUID,
        tx_type: str,
        start: datetime | None = None,
        end: datetime | None = None,
        category_id: UUID | None = None,
    ) -> tuple[Decimal, int]:
        total = Decimal("0")
        count = 0
        for row in self._matching(user_id, tx_type, start, end):
            if category_id is not None and row["category_id"] != category_id:
                continue
            total += Decimal(row["amount"])
            count += 1
        return total, count

    def count_transactions(self, user_id: UUID, start: datetime | None = None, end: datetime | None = None) -> int:
        return len(self._matching(user_id, None, start, end))

    def spending_by_category(
        self,
        user_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        include_uncategorized: bool = False,
    ) -> list[dict[str, Any]]:
        groups: dict[UUID, dict[str, Any]] = {}
        for row in self._matching(user_id, "expense", start, end):
            group = groups.setdefault(row["category_id"], {"category_id": row["category_id"], "total": Decimal("0"), "count": 0})
            group["total"] += Decimal(row["amount"])
            group["count"] += 1
        results = []
        for group in groups.values():
            category = _category_summary(self._category_for(user_id, group["category_id"]))
            if category is None and not include_uncategorized:
                continue
            results.append({**group, "category": category})
        results.sort(key=lambda item: item["total"], reverse=True)
        return results[:limit] if limit is not None else results

    def monthly_totals(self, user_id: UUID, since: datetime) -> list[dict[str, Any]]:
        buckets: dict[tuple[int, int, str], Decimal] = {}
        for row in self._matching(user_id, None, since, None):
            key = (row["date"].year, row["date"].month, row["type"])
            buckets[key] = buckets.get(key, Decimal("0")) + Decimal(row["amount"])
        return [
            {"year": year, "month": month, "type": tx_type, "total": total}
            for (year, month, tx_type), total in sorted(buckets.items(), key=lambda item: (item[0][0], item[0][1]))
        ]


metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("password_hash", String(255), nullable=False),
    Column("name", String(200), nullable=False),
    Column("role", String(20), nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

categories_table = Table(
    "categories",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(120), nullable=False),
    Column("type", String(20), nullable=False),
    Column("icon", String(32), nullable=False),
    Column("color", String(7), nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

# category_id carries no foreign key: deleting a category leaves its
# transactions and budgets in place, they just stop resolving a category.
transactions_table = Table(
    "transactions",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("category_id", Uuid, nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("description", String(500), nullable=False),
    Column("date", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Index("idx_transactions_user_date", "user_id", "date"),
)

budgets_table = Table(
    "budgets",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("category_id", Uuid, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("period", String(20), nullable=False),
    Column("start_date", DateTime, nullable=False),
    Column("end_date", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Index("idx_budgets_user_category_period", "user_id", "category_id", "period"),
)

_CATEGORY_COLUMNS = (
    categories_table.c.name.label("category_name"),
    categories_table.c.type.label("category_type"),
    categories_table.c.icon.label("category_icon"),
    categories_table.c.color.label("category_color"),
)


def _nest_category(row: dict[str, Any]) -> dict[str, Any]:
    name = row.pop("category_name", None)
    tx_type = row.pop("category_type", None)
    icon = row.pop("category_icon", None)
    color = row.pop("category_color", None)
    row["category"] = None
    if name is not None:
        row["category"] = {"id": row["category_id"], "name": name, "type": tx_type, "icon": icon, "color": color}
    return row


class SqlPersistence(Persistence):
    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
        self.init_schema()

    def init_schema(self) -> None:
        metadata.create_all(self.engine)

    def _run(self, stmt: Any, conflict_detail: str | None = None) -> list[dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                if result.returns_rows:
                    return [dict(row._mapping) for row in result.fetchall()]
                return []
        except IntegrityError as exc:
            if conflict_detail:
                raise HTTPException(status_code=409, detail=conflict_detail) from exc
            logger.exception("Integrity error")
            raise HTTPException(status_code=500, detail="database error") from exc
        except SQLAlchemyError as exc:
            logger.exception("Database error")
            raise HTTPException(status_code=500, detail=f"database error: {exc.__class__.__name__}") from exc

    def _first(self, stmt: Any, label: str) -> dict[str, Any]:
        rows = self._run(stmt)
        if not rows:
            raise HTTPException(status_code=404, detail=f"{label} not found")
        return rows[0]

    def _category_join(self, table: Table) -> Any:
        return table.outerjoin(
            categories_table,
            and_(categories_table.c.id == table.c.category_id, categories_table.c.user_id == table.c.user_id),
        )

    def _select_transactions(self) -> Any:
        return select(transactions_table, *_CATEGORY_COLUMNS).select_from(self._category_join(transactions_table))

    def _select_budgets(self) -> Any:
        return select(budgets_table, *_CATEGORY_COLUMNS).select_from(self._category_join(budgets_table))

    def _require_category(self, user_id: UUID, category_id: UUID) -> None:
        self.get_category(user_id, category_id)

    def _name_taken(self, user_id: UUID, name: str, exclude_id: UUID | None = None) -> bool:
        stmt = select(categories_table.c.id).where(categories_table.c.user_id == user_id, categories_table.c.name == name)
        if exclude_id is not None:
            stmt = stmt.where(categories_table.c.id != exclude_id)
        return bool(self._run(stmt.limit(1)))

    def register_user(self, email: str, password: str, name: str, role: str = UserRole.user.value) -> dict[str, Any]:
        if self.get_user_by_email(email) is not None:
            raise HTTPException(status_code=409, detail="User already exists")
        now = store.now()
        row = {"id": uuid4(), "email": email, "name": name, "role": role, "created_at": now, "updated_at": now}
        self._run(insert(users_table).values(**row, password_hash=hash_password(password)), conflict_detail="User already exists")
        return row

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        rows = self._run(select(users_table).where(users_table.c.email == email.lower()).limit(1))
        if not rows:
            return None
        row = rows[0]
        if not verify_password(password, row.pop("password_hash")):
            return None
        return row

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        rows = self._run(select(users_table).where(users_table.c.id == user_id).limit(1))
        if not rows:
            return None
        rows[0].pop("password_hash")
        return rows[0]

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        rows = self._run(select(users_table).where(users_table.c.email == email.lower()).limit(1))
        if not rows:
            return None
        rows[0].pop("password_hash")
        return rows[0]

    def create_category(self, user_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        if self._name_taken(user_id, payload.name):
            raise HTTPException(status_code=409, detail="Category with this name already exists")
        now = store.now()
        row = {
            "id": uuid4(),
            "user_id": user_id,
            "name": payload.name,
            "type": payload.type.value,
            "icon": payload.icon or DEFAULT_CATEGORY_ICON,
            "color": payload.color or DEFAULT_CATEGORY_COLOR,
            "created_at": now,
            "updated_at": now,
        }
        self._run(insert(categories_table).values(**row), conflict_detail="Category with this name already exists")
        return row

    def list_categories(self, user_id: UUID, category_type: str | None = None) -> list[dict[str, Any]]:
        stmt = select(categories_table).where(categories_table.c.user_id == user_id)
        if category_type is not None:
            stmt = stmt.where(categories_table.c.type == category_type)
        return self._run(stmt.order_by(categories_table.c.name.asc()))

    def get_category(self, user_id: UUID, category_id: UUID) -> dict[str, Any]:
        stmt = select(categories_table).where(categories_table.c.id == category_id, categories_table.c.user_id == user_id)
        return self._first(stmt, "Category")

    def update_category(self, user_id: UUID, category_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        current = self.get_category(user_id, category_id)
        if self._name_taken(user_id, payload.name, exclude_id=category_id):
            raise HTTPException(status_code=409, detail="Category with this name already exists")
        values = {
            "name": payload.name,
            "type": payload.type.value,
            "icon": payload.icon if payload.icon is not None else current["icon"],
            "color": payload.color if payload.color is not None else current["color"],
            "updated_at": store.now(),
        }
        self._run(
            update(categories_table)
            .where(categories_table.c.id == category_id, categories_table.c.user_id == user_id)
            .values(**values),
            conflict_detail="Category with this name already exists",
        )
        return {**current, **values}

    def delete_category(self, user_id: UUID, category_id: UUID) -> None:
        self.get_category(user_id, category_id)
        self._run(delete(categories_table).where(categories_table.c.id == category_id, categories_table.c.user_id == user_id))

    def create_transaction(self, user_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        self._require_category(user_id, payload.categoryId)
        now = store.now()
        transaction_id = uuid4()
        self._run(
            insert(transactions_table).values(
                id=transaction_id,
                user_id=user_id,
                category_id=payload.categoryId,
                type=payload.type.value,
                amount=payload.amount,
                description=payload.description,
                date=payload.date or now,
                created_at=now,
                updated_at=now,
            )
        )
        return self.get_transaction(user_id, transaction_id)

    def list_transactions(
        self,
        user_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        tx_type: str | None = None,
        category_id: UUID | None = None,
        limit: int = TRANSACTION_LIST_LIMIT,
    ) -> list[dict[str, Any]]:
        t = transactions_table
        stmt = self._select_transactions().where(t.c.user_id == user_id)
        if start is not None:
            stmt = stmt.where(t.c.date >= start)
        if end is not None:
            stmt = stmt.where(t.c.date <= end)
        if tx_type is not None:
            stmt = stmt.where(t.c.type == tx_type)
        if category_id is not None:
            stmt = stmt.where(t.c.category_id == category_id)
        rows = self._run(stmt.order_by(t.c.date.desc()).limit(limit))
        return [_nest_category(row) for row in rows]

    def get_transaction(self, user_id: UUID, transaction_id: UUID) -> dict[str, Any]:
        t = transactions_table
        stmt = self._select_transactions().where(t.c.id == transaction_id, t.c.user_id == user_id)
        return _nest_category(self._first(stmt, "Transaction"))

    def update_transaction(self, user_id: UUID, transaction_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        self.get_transaction(user_id, transaction_id)
        self._require_category(user_id, payload.categoryId)
        values: dict[str, Any] = {
            "category_id": payload.categoryId,
            "type": payload.type.value,
            "amount": payload.amount,
            "description": payload.description,
            "updated_at": store.now(),
        }
        if payload.date is not None:
            values["date"] = payload.date
        t = transactions_table
        self._run(update(t).where(t.c.id == transaction_id, t.c.user_id == user_id).values(**values))
        return self.get_transaction(user_id, transaction_id)

    def delete_transaction(self, user_id: UUID, transaction_id: UUID) -> None:
        self.get_transaction(user_id, transaction_id)
        t = transactions_table
        self._run(delete(t).where(t.c.id == transaction_id, t.c.user_id == user_id))

    def create_budget(self, user_id: UUID, payload: BudgetCreate) -> dict[str, Any]:
        self._require_category(user_id, payload.categoryId)
        now = store.now()
        budget_id = uuid4()
        self._run(
            insert(budgets_table).values(
                id=budget_id,
                user_id=user_id,
                category_id=payload.categoryId,
                amount=payload.amount,
                period=payload.period.value,
                start_date=payload.startDate,
                end_date=payload.endDate,
                created_at=now,
                updated_at=now,
            )
        )
        return self.get_budget(user_id, budget_id)

    def list_budgets(self, user_id: UUID, period: str | None = None, active_at: datetime | None = None) -> list[dict[str, Any]]:
        b = budgets_table
        stmt = self._select_budgets().where(b.c.user_id == user_id)
        if period is not None:
            stmt = stmt.where(b.c.period == period)
        if active_at is not None:
            stmt = stmt.where(b.c.start_date <= active_at, b.c.end_date >= active_at)
        rows = self._run(stmt.order_by(b.c.start_date.desc()))
        return [_nest_category(row) for row in rows]

    def get_budget(self, user_id: UUID, budget_id: UUID) -> dict[str, Any]:
        b = budgets_table
        stmt = self._select_budgets().where(b.c.id == budget_id, b.c.user_id == user_id)
        return _nest_category(self._first(stmt, "Budget"))

    def update_budget(self, user_id: UUID, budget_id: UUID, payload: BudgetCreate) -> dict[str, Any]:
        self.get_budget(user_id, budget_id)
        self._require_category(user_id, payload.categoryId)
        b = budgets_table
        self._run(
            update(b)
            .where(b.c.id == budget_id, b.c.user_id == user_id)
            .values(
                category_id=payload.categoryId,
                amount=payload.amount,
                period=payload.period.value,
                start_date=payload.startDate,
                end_date=payload.endDate,
                updated_at=store.now(),
            )
        )
        return self.get_budget(user_id, budget_id)

    def delete_budget(self, user_id: UUID, budget_id: UUID) -> None:
        self.get_budget(user_id, budget_id)
        b = budgets_table
        self._run(delete(b).where(b.c.id == budget_id, b.c.user_id == user_id))

    def _window(self, stmt: Any, start: datetime | None, end: datetime | None) -> Any:
        if start is not None:
            stmt = stmt.where(transactions_table.c.date >= start)
        if end is not None:
            stmt = stmt.where(transactions_table.c.date <= end)
        return stmt

    def sum_transactions(
        self,
        user_id: UUID,
        tx_type: str,
        start: datetime | None = None,
        end: datetime | None = None,
        category_id: UUID | None = None,
    ) -> tuple[Decimal, int]:
        t = transactions_table
        stmt = select(
            func.coalesce(func.sum(t.c.amount), 0).label("total"),
            func.count(t.c.id).label("tx_count"),
        ).where(t.c.user_id == user_id, t.c.type == tx_type)
        if category_id is not None:
            stmt = stmt.where(t.c.category_id == category_id)
        row = self._run(self._window(stmt, start, end))[0]
        return Decimal(str(row["total"])), int(row["tx_count"])

    def count_transactions(self, user_id: UUID, start: datetime | None = None, end: datetime | None = None) -> int:
        t = transactions_table
        stmt = select(func.count(t.c.id).label("tx_count")).where(t.c.user_id == user_id)
        return int(self._run(self._window(stmt, start, end))[0]["tx_count"])

    def spending_by_category(
        self,
        user_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        include_uncategorized: bool = False,
    ) -> list[dict[str, Any]]:
        t = transactions_table
        c = categories_table
        grouped = self._window(
            select(
                t.c.category_id,
                func.sum(t.c.amount).label("total"),
                func.count(t.c.id).label("tx_count"),
            ).where(t.c.user_id == user_id, t.c.type == "expense"),
            start,
            end,
        ).group_by(t.c.category_id).subquery()
        on_clause = and_(c.c.id == grouped.c.category_id, c.c.user_id == user_id)
        joined = grouped.outerjoin(c, on_clause) if include_uncategorized else grouped.join(c, on_clause)
        stmt = (
            select(grouped.c.category_id, grouped.c.total, grouped.c.tx_count, *_CATEGORY_COLUMNS)
            .select_from(joined)
            .order_by(grouped.c.total.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        results = []
        for row in self._run(stmt):
            row = _nest_category(row)
            results.append(
                {
                    "category_id": row["category_id"],
                    "category": row["category"],
                    "total": Decimal(str(row["total"])),
                    "count": int(row["tx_count"]),
                }
            )
        return results

    def monthly_totals(self, user_id: UUID, since: datetime) -> list[dict[str, Any]]:
        t = transactions_table
        year = extract("year", t.c.date).label("year")
        month = extract("month", t.c.date).label("month")
        stmt = (
            select(year, month, t.c.type, func.sum(t.c.amount).label("total"))
            .where(t.c.user_id == user_id, t.c.date >= since)
            .group_by(year, month, t.c.type)
            .order_by(year, month)
        )
        return [
            {"year": int(row["year"]), "month": int(row["month"]), "type": row["type"], "total": Decimal(str(row["total"]))}
            for row in self._run(stmt)
        ]


def ensure_demo_user(persistence: Persistence) -> bool:
    email = settings.demo_email.strip().lower()
    if persistence.get_user_by_email(email) is not None:
        logger.info("Demo user already exists (%s)", email)
        return False
    persistence.register_user(email, settings.demo_password, settings.demo_name)
    logger.info("Demo user created (%s)", email)
    return True


def get_persistence() -> Persistence:
    if settings.storage_backend in {"sql", "postgres"}:
        return SqlPersistence(settings.database_url)
    return InMemoryPersistence()
