import threading
from datetime import datetime, timedelta
from uuid import uuid4

from insightledger.persistence import InMemoryPersistence
from insightledger.schemas import BudgetCreate, CategoryCreate, TransactionCreate


def test_reads_survive_concurrent_writes() -> None:
    persistence = InMemoryPersistence()
    user = persistence.register_user("busy@example.com", "Secret123!", "Busy")
    category = persistence.create_category(user["id"], CategoryCreate(name="Food", type="expense"))
    start = datetime(2026, 1, 1)
    for i in range(2000):
        persistence.create_transaction(
            user["id"],
            TransactionCreate(categoryId=category["id"], type="expense", amount=1, description="seed", date=start + timedelta(minutes=i)),
        )

    errors: list[Exception] = []
    stop = threading.Event()

    def read_loop() -> None:
        try:
            while not stop.is_set():
                persistence.list_transactions(user["id"], limit=20)
                persistence.list_budgets(user["id"], active_at=start)
                persistence.list_categories(user["id"])
                persistence.spending_by_category(user["id"])
        except Exception as exc:
            errors.append(exc)

    reader = threading.Thread(target=read_loop)
    reader.start()
    try:
        for i in range(1000):
            persistence.create_transaction(
                user["id"],
                TransactionCreate(categoryId=category["id"], type="expense", amount=2, description="live", date=start),
            )
            persistence.create_budget(
                user["id"],
                BudgetCreate(categoryId=category["id"], amount=10, period="monthly", startDate=start, endDate=start),
            )
            persistence.create_category(user["id"], CategoryCreate(name=f"Extra {uuid4()}", type="expense"))
    finally:
        stop.set()
        reader.join()

    assert errors == []
