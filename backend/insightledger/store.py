from datetime import datetime, timezone
from uuid import UUID, uuid4


class InMemoryStore:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.users: dict[UUID, dict] = {}
        self.user_credentials: dict[UUID, str] = {}
        self.categories: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.budgets: dict[UUID, dict] = {}

    @staticmethod
    def make_id() -> UUID:
        return uuid4()

    @staticmethod
    def now() -> datetime:
        # Naive UTC everywhere, matching what the SQL backend stores.
        return datetime.now(timezone.utc).replace(tzinfo=None)


store = InMemoryStore()
