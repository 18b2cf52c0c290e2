from __future__ import annotations

from insightledger.config import settings
from insightledger.persistence import SqlPersistence, ensure_demo_user


def main() -> None:
    persistence = SqlPersistence(settings.database_url)
    persistence.init_schema()
    print(f"Schema ready: {persistence.engine.url.render_as_string(hide_password=True)}")

    if ensure_demo_user(persistence):
        print(f"Demo user created: {settings.demo_email}")
    else:
        print(f"Demo user already exists: {settings.demo_email}")

    print("Database initialization finished.")


if __name__ == "__main__":
    main()
