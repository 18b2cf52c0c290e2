import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    storage_backend: str = os.getenv("STORAGE_BACKEND", "memory").strip().lower()
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./insightledger.db")
    jwt_secret: str = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
    jwt_expires_days: int = int(os.getenv("JWT_EXPIRES_DAYS", "7"))
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY") or None
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-flash-latest")
    frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900"))
    rate_limit_max_requests: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
    demo_email: str = os.getenv("DEMO_EMAIL", "demo@example.com")
    demo_password: str = os.getenv("DEMO_PASSWORD", "password123")
    demo_name: str = os.getenv("DEMO_NAME", "Demo User")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
