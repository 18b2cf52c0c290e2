from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

import bcrypt
from jose import JWTError, jwt

from .config import settings

JWT_ALGORITHM = "HS256"
BCRYPT_ROUNDS = 10


@dataclass(frozen=True)
class TokenClaims:
    user_id: UUID
    email: str
    role: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user_id: UUID, email: str, role: str, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.jwt_expires_days))
    claims = {"sub": str(user_id), "email": email, "role": role, "exp": expire}
    return jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> TokenClaims | None:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
        return TokenClaims(user_id=UUID(payload["sub"]), email=payload["email"], role=payload["role"])
    except (JWTError, KeyError, ValueError):
        return None
