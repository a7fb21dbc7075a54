"""
Auth helpers: password hashing, JWT, and host/role checks.
Bcrypt accepts at most 72 bytes; we truncate manually before hashing.
We use bcrypt directly so the truncated bytes are passed through with no extra encoding.
"""

import bcrypt
import os
import re
from datetime import datetime, timedelta, timezone
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .database import get_db
from .models import Game, User

# Username: alphanumeric and underscore only, 2–32 chars
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{2,32}$")

SECRET_KEY = os.environ.get("JWT_SECRET", "change-me-in-production-use-env")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 30

BCRYPT_MAX_BYTES = 72
BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "10"))
security = HTTPBearer(auto_error=False)

# Roles that may run the draw for any game, not only their own
ELEVATED_ROLES = ("admin", "host")


def _truncate_password(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    pwd_bytes = _truncate_password(password)
    return bcrypt.hashpw(pwd_bytes, bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("ascii")


def verify_password(plain: str, hashed: str) -> bool:
    pwd_bytes = _truncate_password(plain)
    return bcrypt.checkpw(pwd_bytes, hashed.encode("ascii"))


def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS))
    payload = {"sub": user_id, "exp": expire}
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> str | None:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload.get("sub")
    except JWTError:
        return None


def validate_username(username: str) -> bool:
    return bool(USERNAME_PATTERN.match(username))


def is_elevated(user: User) -> bool:
    return any(role in ELEVATED_ROLES for role in user.role_names)


def can_host(user: User | None, game: Game) -> bool:
    """Game creator or an elevated role."""
    if user is None:
        return False
    return game.created_by == user.id or is_elevated(user)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = decode_token(credentials.credentials)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_current_user_optional(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User | None:
    if not credentials:
        return None
    user_id = decode_token(credentials.credentials)
    if not user_id:
        return None
    return db.query(User).filter(User.id == user_id).first()
