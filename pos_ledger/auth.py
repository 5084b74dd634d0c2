"""Accounts for people using the API, bearer tokens and the role policy."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from pos_ledger.config import settings
from pos_ledger.db import get_db
from pos_ledger.errors import (
    AuthenticationError,
    AuthorizationError,
    Conflict,
    InvalidArgument,
    ValidationError,
)
from pos_ledger.models import User

ROLES = ("admin", "kasir")

# Operation name -> roles allowed to run it. Operations not listed are denied.
POLICY: dict[str, tuple[str, ...]] = {
    "transactions:create": ("admin", "kasir"),
    "transactions:list": ("admin", "kasir"),
    "transactions:update": ("admin",),
    "transactions:delete": ("admin",),
    "products:create": ("admin",),
    "products:list": ("admin", "kasir"),
    "products:update": ("admin",),
    "products:delete": ("admin",),
    "expenses:create": ("admin",),
    "expenses:list": ("admin",),
    "expenses:update": ("admin",),
    "expenses:delete": ("admin",),
    "accounts:create": ("admin",),
    "accounts:list": ("admin", "kasir"),
    "accounts:update": ("admin",),
    "accounts:deduct": ("admin",),
    "accounts:delete": ("admin",),
    "capital:adjust": ("admin",),
    "capital:total": ("admin", "kasir"),
    "purchases:create": ("admin",),
    "purchases:list": ("admin",),
    "purchases:delete": ("admin",),
}

bearer_scheme = HTTPBearer(auto_error=False)


def allowed_roles(operation: str) -> tuple[str, ...]:
    return POLICY.get(operation, ())


def is_allowed(operation: str, role: str) -> bool:
    return role in allowed_roles(operation)


def register_user(db: Session, username: str, password: str, role: str) -> User:
    if not username or not password:
        raise ValidationError("username and password are required.")
    if role not in ROLES:
        raise InvalidArgument(f"role must be one of: {', '.join(ROLES)}.")
    if db.scalar(select(User.id).where(User.username == username)) is not None:
        raise Conflict("Username already exists.")
    user = User(username=username, password_hash=generate_password_hash(password), role=role)
    db.add(user)
    db.flush()
    return user


def authenticate(db: Session, username: str, password: str) -> User:
    user = db.scalar(select(User).where(User.username == username))
    if user is None or not check_password_hash(user.password_hash, password):
        raise AuthenticationError("Invalid username or password.")
    return user


def issue_token(user: User, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    claims = {
        "sub": str(user.id),
        "username": user.username,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(minutes=settings.token_ttl_minutes),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired.") from exc
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid token.") from exc


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise AuthenticationError("Missing bearer token.")
    claims = decode_token(credentials.credentials)
    try:
        user_id = int(claims["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid token.") from exc
    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationError("Unknown user.")
    return user


def require(operation: str):
    """Dependency factory: resolve the caller and check the policy for ``operation``."""

    def dependency(user: User = Depends(current_user)) -> User:
        if not is_allowed(operation, user.role):
            raise AuthorizationError(f"Role {user.role} may not perform {operation}.")
        return user

    return dependency
