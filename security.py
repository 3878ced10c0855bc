"""
Tokens, password hashing and caller identity.

Every route that cares about the caller goes through `resolve_identity`.
It never fails: a missing, malformed or expired token means a guest.
Routes that must have a caller depend on `require_user` or `require_admin` instead.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from database import collection, to_object_id
from errors import Forbidden, Unauthorized

logger = logging.getLogger("bookstore.security")

# Use pbkdf2_sha256 to avoid bcrypt backend issues in some environments
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Older clients were issued tokens with the user id under different keys.
# Lookups are tried in order and the first non-empty value wins.
_USER_ID_LOOKUPS = (
    ("id",),
    ("_id",),
    ("userId",),
    ("sub",),
    ("user", "_id"),
    ("user", "id"),
    ("_doc", "_id"),
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_access_token(user: Dict[str, Any]) -> str:
    now = datetime.now(timezone.utc)
    to_encode = {
        "id": str(user["_id"]),
        "role": user.get("role", "user"),
        "iat": now,
        "exp": now + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def extract_user_id(payload: Dict[str, Any]) -> Optional[str]:
    for path in _USER_ID_LOOKUPS:
        value: Any = payload
        for key in path:
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        if value:
            return str(value)
    return None


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError as exc:
        logger.info("Ignoring unusable token: %s", exc)
        return None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_identity(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    """User id of the caller, or None for guests."""
    token = bearer_token(authorization)
    if token is None:
        return None
    payload = decode_token(token)
    if payload is None:
        return None
    return extract_user_id(payload)


def load_user(user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    oid = to_object_id(user_id)
    if oid is None:
        return None
    return collection("user").find_one({"_id": oid})


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("role") == "admin"


def require_user(user_id: Optional[str] = Depends(resolve_identity)) -> Dict[str, Any]:
    if user_id is None:
        raise Unauthorized("Not authorized, no valid token")
    user = load_user(user_id)
    if user is None:
        raise Unauthorized("Not authorized, user not found")
    return user


def require_admin(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    if not is_admin(user):
        raise Forbidden("Not authorized, admin only")
    return user
