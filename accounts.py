"""
Registration, login and password reset.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field

import config
import mailer
from database import collection, create_document, update_document
from errors import Conflict, Forbidden, NotFound, StoreError, Unauthorized, ValidationFailed
from schemas import Role, User
from security import create_access_token, hash_password, is_admin, load_user, verify_password

logger = logging.getLogger("bookstore.accounts")


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    age: int = Field(..., ge=0)
    role: Optional[Role] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgetPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=1)


def _profile(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(user["_id"]), "name": user["name"], "email": user["email"], "role": user.get("role", "user")}


def _utcnow() -> datetime:
    # stored naive UTC, the way pymongo hands dates back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def register(payload: RegisterRequest, caller_id: Optional[str] = None) -> Dict[str, Any]:
    """Create an account. Only a signed-in admin may create another admin."""
    if payload.role == "admin" and not is_admin(load_user(caller_id)):
        raise Forbidden("Only an admin can create admin accounts")
    users = collection("user")
    if users.find_one({"email": payload.email}):
        raise Conflict("Email already registered")
    user = User(
        name=payload.name,
        email=payload.email,
        password_hash=hash_password(payload.password),
        phone=payload.phone,
        address=payload.address,
        age=payload.age,
        role=payload.role or "user",
    )
    user_id = create_document("user", user)
    doc = users.find_one({"_id": user_id})
    logger.info("Registered user %s (%s)", user_id, doc["role"])
    return {"token": create_access_token(doc), "user": _profile(doc)}


def login(payload: LoginRequest) -> Dict[str, Any]:
    user = collection("user").find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return {"token": create_access_token(user), "user": _profile(user)}


def forget_password(payload: ForgetPasswordRequest) -> None:
    users = collection("user")
    user = users.find_one({"email": payload.email})
    if not user:
        raise NotFound("User not found")

    reset_token = secrets.token_hex(20)
    expires = _utcnow() + timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES)
    update_document("user", user["_id"], {"reset_password_token": _hash_reset_token(reset_token), "reset_password_expire": expires})

    reset_url = f"{config.PUBLIC_BASE_URL}/auth/resetpassword/{reset_token}"
    try:
        mailer.send_email(
            to=user["email"],
            subject="Password reset",
            text=f"Use this link to reset your password: {reset_url}\nIt expires in {config.RESET_TOKEN_EXPIRE_MINUTES} minutes.",
        )
    except Exception as exc:
        logger.exception("Reset email to %s failed", user["email"])
        users.update_one({"_id": user["_id"]}, {"$unset": {"reset_password_token": "", "reset_password_expire": ""}})
        raise StoreError("Email could not be sent") from exc


def reset_password(token: str, payload: ResetPasswordRequest) -> None:
    users = collection("user")
    user = users.find_one({
        "reset_password_token": _hash_reset_token(token),
        "reset_password_expire": {"$gt": _utcnow()},
    })
    if not user:
        raise ValidationFailed("Invalid or expired token")
    users.update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password_hash": hash_password(payload.password), "updated_at": datetime.now(timezone.utc)},
            "$unset": {"reset_password_token": "", "reset_password_expire": ""},
        },
    )
    logger.info("Password reset for user %s", user["_id"])
