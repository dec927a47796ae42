import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr

import config
import database
from errors import ConflictError, ForbiddenError, UnauthorizedError
from schemas import User

logger = logging.getLogger("artify.auth")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class TokenData(BaseModel):
    user_id: str
    email: EmailStr
    role: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(user_doc: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc.get("email"),
        "role": user_doc.get("role", "user"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXP_MIN),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
        return TokenData(user_id=payload["sub"], email=payload["email"], role=payload.get("role", "user"))
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired", reason="token_expired")
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise UnauthorizedError("Invalid token", reason="invalid_token")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "firstName": user.get("firstName"),
        "lastName": user.get("lastName", ""),
        "email": user["email"],
        "role": user.get("role", "user"),
    }


def register_user(first_name: str, last_name: str, email: str, password: str,
                  phone: Optional[str] = None) -> Dict[str, Any]:
    if database.db["user"].find_one({"email": email}):
        raise ConflictError("Email already in use", reason="email_taken")
    user = User(firstName=first_name, lastName=last_name, email=email, phone=phone,
                password_hash=hash_password(password))
    user_id = database.create_document("user", user)
    doc = database.db["user"].find_one({"_id": database.to_object_id(user_id)})
    logger.info("Registered user %s", user_id)
    return {"token": create_token(doc), "user": public_user(doc)}


def login_user(email: str, password: str) -> Dict[str, Any]:
    user = database.db["user"].find_one({"email": email})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise UnauthorizedError("Invalid credentials", reason="invalid_credentials")
    return {"token": create_token(user), "user": public_user(user)}


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedError("Invalid authorization header")
    token_data = decode_token(token)
    user = database.db["user"].find_one({"_id": database.to_object_id(token_data.user_id, "user")})
    if not user or not user.get("is_active", True):
        raise UnauthorizedError("User not found")
    return user


async def require_user(user: Optional[Dict[str, Any]] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user:
        raise UnauthorizedError("Not authorized to access this route")
    return user


async def require_admin(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    require_role(user, ["admin"])
    return user


def require_role(user: Dict[str, Any], roles):
    if user.get("role") not in roles:
        raise ForbiddenError(f"User role {user.get('role')} is not authorized to access this route")


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"
