from datetime import timedelta
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import database
from settings import settings

JWT_ALGO = "HS256"
STAFF_ROLES = ("STAFF", "ADMIN")

security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        # stored value is not a bcrypt hash
        return False


def create_token(payload: dict) -> str:
    exp = database.utcnow() + timedelta(minutes=settings.JWT_EXPIRES_MINUTES)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _load_user(token: str) -> dict:
    payload = decode_token(token)
    user_id = payload.get("id")
    if not user_id or not database.is_object_id(user_id):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = database.collection("user").find_one({"_id": database.to_object_id(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    user["id"] = str(user.pop("_id"))
    return user


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _load_user(credentials.credentials)


async def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    """Resolve the caller when a bearer token is sent; guests get None."""
    if credentials is None:
        return None
    return _load_user(credentials.credentials)


async def require_staff(user=Depends(get_current_user)):
    if user.get("role") not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Staff only")
    return user


async def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "ADMIN":
        raise HTTPException(status_code=403, detail="Admin only")
    return user
