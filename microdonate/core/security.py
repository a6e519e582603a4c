import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import Depends, Header, Request
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.hash import pbkdf2_sha256 as hasher

from microdonate.core.config import settings
from microdonate.core.errors import AuthFailed, Forbidden
from microdonate.deps import get_repo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_password(password: str) -> str:
    return hasher.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return hasher.verify(password or "", hashed or "")
    except ValueError:
        # empty/legacy/invalid hash formats
        return False


def create_token(payload: Dict[str, Any], minutes: int | None = None) -> str:
    payload = dict(payload)
    payload.setdefault("jti", uuid.uuid4().hex)
    payload["exp"] = utcnow() + timedelta(minutes=minutes or settings.access_ttl_min)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except ExpiredSignatureError:
        raise AuthFailed("Token expired")
    except JWTError:
        raise AuthFailed("Invalid token")


def create_access_token(user: dict) -> str:
    return create_token({"sub": user["_id"], "email": user["email"], "role": user.get("role", "donor")})


def create_verification_token(email: str) -> str:
    return create_token({"sub": email, "purpose": "verify"}, minutes=60)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


async def get_current_user(
    request: Request,
    authorization: str | None = Header(default=None),
    repo=Depends(get_repo),
):
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthFailed("Not authorized to access this route")
    token = authorization.split(" ", 1)[1]
    claims = decode_token(token)
    if claims.get("purpose"):
        raise AuthFailed("Token is invalid or expired")

    user = await repo.find_user(claims.get("sub"))
    if not user:
        raise AuthFailed("User not found")

    now = utcnow()
    jti = claims.get("jti")
    if any(t["jti"] == jti and _aware(t["expires_at"]) > now for t in user.get("token_blacklist", [])):
        raise AuthFailed("Token has been invalidated. Please login again.")

    last = user.get("last_activity")
    if last and now - _aware(last) > timedelta(minutes=settings.session_idle_min):
        raise AuthFailed("Session expired due to inactivity. Please login again.")

    user = await repo.update_user(user["_id"], {"last_activity": now})
    request.state.user_id = user["_id"]
    request.state.token_claims = claims
    return user


def require_roles(*roles: str):
    async def checker(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise Forbidden(f"User role {user.get('role')} is not authorized to access this route")
        return user
    return checker


require_admin = require_roles("admin")
