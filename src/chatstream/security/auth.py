from __future__ import annotations

"""Bearer-token identity for the chat API.

Env vars:
- JWT_SECRET (set in every real deployment; a dev default is used otherwise)
- JWT_EXPIRES_MIN (default 60)
- CHAT_PUBLIC_MODE (1/true/yes = anonymous requests run as the shared guest user)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import logging
import os

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr


logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)

GUEST_USER_ID = "guest"
_DEV_SECRET = "dev-secret-change-me"


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = os.getenv("JWT_SECRET") or _DEV_SECRET
        try:
            expires = int(os.getenv("JWT_EXPIRES_MIN", "60"))
        except ValueError:
            expires = 60
        return JwtConfig(secret=secret, expires_min=expires)


class User(BaseModel):
    """Signed-in identity: a stable id plus optional profile fields."""

    user_id: str
    email: Optional[EmailStr] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


def _guest_user() -> User:
    return User(user_id=GUEST_USER_ID, display_name="Guest")


def _claims_for(user: User, issued: datetime, ttl: timedelta) -> Dict[str, Any]:
    return {
        "sub": user.user_id,
        "email": user.email,
        "name": user.display_name,
        "picture": user.photo_url,
        "iat": int(issued.timestamp()),
        "exp": int((issued + ttl).timestamp()),
    }


def _user_from_claims(claims: Dict[str, Any]) -> User:
    return User(
        user_id=str(claims["sub"]),
        email=claims.get("email"),
        display_name=claims.get("name"),
        photo_url=claims.get("picture"),
    )


def create_access_token(user: User, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    claims = _claims_for(user, datetime.now(timezone.utc), timedelta(minutes=cfg.expires_min))
    return jwt.encode(claims, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    cfg = cfg or JwtConfig.from_env()
    try:
        claims = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
        return _user_from_claims(claims)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def _public_mode_enabled() -> bool:
    return (os.getenv("CHAT_PUBLIC_MODE") or "").strip().lower() in ("1", "true", "yes")


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> User:
    """FastAPI dependency resolving the caller from its bearer token.

    In public mode a missing or unusable token falls back to the guest user
    instead of a 401.
    """
    has_bearer = creds is not None and (creds.scheme or "").lower() == "bearer"
    if not has_bearer:
        if _public_mode_enabled():
            return _guest_user()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    try:
        return decode_token(creds.credentials)  # type: ignore[union-attr]
    except HTTPException:
        if _public_mode_enabled():
            logger.info("Invalid token tolerated in public mode")
            return _guest_user()
        raise
