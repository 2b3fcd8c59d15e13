"""Signed caller tokens: the only identity the pipeline needs is an owner id."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config import settings


CALLER_TOKEN_TYPE = "studyscribe_caller"


@dataclass(frozen=True)
class CallerToken:
    token: str
    owner_id: str
    expires_at: datetime


@dataclass(frozen=True)
class Caller:
    owner_id: str
    email: Optional[str] = None


def issue_caller_token(owner_id: str, email: Optional[str] = None, ttl_hours: Optional[int] = None) -> CallerToken:
    """Sign a bearer token that identifies `owner_id` to the API."""
    owner_id = (owner_id or "").strip()
    if not owner_id:
        raise ValueError("owner_id is required")
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims = {
        "sub": owner_id,
        "type": CALLER_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    return CallerToken(
        token=jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        owner_id=owner_id,
        expires_at=expires_at,
    )


def read_caller_token(token: str) -> Caller:
    """Validate a bearer token. Raises ValueError when it cannot be trusted."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired caller token.") from exc

    if claims.get("type") != CALLER_TOKEN_TYPE:
        raise ValueError("Invalid caller token type.")
    owner_id = str(claims.get("sub") or "").strip()
    if not owner_id:
        raise ValueError("Caller token missing subject.")
    return Caller(owner_id=owner_id, email=claims.get("email") or None)
