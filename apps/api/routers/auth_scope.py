"""Caller identification dependency for owner-scoped endpoints."""

from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.caller_identity import Caller, read_caller_token


bearer_scheme = HTTPBearer(auto_error=False)


def owner_of(caller: Optional[Caller]) -> Optional[str]:
    """Owner id for records created or read by this caller (None = anonymous)."""
    return caller.owner_id if caller else None


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[Caller]:
    """Resolve the caller from a Bearer token; requests without one are anonymous."""
    if credentials is None:
        return None
    if credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unsupported authorization scheme.")
    try:
        return read_caller_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
