"""Bearer token handling for the ledger API.

Tokens are issued by the external auth service; this module only validates
them and turns their ``sub`` and ``school_id`` claims into a TenantContext.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.core.context import TenantContext
from backend.app.core.settings import get_settings

security_scheme = HTTPBearer(auto_error=True)


def create_access_token(user_id: int, school_id: int | None, expires_minutes: Optional[int] = 30) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": str(user_id), "exp": expire}
    if school_id is not None:
        payload["school_id"] = school_id
    return jwt.encode(payload, settings.SECRET_KEY, algorithm="HS256")


def decode_access_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as exc:
        raise ValueError("Expired token") from exc
    except jwt.InvalidTokenError as exc:
        raise ValueError("Invalid token") from exc


def get_tenant_context(credentials: HTTPAuthorizationCredentials = Depends(security_scheme)) -> TenantContext:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_access_token(credentials.credentials)
    except ValueError:
        raise credentials_exception
    try:
        actor_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise credentials_exception
    school_id = payload.get("school_id")
    # A missing tenant is rejected by the services with a ValidationError.
    return TenantContext(school_id=int(school_id) if school_id is not None else None, actor_id=actor_id)
