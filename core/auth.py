"""
JWT authentication dependencies.

The identity provider issues HS256 tokens whose "sub" is the stable rider
(or driver/admin) id and whose "role" is one of rider, driver, admin.
Operator endpoints (payment updates, admin removal, manual sweeps) require
role == admin; code scanning requires driver or admin.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config.settings import settings

logger = logging.getLogger(__name__)

# Security scheme for Swagger UI (auto_error=False so a missing token gets our 401 message)
security = HTTPBearer(auto_error=False)

ROLE_RIDER = "rider"
ROLE_DRIVER = "driver"
ROLE_ADMIN = "admin"


def _extract_token(header_val: str) -> Optional[str]:
    """Helper to strip 'Bearer ' prefix if present."""
    if not header_val:
        return None
    hv = header_val.strip()
    if hv.lower().startswith("bearer "):
        return hv.split(None, 1)[1].strip()
    return hv  # accept raw token


def create_access_token(user_id: str, role: str = ROLE_RIDER, expires_in: timedelta = timedelta(hours=12)) -> str:
    """Issue a token (used by dev tooling and tests; production tokens come from the identity provider)."""
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "role": role, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


async def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
    authorization: Optional[str] = Header(None),
) -> dict:
    """Async JWT auth dependency. Returns {"user_id", "role"}."""
    token_value = None

    # 1. HTTPBearer (standard Swagger/FastAPI way)
    if creds and creds.credentials:
        token_value = creds.credentials

    # 2. Raw Authorization header (clients that omit the Bearer prefix)
    if not token_value and authorization:
        token_value = _extract_token(authorization)

    if not token_value:
        logger.warning("Authentication failed: no token in Authorization header")
        raise HTTPException(status_code=401, detail="Missing Authorization token")

    try:
        payload = jwt.decode(token_value, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Token decode error: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return {"user_id": user_id, "role": payload.get("role", ROLE_RIDER)}


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != ROLE_ADMIN:
        logger.warning("Admin access denied for user %s (role=%s)", user.get("user_id"), user.get("role"))
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user


async def require_driver(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") not in (ROLE_DRIVER, ROLE_ADMIN):
        raise HTTPException(status_code=403, detail="Driver privileges required")
    return user
