"""Authentication dependencies for the scheduler and operator endpoints."""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings


auth_scheme = HTTPBearer(auto_error=False)


def _matches(supplied: Optional[str], expected: str) -> bool:
    if not supplied or not expected:
        return False
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>`` when a cron secret is configured."""
    expected = (settings.CRON_SECRET or "").strip()
    if not expected:
        return
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer cron secret.")
    if not _matches(credentials.credentials, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret.")


async def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """Require the ``X-Admin-Key`` header to equal ``ADMIN_SECRET``."""
    if not _matches(x_admin_key, (settings.ADMIN_SECRET or "").strip()):
        raise HTTPException(status_code=401, detail="Invalid or missing admin key.")
