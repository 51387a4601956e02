"""Admin access for the session and category-config diagnostics.

Admin routes expose full intake records (names, phone numbers, emails) and
can drop the category config cache, so they sit behind one shared bearer
token taken from ``ADMIN_API_KEY``:

  key set, matching token      → allow
  key set, wrong/missing token → 401
  no key, DEBUG=true           → allow (local development)
  no key, DEBUG=false          → 403, admin surface disabled
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from intake.config import settings

log = logging.getLogger("intake.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def _token_matches(credentials: HTTPAuthorizationCredentials | None, key: str) -> bool:
    if credentials is None or credentials.scheme.lower() != "bearer":
        return False
    return secrets.compare_digest(credentials.credentials.encode(), key.encode())


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """Dependency for every ``/admin`` route."""
    key = settings.admin_api_key

    if not key:
        if settings.debug:
            return
        log.warning("Admin request refused: ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Intake admin API is disabled until ADMIN_API_KEY is set.",
        )

    if not _token_matches(credentials, key):
        log.warning(
            "Admin request refused: %s token",
            "missing" if credentials is None else "invalid",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="A valid admin token is required for intake diagnostics.",
            headers={"WWW-Authenticate": "Bearer"},
        )
