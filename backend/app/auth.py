"""Bearer-token authentication.

Access tokens are Supabase-issued JWTs signed with HS256 and the project's
JWT secret.  Only the ``sub`` claim (the user id) is used here; roles are
never trusted from the token and are instead looked up through the
capability cache (see :func:`app.deps.get_current_actor`).
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any

from dotenv import load_dotenv
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt

load_dotenv()

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# JWT configuration
# ---------------------------------------------------------------------------
JWT_SECRET = os.getenv("JWT_SECRET", "applyhub-dev-secret-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "authenticated")
JWT_EXPIRY_HOURS = 24

# ---------------------------------------------------------------------------
# HTTPBearer scheme (shared with deps.py)
# ---------------------------------------------------------------------------
security = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, expires_in: timedelta = timedelta(hours=JWT_EXPIRY_HOURS)) -> str:
    """Sign a token for ``user_id`` (local development and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": JWT_AUDIENCE,
        "exp": now + expires_in,
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """Validate ``token`` and return its claims.

    Raises:
        HTTPException: 401 for a bad signature, expiry or missing ``sub``.
    """
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
        )
    except JWTError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload
