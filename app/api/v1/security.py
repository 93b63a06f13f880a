"""
Caller authentication for the sync API.

The end user's session is owned by Supabase Auth; we only verify the
Bearer token it issued and take the user id from it.

Flow:
1. Client sends "Authorization: Bearer <supabase access token>"
2. supabase.auth.get_user(token) validates it
3. The user id scopes every sync/ledger query
"""

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client, create_client

from app.config import SUPABASE_URL, SUPABASE_ANON_KEY
from app.services.sync_errors import InvalidTokenError

logger = logging.getLogger(__name__)

# auto_error=False so a missing header gets our INVALID_TOKEN body, not FastAPI's 403
bearer_scheme = HTTPBearer(auto_error=False)

_supabase_client: Optional[Client] = None


def get_supabase() -> Client:
    """Supabase client (created on first use, then reused)."""
    global _supabase_client

    if _supabase_client is None:
        if not SUPABASE_URL or not SUPABASE_ANON_KEY:
            logger.error("SUPABASE_URL / SUPABASE_ANON_KEY not configured")
            raise InvalidTokenError("Session verification is not configured")
        _supabase_client = create_client(SUPABASE_URL, SUPABASE_ANON_KEY)

    return _supabase_client


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    """
    Resolve the calling user's id from their session token.

    Raises:
        InvalidTokenError: header missing, token invalid or verification failed
    """
    if not credentials:
        raise InvalidTokenError("Unauthorized", "Authorization header is required")

    supabase = get_supabase()

    try:
        response = supabase.auth.get_user(credentials.credentials)
    except Exception as exc:
        logger.warning("Session validation failed: %s", exc)
        raise InvalidTokenError("Invalid token") from exc

    if not response or not response.user:
        raise InvalidTokenError("Invalid token")

    return response.user.id
