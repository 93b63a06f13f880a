"""
OAuth token lifecycle for the Gmail sync.

The connect flow stores an access token, a refresh token and the access
token's expiry. Before each run we make sure the access token is still
usable, refreshing it through Google's token endpoint when it is not.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from sqlalchemy.orm import Session

from app.config import (
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_TOKEN_URI,
    GMAIL_REQUEST_TIMEOUT,
)
from app.database import utcnow
from app.models.sync_settings import GmailSyncSettings
from app.services import db_service
from app.services.sync_errors import TokenExpiredError, ConnectionFailedError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

# Refresh a little early so the token cannot lapse mid-run
TOKEN_EXPIRY_LEEWAY = timedelta(seconds=60)

# Google access tokens live for an hour when the response omits the expiry
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

Refresher = Callable[[Optional[str]], Tuple[str, datetime]]


class TimeoutRequest(Request):
    """google-auth HTTP transport with a bounded default timeout."""

    def __call__(self, url, method="GET", body=None, headers=None,
                 timeout=GMAIL_REQUEST_TIMEOUT, **kwargs):
        return super().__call__(
            url, method=method, body=body, headers=headers, timeout=timeout, **kwargs
        )


def refresh_access_token(refresh_token: Optional[str]) -> Tuple[str, datetime]:
    """
    Exchange a refresh token for a new access token.

    google-auth POSTs refresh_token/client_id/client_secret/grant_type
    (form-encoded) to the token endpoint.

    Returns:
        (access_token, expires_at) with expires_at in naive UTC

    Raises:
        TokenExpiredError: refresh token missing, revoked or invalid
        ConnectionFailedError: token endpoint unreachable or temporarily failing
    """
    if not refresh_token:
        raise TokenExpiredError("No refresh token stored")

    creds = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=GOOGLE_TOKEN_URI,
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        scopes=SCOPES
    )

    try:
        creds.refresh(TimeoutRequest())
    except RefreshError as exc:
        # Token endpoint 5xx / temporary errors: the refresh token may still be good
        if getattr(exc, "retryable", False):
            raise ConnectionFailedError(str(exc)) from exc
        raise TokenExpiredError(str(exc)) from exc
    except TransportError as exc:
        raise ConnectionFailedError(str(exc)) from exc

    return creds.token, creds.expiry or (utcnow() + DEFAULT_TOKEN_LIFETIME)


def token_is_fresh(settings: GmailSyncSettings, now: datetime) -> bool:
    return bool(
        settings.access_token
        and settings.token_expires_at
        and settings.token_expires_at - TOKEN_EXPIRY_LEEWAY > now
    )


def ensure_valid_token(
    db: Session,
    settings: GmailSyncSettings,
    refresher: Refresher = refresh_access_token,
    now: Optional[datetime] = None
) -> str:
    """
    Return a usable access token, refreshing and persisting it if needed.

    A refreshed token is committed before returning, so a crash later in
    the run never loses it. An unrecoverable refresh failure disables the
    integration (token_expired) and is terminal for the run.

    Raises:
        TokenExpiredError: refresh rejected; settings already updated
        ConnectionFailedError: token endpoint unreachable; settings untouched
    """
    now = now or utcnow()

    if token_is_fresh(settings, now):
        return settings.access_token

    logger.info("Access token for user %s expired at %s, refreshing", settings.user_id, settings.token_expires_at)

    try:
        access_token, expires_at = refresher(settings.refresh_token)
    except TokenExpiredError as exc:
        logger.warning("Token refresh rejected for user %s: %s", settings.user_id, exc.error)
        db_service.mark_token_expired(db, settings)
        raise

    db_service.save_refreshed_token(db, settings, access_token, expires_at)
    logger.info("Access token for user %s refreshed, valid until %s", settings.user_id, expires_at)

    return access_token
