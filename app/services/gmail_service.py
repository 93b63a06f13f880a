"""
Gmail message fetching for the transaction sync.

- Builds the search query (transaction vocabulary + time lower bound)
- Lists candidate message ids and fetches full messages
- Maps Gmail/transport failures onto the sync error taxonomy
"""

import base64
import logging
import socket
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.config import (
    GMAIL_MAX_CANDIDATES,
    GMAIL_PAGE_SIZE,
    GMAIL_REQUEST_TIMEOUT,
    SYNC_FIRST_RUN_DAYS,
    SYNC_MAX_LOOKBACK_DAYS,
)
from app.database import utcnow
from app.services.fact_extractor import CandidateMessage
from app.services.sync_errors import (
    SyncError,
    InvalidTokenError,
    ConnectionFailedError,
    QuotaExceededError,
    RateLimitedError,
    PermissionDeniedError,
)
from app.services.text_cleaner import clean_body

logger = logging.getLogger(__name__)

# Receipt/invoice subjects
SUBJECT_KEYWORDS = [
    "receipt", "invoice", "payment", '"order confirmation"', '"payment successful"',
    "UPI", "debited", "credited", "transaction", "txn"
]

# Merchant and bank alert senders
SENDER_KEYWORDS = [
    "razorpay", "stripe", "amazon", "flipkart", "swiggy", "zomato", "uber", "ola",
    "netflix", "spotify", "airtel", "jio", "google", "apple", "phonepe", "paytm",
    "gpay", "bigbasket", "blinkit", "myntra", "ajio", "hdfcbank", "icicibank",
    "sbi", "axisbank", "kotakbank", "yesbank", "idfcbank", "rbl", "federalbank",
    "indusind", "pnb", "bob", "canarabank", "unionbank"
]

MAX_STORED_TEXT = 500


def resolve_since(last_sync_at: Optional[datetime], now: datetime,
                  first_run_days: int = SYNC_FIRST_RUN_DAYS,
                  max_lookback_days: int = SYNC_MAX_LOOKBACK_DAYS) -> datetime:
    """
    Lower bound of the search window.

    last_sync_at when we have one, otherwise the first-run window. A
    last_sync_at in the future (clock skew, bad data) is ignored, and one
    older than max_lookback_days is clamped to it.
    """
    if last_sync_at and last_sync_at <= now:
        return max(last_sync_at, now - timedelta(days=max_lookback_days))
    return now - timedelta(days=first_run_days)


def build_search_query(since: datetime) -> str:
    """
    Gmail search query for transaction emails received on/after `since`.

    Example:
        (subject:(receipt OR ...) OR from:(razorpay OR ...)) after:2025/01/12
    """
    subjects = " OR ".join(SUBJECT_KEYWORDS)
    senders = " OR ".join(SENDER_KEYWORDS)
    return f"(subject:({subjects}) OR from:({senders})) after:{since.strftime('%Y/%m/%d')}"


def build_gmail_service(access_token: str, timeout: int = GMAIL_REQUEST_TIMEOUT):
    """
    Gmail API service authorized with a bare access token.

    Token refresh is the credential manager's job, so 401s are returned
    as HttpError instead of triggering google-auth's automatic refresh.
    """
    creds = Credentials(token=access_token)
    http = AuthorizedHttp(
        creds,
        http=httplib2.Http(timeout=timeout),
        refresh_status_codes=()
    )
    return build("gmail", "v1", http=http, cache_discovery=False)


def map_gmail_error(exc: Exception) -> SyncError:
    """Translate a Gmail API / transport exception into the sync taxonomy."""
    if isinstance(exc, SyncError):
        return exc

    if isinstance(exc, HttpError):
        status = int(exc.resp.status)
        detail = str(exc)

        if status == 401:
            return InvalidTokenError(detail, "Gmail authorization is invalid. Please reconnect your account.")
        if status == 403:
            lowered = detail.lower()
            if "quota" in lowered or "dailylimitexceeded" in lowered:
                return QuotaExceededError(detail)
            return PermissionDeniedError(detail)
        if status == 429:
            return RateLimitedError(detail)
        if status >= 500:
            return ConnectionFailedError(detail)
        return SyncError(detail, "An error occurred while syncing Gmail.")

    if isinstance(exc, RefreshError):
        return InvalidTokenError(str(exc), "Gmail authorization is invalid. Please reconnect your account.")

    if isinstance(exc, (httplib2.HttpLib2Error, TransportError, socket.timeout, OSError)):
        return ConnectionFailedError(str(exc) or type(exc).__name__)

    return SyncError(str(exc))


def _decode(data: str) -> str:
    """Decode Gmail's base64url body data."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")


def _collect_parts(payload: dict, mime_type: str) -> str:
    """Recursively join every part of the given MIME type."""
    text = ""

    if payload.get("mimeType", "") == mime_type:
        data = payload.get("body", {}).get("data", "")
        if data:
            text += _decode(data)

    for part in payload.get("parts", []) or []:
        text += _collect_parts(part, mime_type)

    return text


def extract_body(payload: dict) -> str:
    """
    Message body as clean text.

    Prefers text/plain parts; falls back to text/html converted to
    text, then to a bare single-part body.
    """
    raw = _collect_parts(payload, "text/plain") or _collect_parts(payload, "text/html")

    if not raw and payload.get("body", {}).get("data"):
        raw = _decode(payload["body"]["data"])

    return clean_body(raw)


def _parse_header_date(value: Optional[str], fallback: datetime) -> datetime:
    """RFC 2822 Date header → naive UTC; fallback when missing or unparseable."""
    if not value:
        return fallback
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return fallback
    if parsed is None:
        return fallback
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_message(msg: dict, fetched_at: Optional[datetime] = None) -> CandidateMessage:
    """
    Convert a users.messages.get(format=full) response into a CandidateMessage.

    Args:
        msg: Raw Gmail API message resource
        fetched_at: Used as the message date when the header is unusable

    Returns:
        CandidateMessage with decoded headers and clean body text
    """
    payload = msg.get("payload", {}) or {}
    headers = {
        h.get("name", "").lower(): h.get("value", "")
        for h in payload.get("headers", []) or []
    }

    return CandidateMessage(
        message_id=msg["id"],
        thread_id=msg.get("threadId"),
        subject=headers.get("subject", "") or "",
        sender=headers.get("from", "") or "",
        received_at=_parse_header_date(headers.get("date"), fetched_at or utcnow()),
        body=extract_body(payload),
        snippet=(msg.get("snippet") or "")[:MAX_STORED_TEXT]
    )


class GmailClient:
    """
    Thin wrapper over the Gmail API for one access token.

    Every call re-raises failures as SyncError subclasses.
    """

    def __init__(self, access_token: str, service=None):
        self.service = service or build_gmail_service(access_token)

    def list_message_ids(
        self,
        since: datetime,
        max_results: int = GMAIL_MAX_CANDIDATES,
        page_size: int = GMAIL_PAGE_SIZE
    ) -> List[str]:
        """
        Ids of candidate messages newer than `since`, newest first.

        Follows nextPageToken until the window is exhausted or max_results
        ids were collected, so candidates left over by a capped run are
        listed again on the next one.
        """
        query = build_search_query(since)
        logger.info("Gmail search query: %s", query)

        ids: List[str] = []
        page_token = None

        while len(ids) < max_results:
            params = {"userId": "me", "q": query, "maxResults": min(page_size, max_results - len(ids))}
            if page_token:
                params["pageToken"] = page_token

            try:
                response = self.service.users().messages().list(**params).execute()
            except Exception as exc:
                raise map_gmail_error(exc) from exc

            ids.extend(m["id"] for m in response.get("messages", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        if page_token:
            logger.warning("Listing stopped at %d candidates; older ones wait for a later window", max_results)

        return ids[:max_results]

    def get_message(self, message_id: str) -> CandidateMessage:
        """Fetch and decode one full message."""
        try:
            msg = self.service.users().messages().get(
                userId="me",
                id=message_id,
                format="full"
            ).execute()
        except Exception as exc:
            raise map_gmail_error(exc) from exc

        return parse_message(msg)
