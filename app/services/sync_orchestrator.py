"""
Gmail Sync Orchestrator.

Drives one sync run for one user:
1. Lock: idle/error → syncing (rejected if another run holds it)
2. Make sure the access token is valid (may end in token_expired)
3. List candidate messages since the last sync
4. Drop ids that already have a record (no body fetch, no batch slot)
5. For each of the first SYNC_BATCH_LIMIT new candidates, in fetch order:
   fetch → extract → reconcile → record → ledger insert
6. Release: syncing → idle, bump total_synced_count. last_sync_at only
   advances when nothing was deferred by the batch cap

Steps 2-3 failing aborts the run (status error / token_expired) and the
mapped SyncError reaches the caller. A failure on one message is logged
and only that message is skipped.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import SYNC_BATCH_LIMIT
from app.database import utcnow
from app.models.imported_transaction import ImportedTransaction
from app.services import db_service
from app.services.credential_manager import Refresher, ensure_valid_token, refresh_access_token
from app.services.duplicate_reconciler import find_duplicate
from app.services.fact_extractor import extract
from app.services.gmail_service import GmailClient, map_gmail_error, resolve_since
from app.services.sync_errors import (
    SyncError,
    NotConnectedError,
    TokenExpiredError,
    SyncInProgressError,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Aggregate counters for one run."""
    candidates: int = 0
    deferred: int = 0  # New candidates left for a later run by the batch cap
    processed: int = 0
    duplicates: int = 0
    imported: int = 0
    needs_review: int = 0

    def count(self, record: ImportedTransaction) -> None:
        self.processed += 1
        if record.is_duplicate:
            self.duplicates += 1
        elif record.is_processed:
            self.imported += 1
        if record.needs_review:
            self.needs_review += 1

    def to_dict(self) -> dict:
        return {
            "success": True,
            "processed": self.processed,
            "duplicates": self.duplicates,
            "imported": self.imported,
            "needs_review": self.needs_review,
        }


def process_message(
    db: Session,
    user_id: str,
    client: GmailClient,
    message_id: str
) -> Optional[ImportedTransaction]:
    """
    Run one candidate through extract → reconcile → write.

    Returns:
        The ImportedTransaction written, or None when the message was
        skipped (already imported, or no usable amount)
    """
    if db_service.is_message_imported(db, user_id, message_id):
        logger.debug("Skipping already processed message %s", message_id)
        return None

    candidate = client.get_message(message_id)
    fact = extract(candidate)

    if fact.amount is None:
        logger.info("No valid transaction in message %s", message_id)
        return None

    duplicate_of = find_duplicate(db, user_id, fact)

    record = db_service.save_imported_transaction(db, user_id, candidate, fact, duplicate_of)
    if record is None or record.is_duplicate:
        return record

    try:
        entry = db_service.insert_ledger_entry(db, record, candidate.subject)
        logger.info("Imported message %s as ledger entry %s", message_id, entry.id)
    except Exception:
        # The record stays unprocessed; it is not retried since the id is now known
        db.rollback()
        logger.exception("Ledger insert failed for message %s", message_id)
        db.refresh(record)

    return record


def run_sync(
    db: Session,
    user_id: str,
    client_factory: Callable[[str], GmailClient] = GmailClient,
    refresher: Refresher = refresh_access_token,
    batch_limit: int = SYNC_BATCH_LIMIT,
    now: Optional[datetime] = None
) -> SyncResult:
    """
    Run one Gmail sync for a user.

    Args:
        db: Database session
        user_id: Owner of the mailbox and the ledger
        client_factory: Builds a Gmail client from an access token
        refresher: Exchanges a refresh token for (access_token, expires_at)
        batch_limit: Max new messages fetched and processed in this run
        now: Run start time (naive UTC); becomes the new last_sync_at
            unless the batch cap deferred candidates

    Returns:
        SyncResult with processed / duplicates / imported / needs_review

    Raises:
        SyncError: any run-level failure, with its taxonomy code
    """
    settings = db_service.get_sync_settings(db, user_id)
    if settings is None or not settings.is_enabled:
        raise NotConnectedError("Gmail sync not enabled")

    now = now or utcnow()

    if not db_service.acquire_sync_lock(db, user_id, now):
        logger.warning("Sync already running for user %s", user_id)
        raise SyncInProgressError("Sync already in progress")

    logger.info("Starting Gmail sync for user %s", user_id)

    try:
        access_token = ensure_valid_token(db, settings, refresher=refresher, now=now)
        since = resolve_since(settings.last_sync_at, now)
        client = client_factory(access_token)
        message_ids = client.list_message_ids(since)
    except TokenExpiredError:
        # Credential manager already moved the settings to token_expired
        raise
    except Exception as exc:
        db.rollback()
        error = map_gmail_error(exc)
        if type(error) is SyncError:
            logger.exception("Unexpected error while preparing sync for user %s", user_id)
        else:
            logger.error("Sync for user %s aborted: %s (%s)", user_id, error.code, error.error)
        db_service.mark_sync_failed(db, settings, error.code)
        if error is exc:
            raise
        raise error from exc

    known = db_service.imported_message_ids(db, user_id, message_ids)
    pending = [message_id for message_id in message_ids if message_id not in known]
    batch = pending[:batch_limit]

    result = SyncResult(candidates=len(message_ids), deferred=len(pending) - len(batch))
    logger.info(
        "Found %d potential transaction emails since %s (%d new, %d deferred to a later run)",
        len(message_ids), since, len(pending), result.deferred
    )

    for message_id in batch:
        try:
            record = process_message(db, user_id, client, message_id)
        except Exception:
            db.rollback()
            logger.exception("Error processing message %s", message_id)
            continue

        if record is not None:
            result.count(record)

    try:
        # Deferred candidates are older than now; keep them inside the next window
        synced_at = None if result.deferred else now
        db_service.mark_sync_complete(db, settings, result.imported, synced_at=synced_at)
    except Exception as exc:
        db.rollback()
        logger.exception("Could not finish sync for user %s", user_id)
        db_service.mark_sync_failed(db, settings, SyncError.code)
        raise SyncError(str(exc)) from exc

    logger.info(
        "Sync complete for user %s: %d processed, %d duplicates, %d imported, %d need review",
        user_id, result.processed, result.duplicates, result.imported, result.needs_review
    )
    return result
