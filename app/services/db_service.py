"""
Database service layer for the Gmail transaction sync.

This module provides the persistence the sync needs:
- Sync settings: run lock, token updates, status transitions
- Imported transactions: idempotent per-message records
- Ledger entries: auto-generated inserts linked back to their import
- Listing queries for the imports API
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import SYNC_STALE_AFTER_MINUTES
from app.database import utcnow
from app.models.imported_transaction import ImportedTransaction
from app.models.ledger_entry import LedgerEntry
from app.models.sync_settings import GmailSyncSettings, SyncStatus
from app.services.fact_extractor import CandidateMessage, ExtractedFact

logger = logging.getLogger(__name__)

MAX_STORED_TEXT = 500
LEDGER_NOTE_SUBJECT_CHARS = 100
EMAIL_SOURCE_TYPE = "email"


# ============ SYNC SETTINGS ============

def get_sync_settings(db: Session, user_id: str) -> Optional[GmailSyncSettings]:
    return db.query(GmailSyncSettings).filter(
        GmailSyncSettings.user_id == user_id
    ).first()


def acquire_sync_lock(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    stale_after_minutes: int = SYNC_STALE_AFTER_MINUTES
) -> bool:
    """
    Atomically move the user's sync into `syncing`.

    The UPDATE only matches when no run holds the lock, or when the
    holder's sync_started_at is older than the staleness timeout (a
    crashed run). Two concurrent callers cannot both get rowcount 1.

    Returns:
        True if this caller now owns the run
    """
    now = now or utcnow()
    stale_cutoff = now - timedelta(minutes=stale_after_minutes)

    updated = db.query(GmailSyncSettings).filter(
        GmailSyncSettings.user_id == user_id,
        or_(
            GmailSyncSettings.sync_status != SyncStatus.SYNCING.value,
            GmailSyncSettings.sync_started_at.is_(None),
            GmailSyncSettings.sync_started_at < stale_cutoff
        )
    ).update(
        {
            GmailSyncSettings.sync_status: SyncStatus.SYNCING.value,
            GmailSyncSettings.sync_started_at: now
        },
        synchronize_session=False
    )
    db.commit()

    return updated == 1


def save_refreshed_token(
    db: Session,
    settings: GmailSyncSettings,
    access_token: str,
    expires_at: datetime
) -> GmailSyncSettings:
    settings.access_token = access_token
    settings.token_expires_at = expires_at
    db.commit()
    db.refresh(settings)
    return settings


def mark_token_expired(db: Session, settings: GmailSyncSettings) -> GmailSyncSettings:
    """Refresh token is dead: disable the integration until the user reconnects."""
    settings.sync_status = SyncStatus.TOKEN_EXPIRED.value
    settings.is_enabled = False
    settings.sync_started_at = None
    settings.last_error_code = "TOKEN_EXPIRED"
    db.commit()
    db.refresh(settings)
    return settings


def mark_sync_failed(db: Session, settings: GmailSyncSettings, error_code: str) -> GmailSyncSettings:
    """Recoverable failure: the next run retries from the same last_sync_at."""
    settings.sync_status = SyncStatus.ERROR.value
    settings.sync_started_at = None
    settings.last_error_code = error_code
    db.commit()
    db.refresh(settings)
    return settings


def mark_sync_complete(
    db: Session,
    settings: GmailSyncSettings,
    imported_count: int,
    synced_at: Optional[datetime]
) -> GmailSyncSettings:
    """
    Release the run lock after a finished run.

    synced_at=None keeps last_sync_at where it was, so candidates the run
    had to leave behind are still inside the next run's search window.
    """
    settings.sync_status = SyncStatus.IDLE.value
    settings.sync_started_at = None
    if synced_at is not None:
        settings.last_sync_at = synced_at
    settings.last_error_code = None
    settings.total_synced_count = (settings.total_synced_count or 0) + imported_count
    db.commit()
    db.refresh(settings)
    return settings


# ============ IMPORTED TRANSACTIONS ============

def is_message_imported(db: Session, user_id: str, gmail_message_id: str) -> bool:
    return db.query(ImportedTransaction.id).filter(
        ImportedTransaction.user_id == user_id,
        ImportedTransaction.gmail_message_id == gmail_message_id
    ).first() is not None


def imported_message_ids(db: Session, user_id: str, gmail_message_ids: list[str]) -> set[str]:
    """Which of the given message ids already have an import record."""
    if not gmail_message_ids:
        return set()

    rows = db.query(ImportedTransaction.gmail_message_id).filter(
        ImportedTransaction.user_id == user_id,
        ImportedTransaction.gmail_message_id.in_(gmail_message_ids)
    ).all()
    return {row[0] for row in rows}


def source_platform(fact: ExtractedFact, sender: str) -> str:
    """Merchant name, else the sender's domain, else "Email"."""
    if fact.merchant_name:
        return fact.merchant_name

    match = re.search(r'@([a-z0-9-]+)\.', sender or "", re.IGNORECASE)
    return match.group(1) if match else "Email"


def save_imported_transaction(
    db: Session,
    user_id: str,
    candidate: CandidateMessage,
    fact: ExtractedFact,
    duplicate_of: Optional[LedgerEntry] = None
) -> Optional[ImportedTransaction]:
    """
    Record one processed message.

    Returns:
        The new record, or None if (user_id, gmail_message_id) was already
        recorded (unique constraint hit by an overlapping run)
    """
    record = ImportedTransaction(
        user_id=user_id,
        gmail_message_id=candidate.message_id,
        gmail_thread_id=candidate.thread_id,
        merchant_name=fact.merchant_name,
        category=fact.category,
        amount=fact.amount,
        transaction_date=fact.transaction_date,
        payment_mode=fact.payment_mode.value,
        confidence_score=fact.confidence,
        is_duplicate=duplicate_of is not None,
        duplicate_of_id=duplicate_of.id if duplicate_of is not None else None,
        is_processed=False,
        needs_review=fact.needs_review,
        review_reason="Low extraction confidence - please verify" if fact.needs_review else None,
        source_platform=source_platform(fact, candidate.sender),
        email_subject=(candidate.subject or "")[:MAX_STORED_TEXT],
        email_snippet=(candidate.snippet or "")[:MAX_STORED_TEXT],
        raw_extracted_data={
            "from": candidate.sender,
            "category": fact.category,
            "full_amount": str(fact.amount),
        }
    )

    db.add(record)

    try:
        db.commit()
        db.refresh(record)
        return record
    except IntegrityError:
        db.rollback()
        logger.info("Message %s already recorded for user %s", candidate.message_id, user_id)
        return None


def insert_ledger_entry(
    db: Session,
    record: ImportedTransaction,
    subject: str
) -> LedgerEntry:
    """
    Insert the auto-generated ledger entry for an import and link the two.

    Entry and back-link are committed together.
    """
    entry = LedgerEntry(
        user_id=record.user_id,
        entry_date=record.transaction_date,
        amount=record.amount,
        category=record.category,
        payment_mode=record.payment_mode,
        merchant_name=record.merchant_name,
        notes=f"Auto-imported from Gmail: {(subject or '')[:LEDGER_NOTE_SUBJECT_CHARS]}",
        is_auto_generated=True,
        source_type=EMAIL_SOURCE_TYPE,
        import_id=record.id,
        confidence_score=record.confidence_score
    )

    db.add(entry)
    db.flush()

    record.linked_ledger_entry_id = entry.id
    record.is_processed = True

    db.commit()
    db.refresh(entry)
    return entry


def get_imported_transactions(
    db: Session,
    user_id: str,
    skip: int = 0,
    limit: int = 50,
    needs_review: Optional[bool] = None,
    is_duplicate: Optional[bool] = None
) -> list[ImportedTransaction]:
    """
    Imported records for a user, newest first.

    Args:
        needs_review: Only flagged (True) / unflagged (False) records
        is_duplicate: Only duplicates (True) / non-duplicates (False)
    """
    query = _imports_query(db.query(ImportedTransaction), user_id, needs_review, is_duplicate)
    query = query.order_by(ImportedTransaction.created_at.desc(), ImportedTransaction.id.desc())
    return query.offset(skip).limit(limit).all()


def get_imported_count(
    db: Session,
    user_id: str,
    needs_review: Optional[bool] = None,
    is_duplicate: Optional[bool] = None
) -> int:
    """Total count of imported records for pagination."""
    query = _imports_query(db.query(func.count(ImportedTransaction.id)), user_id, needs_review, is_duplicate)
    return query.scalar()


def _imports_query(query, user_id: str, needs_review: Optional[bool], is_duplicate: Optional[bool]):
    query = query.filter(ImportedTransaction.user_id == user_id)
    if needs_review is not None:
        query = query.filter(ImportedTransaction.needs_review == needs_review)
    if is_duplicate is not None:
        query = query.filter(ImportedTransaction.is_duplicate == is_duplicate)
    return query
