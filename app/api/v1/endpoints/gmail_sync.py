"""
Gmail Sync API.

- POST /gmail/sync         → run one sync for the caller
- GET  /gmail/sync/status  → current sync state
- GET  /gmail/imports      → transactions imported from Gmail

Failures are raised as SyncError and rendered by the app-level handler
as {"error", "code", "message"} with the matching HTTP status.
"""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.v1.security import get_current_user_id
from app.database import get_db
from app.services import db_service
from app.services.sync_errors import NotConnectedError
from app.services.sync_orchestrator import run_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gmail", tags=["Gmail Sync"])


# ============ Response Schemas ============

class SyncResultResponse(BaseModel):
    """Outcome of one sync run."""
    success: bool
    processed: int
    duplicates: int
    imported: int
    needs_review: int


class SyncStatusResponse(BaseModel):
    is_enabled: bool
    sync_status: str
    last_sync_at: Optional[datetime]
    last_error_code: Optional[str]
    total_synced_count: int
    token_expires_at: Optional[datetime]

    class Config:
        from_attributes = True


class ImportedTransactionResponse(BaseModel):
    """One imported Gmail transaction."""
    id: int
    gmail_message_id: str
    merchant_name: Optional[str]
    category: Optional[str]
    amount: float
    transaction_date: date
    payment_mode: Optional[str]
    confidence_score: Optional[float]
    is_duplicate: bool
    duplicate_of_id: Optional[int]
    linked_ledger_entry_id: Optional[int]
    is_processed: bool
    needs_review: bool
    review_reason: Optional[str]
    source_platform: Optional[str]
    email_subject: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class ImportsListResponse(BaseModel):
    """Paginated list of imported transactions."""
    total: int
    skip: int
    limit: int
    imports: list[ImportedTransactionResponse]


# ============ Endpoints ============

@router.post("/sync", response_model=SyncResultResponse)
def trigger_sync(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Run a Gmail sync for the authenticated user.

    Rejected with 409 SYNC_IN_PROGRESS while another run for the same
    user is active.
    """
    logger.info("Manual Gmail sync triggered by user %s", user_id)
    result = run_sync(db, user_id)
    return result.to_dict()


@router.get("/sync/status", response_model=SyncStatusResponse)
def sync_status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Current sync state for the authenticated user (tokens never exposed)."""
    settings = db_service.get_sync_settings(db, user_id)
    if settings is None:
        raise NotConnectedError("Gmail sync not enabled")
    return settings.to_status_dict()


@router.get("/imports", response_model=ImportsListResponse)
def list_imports(
    skip: int = Query(0, ge=0, description="Offset for pagination"),
    limit: int = Query(50, ge=1, le=100, description="Max results"),
    needs_review: Optional[bool] = Query(None, description="Only records flagged (or not) for review"),
    is_duplicate: Optional[bool] = Query(None, description="Only duplicates (or non-duplicates)"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Transactions imported from Gmail, newest first."""
    imports = db_service.get_imported_transactions(
        db, user_id, skip=skip, limit=limit,
        needs_review=needs_review, is_duplicate=is_duplicate
    )
    total = db_service.get_imported_count(
        db, user_id, needs_review=needs_review, is_duplicate=is_duplicate
    )

    return ImportsListResponse(
        total=total,
        skip=skip,
        limit=limit,
        imports=[ImportedTransactionResponse.model_validate(record) for record in imports]
    )
