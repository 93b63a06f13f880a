"""
GmailSyncSettings model - per-user mailbox connection and sync state.

Stores:
- OAuth access/refresh tokens and access-token expiry
- The sync status machine (idle -> syncing -> idle/error/token_expired)
- Incremental sync bookkeeping (last_sync_at, total_synced_count)
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime
from sqlalchemy.sql import func
from app.database import Base
import enum


class SyncStatus(str, enum.Enum):
    """Status of a user's Gmail sync."""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    TOKEN_EXPIRED = "token_expired"


class GmailSyncSettings(Base):
    """
    One row per user, created by the OAuth connect flow.

    Persists across server restarts; the sync_status column doubles as the
    per-user run lock (see db_service.acquire_sync_lock).
    """
    __tablename__ = "gmail_sync_settings"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    is_enabled = Column(Boolean, nullable=False, default=True)

    # ============ CREDENTIALS ============
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)

    # ============ SYNC STATE ============
    sync_status = Column(String(20), nullable=False, default=SyncStatus.IDLE.value)
    sync_started_at = Column(DateTime)  # Set while a run holds the lock
    last_sync_at = Column(DateTime)
    last_error_code = Column(String(32))
    total_synced_count = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<GmailSyncSettings(user_id={self.user_id}, status={self.sync_status})>"

    def to_status_dict(self) -> dict:
        """Public view of the sync state (never exposes tokens)."""
        return {
            "is_enabled": self.is_enabled,
            "sync_status": self.sync_status,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_error_code": self.last_error_code,
            "total_synced_count": self.total_synced_count or 0,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None
        }
