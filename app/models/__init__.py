"""
SQLAlchemy models for the Gmail transaction sync.

This package contains:
- GmailSyncSettings: Per-user credentials and sync status
- ImportedTransaction: One row per processed Gmail message (idempotency log)
- LedgerEntry: The user's expense ledger (manual + auto-generated rows)
"""

from app.models.sync_settings import GmailSyncSettings, SyncStatus
from app.models.imported_transaction import ImportedTransaction
from app.models.ledger_entry import LedgerEntry

__all__ = ["GmailSyncSettings", "SyncStatus", "ImportedTransaction", "LedgerEntry"]
