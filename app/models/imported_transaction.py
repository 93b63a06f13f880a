"""
ImportedTransaction model - audit trail of every Gmail message the sync kept.

This is the idempotency log:
- One row per (user_id, gmail_message_id), created exactly once
- Written whether or not a ledger entry was created (duplicates included)
- Only linked_ledger_entry_id / is_processed change after insert
"""

from sqlalchemy import (
    Column, Integer, String, Date, Float, Numeric,
    Boolean, DateTime, ForeignKey, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class ImportedTransaction(Base):
    """
    Transaction facts extracted from one Gmail message.

    Messages without an extractable amount never get a row here.
    """
    __tablename__ = "auto_imported_transactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)

    # ============ GMAIL IDENTIFIERS ============
    gmail_message_id = Column(String(64), nullable=False)
    gmail_thread_id = Column(String(64))

    # ============ EXTRACTED FACTS ============
    merchant_name = Column(String(255))
    category = Column(String(50), default="Other")
    amount = Column(Numeric(12, 2), nullable=False)
    transaction_date = Column(Date, nullable=False)
    payment_mode = Column(String(20))
    confidence_score = Column(Float)

    # ============ RECONCILIATION ============
    is_duplicate = Column(Boolean, nullable=False, default=False)
    duplicate_of_id = Column(Integer, ForeignKey("ledger_entries.id"))
    linked_ledger_entry_id = Column(Integer, ForeignKey("ledger_entries.id"))
    is_processed = Column(Boolean, nullable=False, default=False)

    # ============ REVIEW & PROVENANCE ============
    needs_review = Column(Boolean, nullable=False, default=False)
    review_reason = Column(String(255))
    source_platform = Column(String(100))
    email_subject = Column(String(500))
    email_snippet = Column(String(500))
    raw_extracted_data = Column(JSON)

    created_at = Column(DateTime, server_default=func.now())

    duplicate_of = relationship("LedgerEntry", foreign_keys=[duplicate_of_id])
    linked_ledger_entry = relationship("LedgerEntry", foreign_keys=[linked_ledger_entry_id])

    __table_args__ = (
        UniqueConstraint("user_id", "gmail_message_id", name="uq_imports_user_message"),
        Index("ix_imports_user_review", "user_id", "needs_review"),
    )

    def __repr__(self):
        return f"<ImportedTransaction(id={self.id}, message={self.gmail_message_id}, amount={self.amount})>"

