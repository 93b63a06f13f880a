"""
LedgerEntry model - the user's expense ledger.

Rows come from two places:
- Manual entries made through the ledger UI (is_auto_generated=False)
- Entries the Gmail sync inserts (is_auto_generated=True, source_type="email")

The sync only ever inserts; it never edits or deletes ledger rows.
"""

from sqlalchemy import (
    Column, Integer, String, Text, Date, Float, Numeric,
    Boolean, DateTime, Index
)
from sqlalchemy.sql import func
from app.database import Base


class LedgerEntry(Base):
    """One financial record in a user's ledger."""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)

    entry_date = Column(Date, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    category = Column(String(50), default="Other")
    payment_mode = Column(String(20))
    merchant_name = Column(String(255))
    notes = Column(Text)

    # ============ PROVENANCE ============
    is_auto_generated = Column(Boolean, nullable=False, default=False)
    source_type = Column(String(20), default="manual")  # "manual" or "email"
    import_id = Column(Integer)  # auto_imported_transactions.id for email rows
    confidence_score = Column(Float)

    created_at = Column(DateTime, server_default=func.now())

    # Duplicate lookups filter by user, date window and amount band
    __table_args__ = (
        Index("ix_ledger_user_date_amount", "user_id", "entry_date", "amount"),
    )

    def __repr__(self):
        return f"<LedgerEntry(id={self.id}, date={self.entry_date}, amount={self.amount})>"
