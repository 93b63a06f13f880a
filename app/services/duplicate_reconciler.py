"""
Duplicate detection between extracted facts and the user's ledger.

A fact duplicates a ledger entry when the entry is dated within ±1 day
and its amount lies within ±2% of the fact's amount. Only manually
entered entries count: the user's own record is the canonical one, and
auto-generated entries never suppress a new auto-generated entry, so
genuinely repeated small purchases (the daily coffee) are all kept.

Extraction confidence plays no part in this decision.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.ledger_entry import LedgerEntry
from app.services.fact_extractor import ExtractedFact

logger = logging.getLogger(__name__)

DATE_WINDOW = timedelta(days=1)
AMOUNT_TOLERANCE = Decimal("0.02")


def find_candidates(db: Session, user_id: str, fact: ExtractedFact) -> List[LedgerEntry]:
    """All ledger entries (manual or auto) inside the date window and amount band."""
    min_amount = fact.amount * (1 - AMOUNT_TOLERANCE)
    max_amount = fact.amount * (1 + AMOUNT_TOLERANCE)

    return db.query(LedgerEntry).filter(
        LedgerEntry.user_id == user_id,
        LedgerEntry.entry_date >= fact.transaction_date - DATE_WINDOW,
        LedgerEntry.entry_date <= fact.transaction_date + DATE_WINDOW,
        LedgerEntry.amount >= min_amount,
        LedgerEntry.amount <= max_amount
    ).order_by(LedgerEntry.entry_date, LedgerEntry.id).all()


def find_duplicate(db: Session, user_id: str, fact: ExtractedFact) -> Optional[LedgerEntry]:
    """
    Canonical ledger entry this fact duplicates, if any.

    Args:
        db: Database session
        user_id: Ledger owner
        fact: Extracted fact with a non-null amount

    Returns:
        The earliest matching manual entry, or None when only
        auto-generated entries (or nothing) fall inside the band
    """
    if fact.amount is None:
        return None

    candidates = find_candidates(db, user_id, fact)
    manual = next((entry for entry in candidates if not entry.is_auto_generated), None)

    if manual is not None:
        logger.info("Fact %s on %s duplicates manual entry %s", fact.amount, fact.transaction_date, manual.id)
    elif candidates:
        logger.debug(
            "Fact %s on %s only matches %d auto-generated entries, keeping it",
            fact.amount, fact.transaction_date, len(candidates)
        )

    return manual
