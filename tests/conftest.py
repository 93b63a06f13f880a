"""
Shared test fixtures.

Every test gets a fresh in-memory SQLite database; Gmail and Google's
token endpoint are replaced by in-process fakes.
"""

import os

# Must be set before app.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import GmailSyncSettings, LedgerEntry
from app.services.fact_extractor import CandidateMessage

USER_ID = "user-1"
NOW = datetime(2025, 1, 15, 9, 0, 0)


class FakeGmailClient:
    """
    Stands in for GmailClient.

    Messages are listed in insertion order (newest first, like Gmail),
    limited to those received on or after `since`. Every call is recorded
    so tests can assert what was (not) fetched.
    """

    def __init__(self, messages=None, list_error=None, fail_ids=()):
        self.messages = {m.message_id: m for m in (messages or [])}
        self.list_error = list_error
        self.fail_ids = set(fail_ids)
        self.tokens = []
        self.list_calls = []
        self.fetched = []

    def factory(self, access_token):
        self.tokens.append(access_token)
        return self

    def list_message_ids(self, since, max_results=500, page_size=50):
        self.list_calls.append(since)
        if self.list_error is not None:
            raise self.list_error
        listed = [mid for mid, m in self.messages.items() if m.received_at >= since]
        return listed[:max_results]

    def get_message(self, message_id):
        self.fetched.append(message_id)
        if message_id in self.fail_ids:
            raise RuntimeError(f"boom while fetching {message_id}")
        return self.messages[message_id]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def make_settings(db):
    """Create the user's GmailSyncSettings row (connected, token valid for an hour)."""
    def _make(**overrides):
        values = {
            "user_id": USER_ID,
            "is_enabled": True,
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "token_expires_at": NOW + timedelta(hours=1),
        }
        values.update(overrides)
        settings = GmailSyncSettings(**values)
        db.add(settings)
        db.commit()
        db.refresh(settings)
        return settings
    return _make


@pytest.fixture
def add_ledger_entry(db):
    """Insert a ledger row; manual unless is_auto_generated=True."""
    def _add(entry_date, amount, is_auto_generated=False, user_id=USER_ID, **extra):
        entry = LedgerEntry(
            user_id=user_id,
            entry_date=entry_date,
            amount=amount,
            is_auto_generated=is_auto_generated,
            source_type="email" if is_auto_generated else "manual",
            **extra
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry
    return _add


@pytest.fixture
def make_receipt():
    """Build a CandidateMessage that reads like a merchant receipt."""
    def _make(message_id, amount="₹1,249.00", merchant="Swiggy", on="12 Jan 2025",
              subject=None, sender=None, received_at=NOW):
        return CandidateMessage(
            message_id=message_id,
            thread_id=f"thread-{message_id}",
            subject=subject or f"Your {merchant} order receipt",
            sender=sender or f"{merchant} <noreply@{merchant.lower()}.in>",
            received_at=received_at,
            body=f"Order delivered on {on}. Amount paid: {amount} via UPI.",
            snippet=f"Amount paid: {amount}"
        )
    return _make


@pytest.fixture
def fake_gmail():
    def _make(messages=None, **kwargs):
        return FakeGmailClient(messages, **kwargs)
    return _make


@pytest.fixture
def refresher():
    """Token endpoint that always hands out a fresh one-hour token."""
    return MagicMock(return_value=("access-2", NOW + timedelta(hours=1)))
