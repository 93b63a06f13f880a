"""Tests for sync_orchestrator - full runs against a fake Gmail client."""

from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from app.models import ImportedTransaction, LedgerEntry
from app.models.sync_settings import SyncStatus
from app.services import credential_manager, db_service
from app.services.sync_errors import (
    ConnectionFailedError,
    NotConnectedError,
    QuotaExceededError,
    RateLimitedError,
    SyncInProgressError,
    TokenExpiredError,
)
from app.services.sync_orchestrator import SyncResult, run_sync

USER_ID = "user-1"
NOW = datetime(2025, 1, 15, 9, 0, 0)


class TestSuccessfulRun:

    def test_receipt_becomes_ledger_entry(self, db, make_settings, make_receipt, fake_gmail):
        settings = make_settings()
        gmail = fake_gmail([make_receipt("m1")])

        result = run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert result.to_dict() == {
            "success": True, "processed": 1, "duplicates": 0, "imported": 1, "needs_review": 0
        }
        assert gmail.tokens == ["access-1"]

        entry = db.query(LedgerEntry).one()
        assert entry.amount == Decimal("1249.00")
        assert entry.merchant_name == "Swiggy"
        assert entry.category == "Food"
        assert entry.payment_mode == "UPI"
        assert entry.entry_date == date(2025, 1, 12)
        assert entry.is_auto_generated is True
        assert entry.notes == "Auto-imported from Gmail: Your Swiggy order receipt"

        record = db.query(ImportedTransaction).one()
        assert record.linked_ledger_entry_id == entry.id
        assert record.is_processed is True
        assert record.confidence_score == 0.85

        assert settings.sync_status == SyncStatus.IDLE.value
        assert settings.sync_started_at is None
        assert settings.last_sync_at == NOW
        assert settings.total_synced_count == 1

    def test_incremental_window_starts_at_last_sync(self, db, make_settings, fake_gmail):
        make_settings(last_sync_at=NOW - timedelta(hours=2))
        gmail = fake_gmail()

        run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert gmail.list_calls == [NOW - timedelta(hours=2)]

    def test_rerun_is_idempotent(self, db, make_settings, make_receipt, fake_gmail):
        settings = make_settings()
        gmail = fake_gmail([make_receipt("m1"), make_receipt("m2", amount="₹80", merchant="Zomato")])

        run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)
        second = run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW + timedelta(minutes=10))

        assert second.processed == 0
        assert second.imported == 0
        # Known ids are skipped before their bodies are fetched
        assert gmail.fetched == ["m1", "m2"]
        assert db.query(ImportedTransaction).count() == 2
        assert db.query(LedgerEntry).count() == 2
        assert settings.total_synced_count == 2

    def test_batch_cap(self, db, make_settings, make_receipt, fake_gmail):
        make_settings()
        receipts = [make_receipt(f"m{i:02d}") for i in range(80)]
        gmail = fake_gmail(receipts)

        result = run_sync(db, USER_ID, client_factory=gmail.factory, batch_limit=30, now=NOW)

        assert result.processed == 30
        assert result.deferred == 50
        assert gmail.fetched == [r.message_id for r in receipts[:30]]
        assert db.query(ImportedTransaction).count() == 30

    def test_capped_candidates_are_imported_on_later_runs(self, db, make_settings, make_receipt, fake_gmail):
        settings = make_settings()
        # Newest first, all received before the runs start
        receipts = [
            make_receipt(f"m{i:02d}", received_at=NOW - timedelta(hours=1, minutes=i))
            for i in range(80)
        ]
        gmail = fake_gmail(receipts)

        first = run_sync(db, USER_ID, client_factory=gmail.factory, batch_limit=30, now=NOW)

        assert (first.processed, first.imported, first.deferred) == (30, 30, 50)
        assert settings.last_sync_at is None

        second = run_sync(db, USER_ID, client_factory=gmail.factory, batch_limit=30,
                          now=NOW + timedelta(minutes=5))

        assert (second.processed, second.imported, second.deferred) == (30, 30, 20)
        # Already-imported ids neither cost a batch slot nor a body fetch
        assert gmail.fetched == [r.message_id for r in receipts[:60]]
        assert settings.last_sync_at is None

        third = run_sync(db, USER_ID, client_factory=gmail.factory, batch_limit=30,
                         now=NOW + timedelta(minutes=10))

        assert (third.processed, third.imported, third.deferred) == (20, 20, 0)
        assert settings.last_sync_at == NOW + timedelta(minutes=10)
        assert db.query(ImportedTransaction).count() == 80
        assert db.query(LedgerEntry).count() == 80
        assert settings.total_synced_count == 80

    def test_message_without_amount_is_skipped(self, db, make_settings, make_receipt, fake_gmail):
        make_settings()
        receipt = make_receipt("m1")
        receipt.body = "Your order has been shipped"
        receipt.subject = "Shipping update"
        gmail = fake_gmail([receipt])

        result = run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert result.processed == 0
        assert db.query(ImportedTransaction).count() == 0

    def test_low_confidence_is_still_imported(self, db, make_settings, make_receipt, fake_gmail):
        make_settings()
        receipt = make_receipt("m1", amount="₹349", merchant="Corner Cafe", sender="billing@cornercafe.example")
        gmail = fake_gmail([receipt])

        result = run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert result.imported == 1
        assert result.needs_review == 1
        entry = db.query(LedgerEntry).one()
        assert entry.category == "Other"
        assert entry.merchant_name is None
        assert entry.confidence_score == 0.6


class TestReconciliation:

    def test_manual_entry_suppresses_import(self, db, make_settings, make_receipt, fake_gmail, add_ledger_entry):
        make_settings()
        manual = add_ledger_entry(date(2025, 1, 13), Decimal("1240.00"))
        gmail = fake_gmail([make_receipt("m1")])

        result = run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert result.duplicates == 1
        assert result.imported == 0
        record = db.query(ImportedTransaction).one()
        assert record.is_duplicate is True
        assert record.duplicate_of_id == manual.id
        assert record.is_processed is False
        assert record.linked_ledger_entry_id is None
        assert db.query(LedgerEntry).count() == 1

    def test_repeated_purchases_are_all_imported(self, db, make_settings, make_receipt, fake_gmail):
        make_settings()
        gmail = fake_gmail([
            make_receipt("m1", amount="₹180", merchant="Zomato"),
            make_receipt("m2", amount="₹180", merchant="Zomato"),
        ])

        result = run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert result.imported == 2
        assert result.duplicates == 0
        assert db.query(LedgerEntry).filter(LedgerEntry.is_auto_generated.is_(True)).count() == 2


class TestTokenHandling:

    def test_expired_token_is_refreshed_transparently(self, db, make_settings, make_receipt, fake_gmail, refresher):
        settings = make_settings(token_expires_at=NOW - timedelta(minutes=1))
        gmail = fake_gmail([make_receipt("m1")])

        result = run_sync(db, USER_ID, client_factory=gmail.factory, refresher=refresher, now=NOW)

        assert result.imported == 1
        refresher.assert_called_once_with("refresh-1")
        assert gmail.tokens == ["access-2"]
        assert settings.access_token == "access-2"

    def test_rejected_refresh_ends_run_before_fetching(self, db, make_settings, fake_gmail):
        settings = make_settings(token_expires_at=NOW - timedelta(minutes=1))
        gmail = fake_gmail()
        refresher = MagicMock(side_effect=TokenExpiredError("invalid_grant"))

        with pytest.raises(TokenExpiredError):
            run_sync(db, USER_ID, client_factory=gmail.factory, refresher=refresher, now=NOW)

        assert gmail.tokens == []
        assert gmail.list_calls == []
        assert settings.sync_status == SyncStatus.TOKEN_EXPIRED.value
        assert settings.is_enabled is False
        assert settings.sync_started_at is None

        with pytest.raises(NotConnectedError):
            run_sync(db, USER_ID, client_factory=gmail.factory, refresher=refresher, now=NOW)

    def test_token_endpoint_outage_keeps_sync_enabled(self, db, make_settings, fake_gmail, monkeypatch):
        settings = make_settings(token_expires_at=NOW - timedelta(minutes=1))

        class OutageCredentials:
            def __init__(self, **kwargs):
                self.token = None
                self.expiry = None

            def refresh(self, request):
                raise RefreshError("backendError: try later", retryable=True)

        monkeypatch.setattr(credential_manager, "Credentials", OutageCredentials)
        gmail = fake_gmail()

        with pytest.raises(ConnectionFailedError):
            run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert gmail.list_calls == []
        assert settings.sync_status == SyncStatus.ERROR.value
        assert settings.last_error_code == "CONNECTION_FAILED"
        assert settings.is_enabled is True
        assert settings.refresh_token == "refresh-1"

    def test_unreachable_token_endpoint(self, db, make_settings, fake_gmail):
        settings = make_settings(token_expires_at=NOW - timedelta(minutes=1))
        refresher = MagicMock(side_effect=ConnectionFailedError("timed out"))

        with pytest.raises(ConnectionFailedError):
            run_sync(db, USER_ID, client_factory=fake_gmail().factory, refresher=refresher, now=NOW)

        assert settings.sync_status == SyncStatus.ERROR.value
        assert settings.last_error_code == "CONNECTION_FAILED"
        assert settings.is_enabled is True


class TestFailures:

    def test_listing_failure_marks_error(self, db, make_settings, fake_gmail):
        settings = make_settings()
        gmail = fake_gmail(list_error=QuotaExceededError("quota exceeded"))

        with pytest.raises(QuotaExceededError):
            run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert settings.sync_status == SyncStatus.ERROR.value
        assert settings.last_error_code == "QUOTA_EXCEEDED"
        assert settings.sync_started_at is None
        assert settings.last_sync_at is None

    def test_raw_api_error_is_mapped(self, db, make_settings, fake_gmail):
        settings = make_settings()
        gmail = fake_gmail(list_error=HttpError(httplib2.Response({"status": 429}), b"{}"))

        with pytest.raises(RateLimitedError):
            run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert settings.last_error_code == "RATE_LIMIT_EXCEEDED"

    def test_error_status_recovers_on_next_run(self, db, make_settings, make_receipt, fake_gmail):
        settings = make_settings(sync_status=SyncStatus.ERROR.value, last_error_code="QUOTA_EXCEEDED")

        run_sync(db, USER_ID, client_factory=fake_gmail([make_receipt("m1")]).factory, now=NOW)

        assert settings.sync_status == SyncStatus.IDLE.value
        assert settings.last_error_code is None

    def test_one_bad_message_does_not_abort_the_run(self, db, make_settings, make_receipt, fake_gmail):
        settings = make_settings()
        gmail = fake_gmail(
            [make_receipt("m1"), make_receipt("m2"), make_receipt("m3", amount="₹75")],
            fail_ids={"m2"}
        )

        result = run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert result.processed == 2
        assert result.imported == 2
        assert {r.gmail_message_id for r in db.query(ImportedTransaction)} == {"m1", "m3"}
        assert settings.sync_status == SyncStatus.IDLE.value

    def test_failed_ledger_insert_leaves_record_unprocessed(
        self, db, make_settings, make_receipt, fake_gmail, monkeypatch
    ):
        make_settings()

        def broken_insert(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(db_service, "insert_ledger_entry", broken_insert)

        result = run_sync(db, USER_ID, client_factory=fake_gmail([make_receipt("m1")]).factory, now=NOW)

        assert result.processed == 1
        assert result.imported == 0
        record = db.query(ImportedTransaction).one()
        assert record.is_processed is False
        assert db.query(LedgerEntry).count() == 0


class TestRunPreconditions:

    def test_not_connected(self, db, fake_gmail):
        with pytest.raises(NotConnectedError):
            run_sync(db, USER_ID, client_factory=fake_gmail().factory, now=NOW)

    def test_disabled(self, db, make_settings, fake_gmail):
        make_settings(is_enabled=False)

        with pytest.raises(NotConnectedError):
            run_sync(db, USER_ID, client_factory=fake_gmail().factory, now=NOW)

    def test_concurrent_run_is_rejected(self, db, make_settings, fake_gmail):
        settings = make_settings(sync_status=SyncStatus.SYNCING.value, sync_started_at=NOW - timedelta(minutes=2))
        gmail = fake_gmail()

        with pytest.raises(SyncInProgressError):
            run_sync(db, USER_ID, client_factory=gmail.factory, now=NOW)

        assert gmail.tokens == []
        assert settings.sync_status == SyncStatus.SYNCING.value
        assert settings.sync_started_at == NOW - timedelta(minutes=2)

    def test_stuck_run_is_taken_over(self, db, make_settings, make_receipt, fake_gmail):
        make_settings(sync_status=SyncStatus.SYNCING.value, sync_started_at=NOW - timedelta(hours=1))

        result = run_sync(db, USER_ID, client_factory=fake_gmail([make_receipt("m1")]).factory, now=NOW)

        assert result.imported == 1


def test_result_counts():
    result = SyncResult()
    result.count(ImportedTransaction(is_duplicate=True, is_processed=False, needs_review=True))
    result.count(ImportedTransaction(is_duplicate=False, is_processed=True, needs_review=False))
    result.count(ImportedTransaction(is_duplicate=False, is_processed=False, needs_review=False))

    assert result.to_dict() == {
        "success": True, "processed": 3, "duplicates": 1, "imported": 1, "needs_review": 1
    }
