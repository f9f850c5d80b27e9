from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from carrier_portal_sync.errors import StoreLockedError
from carrier_portal_sync.models import SyncLogEntry, SyncStatus
from carrier_portal_sync.store import BookStore

from fakes import seed_enrollment


def _entry(carrier_id: str, synced_at: datetime, status: SyncStatus = SyncStatus.COMPLETED) -> SyncLogEntry:
    return SyncLogEntry(
        id=str(uuid.uuid4()),
        carrier_id=carrier_id,
        synced_at=synced_at,
        portal_count=3,
        matched=2,
        disenrolled=1,
        new_found=1,
        status=status,
    )


def test_store_creates_backup(tmp_path: Path) -> None:
    db_path = tmp_path / "book.db"
    s = BookStore(str(db_path))
    try:
        s.ensure_carrier("carrier-test", "Test Carrier")
        s.apply_reconciliation("carrier-test", [], _entry("carrier-test", datetime.now(timezone.utc)))
    finally:
        s.close()

    bak = tmp_path / "book.db.bak"
    assert db_path.exists()
    assert bak.exists()
    assert bak.stat().st_size > 0


def test_store_restores_from_backup_when_db_corrupted(tmp_path: Path) -> None:
    db_path = tmp_path / "book.db"

    # Create a valid DB + backup that already knows about one enrollment.
    s1 = BookStore(str(db_path))
    try:
        eid = seed_enrollment(s1, first="Jane", last="Doe", dob=date(1945, 3, 2))
        s1.apply_reconciliation("carrier-test", [], _entry("carrier-test", datetime.now(timezone.utc)))
    finally:
        s1.close()

    # Corrupt the main DB file.
    db_path.write_bytes(b"not a sqlite db")

    # Re-open: should quarantine the corrupted DB and restore from backup.
    s2 = BookStore(str(db_path))
    try:
        rec = s2.get_enrollment(eid)
        assert rec is not None and rec.is_active
        assert len(s2.list_sync_logs("carrier-test")) == 1
    finally:
        s2.close()

    quarantined = list(tmp_path.glob("book.db.corrupt-*"))
    assert quarantined, "expected quarantined corrupted db file to be created"


def test_active_enrollments_only_includes_live_records(tmp_path: Path) -> None:
    s = BookStore(str(tmp_path / "book.db"))
    try:
        live = seed_enrollment(s, first="Jane", last="Doe", dob=date(1945, 3, 2), enrollment_id="e-1")
        pending_cid = s.add_client(first_name="Pat", last_name="Pend", mbi="1EG4TE5MK73")
        pending = s.add_enrollment(
            client_id=pending_cid, carrier_id="carrier-test", status_code="PENDING", enrollment_id="e-2"
        )
        s.add_enrollment(client_id=pending_cid, carrier_id="carrier-test", status_code="CANCELLED")

        gone_cid = s.add_client(first_name="Gone", last_name="Client", is_active=False)
        s.add_enrollment(client_id=gone_cid, carrier_id="carrier-test")

        snaps = s.active_enrollments("carrier-test")
        assert [x.enrollment_id for x in snaps] == [live, pending]
        assert snaps[0].client_date_of_birth == date(1945, 3, 2)
        assert snaps[1].client_mbi == "1EG4TE5MK73"
        assert snaps[1].display_name() == "Pend, Pat"
    finally:
        s.close()


def test_list_sync_logs_most_recent_first_with_carrier_name(tmp_path: Path) -> None:
    s = BookStore(str(tmp_path / "book.db"))
    try:
        s.ensure_carrier("carrier-a", "Carrier A")
        s.ensure_carrier("carrier-b", "Carrier B")
        t0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        s.append_sync_log(_entry("carrier-a", t0))
        s.append_sync_log(_entry("carrier-b", t0 + timedelta(minutes=5)))
        s.append_sync_log(_entry("carrier-a", t0 + timedelta(minutes=10), SyncStatus.FAILED))

        all_logs = s.list_sync_logs()
        assert [e.carrier_id for e in all_logs] == ["carrier-a", "carrier-b", "carrier-a"]
        assert all_logs[0].status is SyncStatus.FAILED
        assert all_logs[1].carrier_name == "Carrier B"

        only_a = s.list_sync_logs("carrier-a", limit=1)
        assert len(only_a) == 1
        assert only_a[0].synced_at == t0 + timedelta(minutes=10)
    finally:
        s.close()


def test_closed_store_raises(tmp_path: Path) -> None:
    s = BookStore(str(tmp_path / "book.db"))
    s.close()
    with pytest.raises(StoreLockedError):
        s.active_enrollments("carrier-test")
