# ================================
# OVERSTAY DETECTION TESTS (test_detection.py)
# ================================

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from conftest import TODAY, detect_record, decide
from overstay_engine.config import settings
from overstay_engine.models.overstay import OverstayRecord, OverstayHistory
from overstay_engine.services.overstay_config_service import OverstayConfigService
from overstay_engine.services.overstay_detection_service import (
    OverstayDetectionService, build_idempotency_key, normalize_date, sweep_cutoff
)


def records_for(db, booking):
    return db.query(OverstayRecord).filter(OverstayRecord.storage_booking_id == booking.id).all()


def history_for(db, record):
    return (
        db.query(OverstayHistory)
        .filter(OverstayHistory.overstay_record_id == record.id)
        .order_by(OverstayHistory.id)
        .all()
    )


class TestDetectionSweep:
    """Creating records for expired bookings"""

    def test_creates_pending_review_record_past_grace(self, db, factory):
        booking = factory.booking(days_overdue=5)

        results = OverstayDetectionService.detect_overstays(db, today=TODAY)

        assert len(results) == 1
        result = results[0]
        assert result.booking_id == booking.id
        assert result.days_overdue == 5
        assert result.is_in_grace_period is False
        assert result.calculated_penalty_cents == 4400
        assert result.status == "pending_review"

        record = records_for(db, booking)[0]
        end_date = TODAY - timedelta(days=5)
        assert record.end_date == end_date
        assert record.grace_period_ends_at == end_date + timedelta(days=3)
        assert record.daily_rate_cents == 2000
        assert record.penalty_rate == Decimal("0.10")
        assert record.idempotency_key == f"booking_{booking.id}_overstay_{end_date.isoformat()}"
        assert record.final_penalty_cents is None

    def test_creation_is_logged(self, db, factory):
        booking = factory.booking(days_overdue=5)
        record = detect_record(db, booking)

        entries = history_for(db, record)
        assert len(entries) == 1
        assert entries[0].event_type == "status_change"
        assert entries[0].event_source == "cron"
        assert entries[0].previous_status is None
        assert entries[0].new_status == "pending_review"
        assert entries[0].payload["calculated_penalty_cents"] == 4400

    def test_record_within_grace_period(self, db, factory):
        booking = factory.booking(days_overdue=2)

        results = OverstayDetectionService.detect_overstays(db, today=TODAY)

        assert results[0].status == "grace_period"
        assert results[0].is_in_grace_period is True
        assert results[0].calculated_penalty_cents == 0
        assert records_for(db, booking)[0].status == "grace_period"

    def test_booking_ending_today_is_not_overdue(self, db, factory):
        factory.booking(days_overdue=0)

        assert OverstayDetectionService.detect_overstays(db, today=TODAY) == []

    def test_booking_ending_yesterday_is_one_day_overdue(self, db, factory):
        factory.booking(days_overdue=1)

        results = OverstayDetectionService.detect_overstays(db, today=TODAY)

        assert results[0].days_overdue == 1

    def test_cancelled_booking_is_never_surfaced(self, db, factory):
        booking = factory.booking(days_overdue=5, status="cancelled")

        assert OverstayDetectionService.detect_overstays(db, today=TODAY) == []
        assert records_for(db, booking) == []

    def test_unpaid_booking_is_ignored(self, db, factory):
        factory.booking(days_overdue=5, payment_status="pending")

        assert OverstayDetectionService.detect_overstays(db, today=TODAY) == []

    def test_checkout_in_progress_is_ignored(self, db, factory):
        factory.booking(days_overdue=5, checkout_status="checkout_requested")
        factory.booking(days_overdue=5, checkout_status="completed")

        assert OverstayDetectionService.detect_overstays(db, today=TODAY) == []

    def test_daily_rate_falls_back_to_booking_total(self, db, factory):
        listing = factory.listing(base_price=None)
        booking = factory.booking(listing=listing, days_overdue=5, booked_days=30, total_price=Decimal("60000"))

        record = detect_record(db, booking)

        assert record.daily_rate_cents == 2000
        assert record.calculated_penalty_cents == 4400


class TestDetectionIdempotence:
    """Repeated sweeps and later days"""

    def test_two_runs_same_day_create_one_record(self, db, factory):
        booking = factory.booking(days_overdue=5)

        OverstayDetectionService.detect_overstays(db, today=TODAY)
        OverstayDetectionService.detect_overstays(db, today=TODAY)

        records = records_for(db, booking)
        assert len(records) == 1
        assert len(history_for(db, records[0])) == 1

    def test_next_day_recalculates(self, db, factory):
        booking = factory.booking(days_overdue=5)
        OverstayDetectionService.detect_overstays(db, today=TODAY)

        results = OverstayDetectionService.detect_overstays(db, today=TODAY + timedelta(days=1))

        assert results[0].days_overdue == 6
        record = records_for(db, booking)[0]
        assert record.calculated_penalty_cents == 6600
        entries = history_for(db, record)
        assert len(entries) == 2
        assert entries[1].previous_status == entries[1].new_status == "pending_review"
        assert entries[1].payload["previous_calculated_penalty_cents"] == 4400

    def test_grace_period_moves_to_pending_review(self, db, factory):
        booking = factory.booking(days_overdue=2)
        OverstayDetectionService.detect_overstays(db, today=TODAY)

        OverstayDetectionService.detect_overstays(db, today=TODAY + timedelta(days=1))

        record = records_for(db, booking)[0]
        assert record.status == "pending_review"
        assert record.days_overdue == 3
        entries = history_for(db, record)
        assert [e.new_status for e in entries] == ["grace_period", "pending_review"]

    def test_recalculation_uses_snapshot_configuration(self, db, factory):
        listing = factory.listing()
        booking = factory.booking(listing=listing, days_overdue=5)
        OverstayDetectionService.detect_overstays(db, today=TODAY)

        listing.overstay_grace_period_days = 0
        listing.overstay_penalty_rate = Decimal("0.50")
        db.commit()
        OverstayDetectionService.detect_overstays(db, today=TODAY + timedelta(days=1))

        record = records_for(db, booking)[0]
        assert record.grace_period_days == 3
        assert record.calculated_penalty_cents == 6600

    def test_waived_record_is_not_reopened(self, db, factory):
        booking = factory.booking(days_overdue=5)
        record = detect_record(db, booking)
        decide(db, record, "waive", waive_reason="First offence")

        results = OverstayDetectionService.detect_overstays(db, today=TODAY + timedelta(days=1))

        assert results == []
        records = records_for(db, booking)
        assert len(records) == 1
        assert records[0].status == "penalty_waived"

    def test_approved_record_is_not_recalculated(self, db, factory):
        booking = factory.booking(days_overdue=5)
        record = detect_record(db, booking)
        decide(db, record, "approve")

        results = OverstayDetectionService.detect_overstays(db, today=TODAY + timedelta(days=1))

        assert results[0].status == "penalty_approved"
        db.refresh(record)
        assert record.days_overdue == 5
        assert record.calculated_penalty_cents == 4400
        assert record.final_penalty_cents == 4400


class TestDetectionFailures:
    """One bad booking does not stop the sweep"""

    def test_failing_booking_is_skipped(self, db, factory):
        unpriced = factory.listing(base_price=None)
        bad = factory.booking(listing=unpriced, days_overdue=5, total_price=None)
        good = factory.booking(days_overdue=5)

        results = OverstayDetectionService.detect_overstays(db, today=TODAY)

        assert [r.booking_id for r in results] == [good.id]
        assert records_for(db, bad) == []
        assert len(records_for(db, good)) == 1


class TestDateHelpers:

    def test_idempotency_key_format(self):
        assert build_idempotency_key(42, TODAY) == "booking_42_overstay_2026-03-15"

    def test_normalize_date_drops_time(self):
        assert normalize_date(datetime(2026, 3, 15, 23, 59)) == TODAY
        assert normalize_date(TODAY) == TODAY

    def test_local_evening_end_is_overdue_next_local_day(self, monkeypatch):
        monkeypatch.setattr(settings, "OVERSTAY_TIMEZONE", "America/Toronto")
        toronto = ZoneInfo("America/Toronto")

        cutoff = sweep_cutoff(TODAY)
        evening = datetime(2026, 3, 15, 1, 30, tzinfo=timezone.utc)    # 21:30 on the 14th in Toronto
        after_midnight = datetime(2026, 3, 15, 5, 0, tzinfo=timezone.utc)  # 01:00 on the 15th in Toronto

        assert cutoff == datetime(2026, 3, 15, tzinfo=toronto)
        assert evening < cutoff
        assert normalize_date(evening) == date(2026, 3, 14)
        assert not after_midnight < cutoff
        assert normalize_date(after_midnight) == TODAY


def overstay_row(booking, status, key):
    return OverstayRecord(
        storage_booking_id=booking.id,
        status=status,
        end_date=TODAY - timedelta(days=5),
        days_overdue=5,
        daily_rate_cents=2000,
        penalty_rate=Decimal("0.10"),
        grace_period_days=3,
        max_penalty_days=30,
        grace_period_ends_at=TODAY - timedelta(days=2),
        calculated_penalty_cents=4400,
        idempotency_key=key
    )


class TestOverlappingSweeps:
    """Only one open record per overstay, even across processes"""

    def test_second_open_record_for_a_key_is_rejected(self, db, factory):
        booking = factory.booking()
        key = build_idempotency_key(booking.id, TODAY - timedelta(days=5))
        db.add(overstay_row(booking, "resolved", key))
        db.add(overstay_row(booking, "pending_review", key))
        db.commit()

        db.add(overstay_row(booking, "grace_period", key))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_concurrent_sweep_updates_instead_of_duplicating(self, db, engine, factory, monkeypatch):
        booking = factory.booking(days_overdue=5)
        OtherSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)
        original_resolve = OverstayConfigService.resolve
        other_sweeps = []
        started = []

        def resolve_while_other_sweep_runs(db, booking):
            if not started:
                started.append(True)
                other = OtherSession()
                try:
                    other_sweeps.append(OverstayDetectionService.detect_overstays(other, today=TODAY))
                finally:
                    other.close()
            return original_resolve(db, booking)

        monkeypatch.setattr(OverstayConfigService, "resolve", resolve_while_other_sweep_runs)

        results = OverstayDetectionService.detect_overstays(db, today=TODAY)

        records = records_for(db, booking)
        assert len(records) == 1
        assert records[0].status == "pending_review"
        assert [r.overstay_record_id for r in other_sweeps[0]] == [records[0].id]
        assert [r.overstay_record_id for r in results] == [records[0].id]
