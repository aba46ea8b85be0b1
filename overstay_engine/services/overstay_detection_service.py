# ================================
# OVERSTAY DETECTION SERVICE (services/overstay_detection_service.py)
# ================================

from typing import Optional, List
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from zoneinfo import ZoneInfo
import logging

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from overstay_engine.config import settings
from overstay_engine.models.overstay import (
    OverstayRecord, OverstayStatus, OverstayEventType, OverstayEventSource
)
from overstay_engine.models.storage import (
    StorageBooking, StorageListing, BookingStatus, PaymentStatus, CHECKOUT_IN_PROGRESS_STATUSES
)
from overstay_engine.schemas.overstay import OverstayDetectionResult
from overstay_engine.services.overstay_config_service import OverstayConfigService
from overstay_engine.services.penalty_calculation_service import PenaltyCalculationService
from overstay_engine.services.overstay_state_machine import OverstayStateMachine
from overstay_engine.core.exceptions import ValidationError
from overstay_engine.utils.audit import audit_logger

logger = logging.getLogger(__name__)

def current_date() -> date:
    """Today's date in the configured overstay timezone"""
    return datetime.now(ZoneInfo(settings.OVERSTAY_TIMEZONE)).date()

def normalize_date(value) -> date:
    """Midnight-normalize a booking date"""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(ZoneInfo(settings.OVERSTAY_TIMEZONE))
        return value.date()
    return value

def sweep_cutoff(today: date) -> datetime:
    """Local midnight starting ``today``; bookings ending before it are overdue"""
    return datetime.combine(today, time.min, tzinfo=ZoneInfo(settings.OVERSTAY_TIMEZONE))

def build_idempotency_key(booking_id: int, end_date: date) -> str:
    return f"booking_{booking_id}_overstay_{end_date.isoformat()}"

class OverstayDetectionService:
    """Periodic sweep that turns overdue bookings into overstay records"""

    # The detector only recalculates records that no manager has acted on yet
    DETECTOR_MUTABLE_STATUSES = (
        OverstayStatus.DETECTED,
        OverstayStatus.GRACE_PERIOD,
        OverstayStatus.PENDING_REVIEW,
    )

    @staticmethod
    def get_daily_rate_cents(booking: StorageBooking) -> int:
        """
        Daily storage rate in cents from the booking's stored pricing.

        Uses the listing's base price; falls back to the booking total spread
        over the booked days.
        """
        listing = booking.storage_listing
        if listing is not None and listing.base_price is not None:
            return int(Decimal(str(listing.base_price)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))

        if booking.total_price is not None and booking.start_date and booking.end_date:
            booked_days = (normalize_date(booking.end_date) - normalize_date(booking.start_date)).days
            if booked_days > 0:
                per_day = Decimal(str(booking.total_price)) / Decimal(booked_days)
                return int(per_day.quantize(Decimal('1'), rounding=ROUND_HALF_UP))

        raise ValidationError(f"No pricing available to derive a daily rate for booking {booking.id}")

    @staticmethod
    def find_candidate_bookings(db: Session, today: date) -> List[StorageBooking]:
        """Confirmed, paid bookings whose end date is before today"""
        # end_date < local midnight today <=> normalized end date strictly before today
        midnight = sweep_cutoff(today)
        return db.execute(
            select(StorageBooking)
            .join(StorageListing, StorageBooking.storage_listing_id == StorageListing.id)
            .where(
                StorageBooking.end_date < midnight,
                StorageBooking.status == BookingStatus.CONFIRMED,
                StorageBooking.payment_status == PaymentStatus.PAID,
                or_(
                    StorageBooking.checkout_status.is_(None),
                    StorageBooking.checkout_status.not_in(CHECKOUT_IN_PROGRESS_STATUSES)
                )
            )
            .order_by(StorageBooking.end_date.asc(), StorageBooking.id.asc())
        ).scalars().all()

    @staticmethod
    def detect_overstays(db: Session, today: Optional[date] = None) -> List[OverstayDetectionResult]:
        """
        Detect expired storage bookings and create or update their overstay records.

        Each booking is processed in its own transaction. A failure on one
        booking is rolled back and logged; the sweep continues with the rest.
        Overlapping sweeps (other workers, the command line script) cannot
        open a second record for the same overstay: the open-record unique
        index rejects it and the booking is retried as an update.
        """
        today = today or current_date()
        bookings = OverstayDetectionService.find_candidate_bookings(db, today)
        booking_ids = [booking.id for booking in bookings]
        logger.info(f"Overstay sweep for {today.isoformat()}: {len(booking_ids)} candidate bookings")

        results: List[OverstayDetectionResult] = []
        failed = 0

        for booking_id in booking_ids:
            try:
                result = OverstayDetectionService._process_in_transaction(db, booking_id, today)
                if result is not None:
                    results.append(result)
            except Exception as e:
                db.rollback()
                failed += 1
                logger.error(f"Error processing booking {booking_id} for overstay: {e}", exc_info=True)

        logger.info(
            f"Overstay sweep finished: {len(results)} processed, {failed} failed, "
            f"{len(booking_ids) - len(results) - failed} skipped"
        )
        return results

    @staticmethod
    def _process_in_transaction(db: Session, booking_id: int, today: date) -> Optional[OverstayDetectionResult]:
        try:
            result = OverstayDetectionService._process_booking(db, booking_id, today)
            db.commit()
            return result
        except IntegrityError:
            # Another sweep opened the record first; update that one instead
            db.rollback()
            logger.info(f"Overstay for booking {booking_id} was recorded concurrently, updating it")

        result = OverstayDetectionService._process_booking(db, booking_id, today)
        db.commit()
        return result

    @staticmethod
    def _process_booking(db: Session, booking_id: int, today: date) -> Optional[OverstayDetectionResult]:
        booking = db.get(StorageBooking, booking_id)
        if booking is None:
            return None

        # Status can change between the candidate query and this transaction
        if booking.status != BookingStatus.CONFIRMED or booking.payment_status != PaymentStatus.PAID:
            return None

        end_date = normalize_date(booking.end_date)
        days_overdue = (today - end_date).days
        if days_overdue <= 0:
            return None

        idempotency_key = build_idempotency_key(booking.id, end_date)
        existing = db.execute(
            select(OverstayRecord)
            .where(OverstayRecord.idempotency_key == idempotency_key)
            .order_by(OverstayRecord.id.desc())
            .limit(1)
            .with_for_update()
        ).scalar_one_or_none()

        if existing is None:
            return OverstayDetectionService._create_record(db, booking, end_date, days_overdue, today, idempotency_key)

        if OverstayStateMachine.is_terminal(existing.status):
            # The episode is closed; a new end date starts a new episode
            logger.debug(f"Booking {booking.id} overstay {existing.id} already {existing.status}, skipping")
            return None

        return OverstayDetectionService._update_record(db, booking, existing, days_overdue, today)

    @staticmethod
    def _create_record(
        db: Session,
        booking: StorageBooking,
        end_date: date,
        days_overdue: int,
        today: date,
        idempotency_key: str
    ) -> OverstayDetectionResult:
        config = OverstayConfigService.resolve(db, booking)
        daily_rate_cents = OverstayDetectionService.get_daily_rate_cents(booking)
        calculation = PenaltyCalculationService.calculate(
            days_overdue=days_overdue,
            grace_period_days=config.grace_period_days,
            daily_rate_cents=daily_rate_cents,
            penalty_rate=config.penalty_rate,
            max_penalty_days=config.max_penalty_days
        )

        grace_period_ends_at = end_date + timedelta(days=config.grace_period_days)
        is_in_grace_period = today < grace_period_ends_at
        status = OverstayStatus.GRACE_PERIOD if is_in_grace_period else OverstayStatus.PENDING_REVIEW

        record = OverstayRecord(
            storage_booking_id=booking.id,
            end_date=end_date,
            days_overdue=days_overdue,
            daily_rate_cents=daily_rate_cents,
            penalty_rate=config.penalty_rate,
            grace_period_days=config.grace_period_days,
            max_penalty_days=config.max_penalty_days,
            grace_period_ends_at=grace_period_ends_at,
            calculated_penalty_cents=calculation.calculated_penalty_cents,
            idempotency_key=idempotency_key
        )
        OverstayStateMachine.initialize(
            db,
            record,
            status,
            event_source=OverstayEventSource.CRON,
            description=f"Overstay detected. Days overdue: {days_overdue}",
            details={
                "days_overdue": days_overdue,
                "daily_rate_cents": daily_rate_cents,
                "penalty_rate": config.penalty_rate,
                "grace_period_days": config.grace_period_days,
                "max_penalty_days": config.max_penalty_days,
                "penalty_days": calculation.penalty_days,
                "calculated_penalty_cents": calculation.calculated_penalty_cents,
            }
        )

        logger.info(
            f"Created overstay record {record.id} for booking {booking.id}: "
            f"{days_overdue} days overdue, in grace period: {is_in_grace_period}, "
            f"penalty {calculation.calculated_penalty_cents} cents"
        )

        return OverstayDetectionResult(
            booking_id=booking.id,
            chef_id=booking.chef_id,
            overstay_record_id=record.id,
            days_overdue=days_overdue,
            grace_period_ends_at=grace_period_ends_at,
            is_in_grace_period=is_in_grace_period,
            calculated_penalty_cents=calculation.calculated_penalty_cents,
            daily_rate_cents=daily_rate_cents,
            penalty_rate=config.penalty_rate,
            status=record.status
        )

    @staticmethod
    def _update_record(
        db: Session,
        booking: StorageBooking,
        record: OverstayRecord,
        days_overdue: int,
        today: date
    ) -> OverstayDetectionResult:
        is_in_grace_period = today < record.grace_period_ends_at

        if OverstayStateMachine.to_status(record.status) in OverstayDetectionService.DETECTOR_MUTABLE_STATUSES:
            # Recompute from the snapshot taken at detection time
            calculation = PenaltyCalculationService.calculate(
                days_overdue=days_overdue,
                grace_period_days=record.grace_period_days,
                daily_rate_cents=record.daily_rate_cents,
                penalty_rate=record.penalty_rate,
                max_penalty_days=record.max_penalty_days
            )
            previous_days = record.days_overdue
            previous_penalty = record.calculated_penalty_cents
            changes = {
                "days_overdue": days_overdue,
                "calculated_penalty_cents": calculation.calculated_penalty_cents,
                "previous_days_overdue": previous_days,
                "previous_calculated_penalty_cents": previous_penalty,
            }

            record.days_overdue = days_overdue
            record.calculated_penalty_cents = calculation.calculated_penalty_cents

            target = None
            if not is_in_grace_period and record.status in (
                OverstayStatus.DETECTED.value, OverstayStatus.GRACE_PERIOD.value
            ):
                target = OverstayStatus.PENDING_REVIEW
            elif is_in_grace_period and record.status == OverstayStatus.DETECTED.value:
                target = OverstayStatus.GRACE_PERIOD

            if target is not None:
                OverstayStateMachine.transition(
                    db,
                    record,
                    target,
                    event_type=OverstayEventType.STATUS_CHANGE,
                    event_source=OverstayEventSource.CRON,
                    description=f"Days overdue: {days_overdue}",
                    details=changes
                )
            elif previous_days != days_overdue or previous_penalty != calculation.calculated_penalty_cents:
                audit_logger.log_event(
                    db=db,
                    record=record,
                    event_type=OverstayEventType.STATUS_CHANGE,
                    event_source=OverstayEventSource.CRON,
                    previous_status=record.status,
                    new_status=record.status,
                    description=f"Penalty recalculated. Days overdue: {days_overdue}",
                    details=changes
                )

        return OverstayDetectionResult(
            booking_id=booking.id,
            chef_id=booking.chef_id,
            overstay_record_id=record.id,
            days_overdue=record.days_overdue,
            grace_period_ends_at=record.grace_period_ends_at,
            is_in_grace_period=is_in_grace_period,
            calculated_penalty_cents=record.calculated_penalty_cents,
            daily_rate_cents=record.daily_rate_cents,
            penalty_rate=record.penalty_rate,
            status=record.status
        )
