# ================================
# OVERSTAY QUERY SERVICE (services/overstay_query_service.py)
# ================================

from typing import Optional, List
import logging

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from overstay_engine.models.overstay import OverstayRecord, OverstayHistory, OverstayStatus
from overstay_engine.models.storage import StorageBooking, StorageListing, Kitchen, User
from overstay_engine.schemas.overstay import (
    OverstayRecordResponse, OverstayHistoryResponse, PendingOverstayReview, OverstayStats, ChefUnpaidPenalty
)
from overstay_engine.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

# Records waiting on a manager decision
REVIEWABLE_STATUSES = (
    OverstayStatus.PENDING_REVIEW.value,
    OverstayStatus.CHARGE_FAILED.value,
)

# Open penalties that block a chef from booking again
UNPAID_STATUSES = (
    OverstayStatus.DETECTED.value,
    OverstayStatus.GRACE_PERIOD.value,
    OverstayStatus.PENDING_REVIEW.value,
    OverstayStatus.PENALTY_APPROVED.value,
    OverstayStatus.CHARGE_PENDING.value,
    OverstayStatus.CHARGE_FAILED.value,
    OverstayStatus.ESCALATED.value,
)

# Amount is settled; only payment is missing
IMMEDIATE_PAYMENT_STATUSES = (
    OverstayStatus.PENALTY_APPROVED.value,
    OverstayStatus.CHARGE_FAILED.value,
    OverstayStatus.ESCALATED.value,
)

class OverstayQueryService:
    """Read-only views over overstay records and their history"""

    @staticmethod
    def get_record(db: Session, overstay_record_id: int) -> OverstayRecordResponse:
        record = db.get(OverstayRecord, overstay_record_id)
        if not record:
            raise NotFoundError(f"Overstay record {overstay_record_id} not found")
        return OverstayRecordResponse.model_validate(record)

    @staticmethod
    def get_history(db: Session, overstay_record_id: int) -> List[OverstayHistoryResponse]:
        """Audit trail of one record, oldest first"""
        if db.get(OverstayRecord, overstay_record_id) is None:
            raise NotFoundError(f"Overstay record {overstay_record_id} not found")

        entries = db.execute(
            select(OverstayHistory)
            .where(OverstayHistory.overstay_record_id == overstay_record_id)
            .order_by(OverstayHistory.id.asc())
        ).scalars().all()
        return [OverstayHistoryResponse.model_validate(entry) for entry in entries]

    @staticmethod
    def get_pending_reviews(db: Session, location_id: Optional[int] = None) -> List[PendingOverstayReview]:
        """
        Records awaiting a manager (pending_review, charge_failed),
        joined with booking, listing, kitchen and chef. Most overdue first.
        """
        query = (
            select(OverstayRecord, StorageBooking, StorageListing, Kitchen, User)
            .join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
            .join(StorageListing, StorageBooking.storage_listing_id == StorageListing.id)
            .join(Kitchen, StorageListing.kitchen_id == Kitchen.id)
            .outerjoin(User, StorageBooking.chef_id == User.id)
            .where(OverstayRecord.status.in_(REVIEWABLE_STATUSES))
        )
        if location_id is not None:
            query = query.where(Kitchen.location_id == location_id)

        query = query.order_by(OverstayRecord.days_overdue.desc(), OverstayRecord.id.asc())

        reviews = []
        for record, booking, listing, kitchen, chef in db.execute(query).all():
            reviews.append(PendingOverstayReview(
                overstay_id=record.id,
                storage_booking_id=booking.id,
                status=record.status,
                days_overdue=record.days_overdue,
                grace_period_ends_at=record.grace_period_ends_at,
                calculated_penalty_cents=record.calculated_penalty_cents,
                final_penalty_cents=record.final_penalty_cents,
                charge_failure_reason=record.charge_failure_reason,
                detected_at=record.detected_at,
                booking_start_date=booking.start_date,
                booking_end_date=booking.end_date,
                booking_total_price=booking.total_price,
                storage_listing_id=listing.id,
                storage_name=listing.name,
                storage_type=listing.storage_type or "dry",
                daily_rate_cents=record.daily_rate_cents,
                grace_period_days=record.grace_period_days,
                penalty_rate=record.penalty_rate,
                max_penalty_days=record.max_penalty_days,
                kitchen_id=kitchen.id,
                kitchen_name=kitchen.name,
                location_id=kitchen.location_id,
                chef_id=booking.chef_id,
                chef_email=chef.username if chef else None,
                chef_name=chef.full_name if chef else None,
                has_payment_method=bool(booking.stripe_payment_method_id)
            ))
        return reviews

    @staticmethod
    def get_stats(db: Session, location_id: Optional[int] = None) -> OverstayStats:
        """Counts by status, collected and waived penalty totals"""
        query = select(
            OverstayRecord.status,
            func.count(OverstayRecord.id),
            func.coalesce(func.sum(OverstayRecord.final_penalty_cents), 0),
            func.coalesce(func.sum(OverstayRecord.calculated_penalty_cents), 0),
        )
        if location_id is not None:
            query = (
                query
                .join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
                .join(StorageListing, StorageBooking.storage_listing_id == StorageListing.id)
                .join(Kitchen, StorageListing.kitchen_id == Kitchen.id)
                .where(Kitchen.location_id == location_id)
            )
        query = query.group_by(OverstayRecord.status)

        stats = OverstayStats()
        by_status = {}
        for status, count, final_sum, calculated_sum in db.execute(query).all():
            by_status[status] = count
            stats.total += count
            if status == OverstayStatus.CHARGE_SUCCEEDED.value:
                stats.total_penalties_collected += int(final_sum)
            elif status == OverstayStatus.PENALTY_WAIVED.value:
                # Waived amount is the penalty that would have been charged
                stats.total_penalties_waived += int(calculated_sum)
        stats.by_status = by_status
        return stats

    @staticmethod
    def get_all_records(
        db: Session,
        status: Optional[str] = None,
        location_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[OverstayRecordResponse]:
        query = select(OverstayRecord)
        if status:
            query = query.where(OverstayRecord.status == status)
        if location_id is not None:
            query = (
                query
                .join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
                .join(StorageListing, StorageBooking.storage_listing_id == StorageListing.id)
                .join(Kitchen, StorageListing.kitchen_id == Kitchen.id)
                .where(Kitchen.location_id == location_id)
            )
        query = query.order_by(OverstayRecord.detected_at.desc(), OverstayRecord.id.desc()).offset(skip).limit(limit)
        return [OverstayRecordResponse.model_validate(r) for r in db.execute(query).scalars().all()]

    @staticmethod
    def get_chef_penalties(db: Session, chef_id: int) -> List[OverstayRecordResponse]:
        """All overstay records on a chef's bookings, newest first"""
        records = db.execute(
            select(OverstayRecord)
            .join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
            .where(StorageBooking.chef_id == chef_id)
            .order_by(OverstayRecord.detected_at.desc(), OverstayRecord.id.desc())
        ).scalars().all()
        return [OverstayRecordResponse.model_validate(r) for r in records]

    @staticmethod
    def has_chef_unpaid_penalties(db: Session, chef_id: int) -> bool:
        """True while any of the chef's overstays is still open"""
        count = db.execute(
            select(func.count(OverstayRecord.id))
            .join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
            .where(
                StorageBooking.chef_id == chef_id,
                OverstayRecord.status.in_(UNPAID_STATUSES)
            )
        ).scalar_one()
        return count > 0

    @staticmethod
    def get_chef_unpaid_penalties(db: Session, chef_id: int) -> List[ChefUnpaidPenalty]:
        """
        Open penalties on a chef's bookings, newest first.

        ``penalty_amount_cents`` is the manager's final amount once decided,
        otherwise the calculated one.
        """
        rows = db.execute(
            select(OverstayRecord, StorageBooking, StorageListing, Kitchen)
            .join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
            .join(StorageListing, StorageBooking.storage_listing_id == StorageListing.id)
            .join(Kitchen, StorageListing.kitchen_id == Kitchen.id)
            .where(
                StorageBooking.chef_id == chef_id,
                OverstayRecord.status.in_(UNPAID_STATUSES)
            )
            .order_by(OverstayRecord.detected_at.desc(), OverstayRecord.id.desc())
        ).all()

        penalties = []
        for record, booking, listing, kitchen in rows:
            amount = (
                record.final_penalty_cents
                if record.final_penalty_cents is not None
                else record.calculated_penalty_cents
            )
            penalties.append(ChefUnpaidPenalty(
                overstay_id=record.id,
                storage_booking_id=booking.id,
                status=record.status,
                days_overdue=record.days_overdue,
                calculated_penalty_cents=record.calculated_penalty_cents,
                final_penalty_cents=record.final_penalty_cents,
                penalty_amount_cents=amount or 0,
                requires_immediate_payment=record.status in IMMEDIATE_PAYMENT_STATUSES,
                detected_at=record.detected_at,
                grace_period_ends_at=record.grace_period_ends_at,
                penalty_approved_at=record.penalty_approved_at,
                storage_name=listing.name or "Storage",
                storage_type=listing.storage_type or "dry",
                kitchen_name=kitchen.name or "Kitchen",
                booking_end_date=booking.end_date
            ))
        return penalties
