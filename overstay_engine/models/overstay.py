# ================================
# OVERSTAY MODELS (models/overstay.py)
# ================================

import enum

from sqlalchemy import Column, String, Text, Integer, Numeric, Boolean, Date, DateTime, JSON, ForeignKey, Index, text
from sqlalchemy.orm import relationship

from overstay_engine.models.base import Base, utcnow

class OverstayStatus(str, enum.Enum):
    DETECTED = "detected"
    GRACE_PERIOD = "grace_period"
    PENDING_REVIEW = "pending_review"
    PENALTY_APPROVED = "penalty_approved"
    PENALTY_WAIVED = "penalty_waived"
    CHARGE_PENDING = "charge_pending"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    RESOLVED = "resolved"
    ESCALATED = "escalated"

class OverstayEventType(str, enum.Enum):
    STATUS_CHANGE = "status_change"
    MANAGER_DECISION = "manager_decision"
    CHARGE_ATTEMPT = "charge_attempt"

class OverstayEventSource(str, enum.Enum):
    CRON = "cron"
    MANAGER = "manager"
    SYSTEM = "system"

# At most one open record per overstay episode; closed records may share the key
OPEN_RECORD_CONDITION = text(
    "status NOT IN ('penalty_waived', 'charge_succeeded', 'resolved', 'escalated')"
)

class OverstayRecord(Base):
    """One overstay episode of one storage booking"""
    __tablename__ = "storage_overstay_records"

    storage_booking_id = Column(Integer, ForeignKey('storage_bookings.id'), nullable=False)
    status = Column(String(32), nullable=False, default=OverstayStatus.DETECTED.value)

    # Detection snapshot
    end_date = Column(Date, nullable=False)  # normalized booking end date
    days_overdue = Column(Integer, nullable=False, default=0)
    daily_rate_cents = Column(Integer, nullable=False, default=0)
    penalty_rate = Column(Numeric(5, 4), nullable=False)
    grace_period_days = Column(Integer, nullable=False)
    max_penalty_days = Column(Integer, nullable=False)
    grace_period_ends_at = Column(Date, nullable=False)
    calculated_penalty_cents = Column(Integer, nullable=False, default=0)

    # Manager decision
    final_penalty_cents = Column(Integer, nullable=True)
    penalty_approved_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    penalty_approved_at = Column(DateTime(timezone=True), nullable=True)
    penalty_waived = Column(Boolean, nullable=False, default=False)
    waive_reason = Column(Text, nullable=True)
    manager_notes = Column(Text, nullable=True)
    approval_version = Column(Integer, nullable=False, default=0)  # bumped by every approve/adjust

    # Charging
    charge_idempotency_key = Column(String(255), nullable=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_charge_id = Column(String(255), nullable=True)
    charge_attempted_at = Column(DateTime(timezone=True), nullable=True)
    charge_succeeded_at = Column(DateTime(timezone=True), nullable=True)
    charge_failed_at = Column(DateTime(timezone=True), nullable=True)
    charge_failure_reason = Column(Text, nullable=True)

    # Resolution
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_type = Column(String(50), nullable=True)  # 'paid', 'waived', 'extended', 'removed'
    resolution_notes = Column(Text, nullable=True)

    idempotency_key = Column(String(255), nullable=False)
    detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    booking = relationship("StorageBooking")
    approver = relationship("User", foreign_keys=[penalty_approved_by])
    history = relationship(
        "OverstayHistory",
        back_populates="overstay_record",
        order_by="OverstayHistory.id"
    )

    __table_args__ = (
        Index('idx_overstay_records_idempotency_key', 'idempotency_key'),
        Index(
            'uq_overstay_records_open_idempotency_key',
            'idempotency_key',
            unique=True,
            postgresql_where=OPEN_RECORD_CONDITION,
            sqlite_where=OPEN_RECORD_CONDITION
        ),
        Index('idx_overstay_records_booking_id', 'storage_booking_id'),
        Index('idx_overstay_records_status', 'status'),
    )

    def __repr__(self):
        return f"<OverstayRecord(id={self.id}, booking={self.storage_booking_id}, status='{self.status}')>"

class OverstayHistory(Base):
    """Append-only audit trail of an overstay record"""
    __tablename__ = "storage_overstay_history"

    overstay_record_id = Column(Integer, ForeignKey('storage_overstay_records.id'), nullable=False)

    event_type = Column(String(32), nullable=False)
    event_source = Column(String(32), nullable=False)
    previous_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=False)
    description = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    created_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    overstay_record = relationship("OverstayRecord", back_populates="history")

    __table_args__ = (
        Index('idx_overstay_history_record_id', 'overstay_record_id'),
    )

    def __repr__(self):
        return f"<OverstayHistory(record={self.overstay_record_id}, event='{self.event_type}', to='{self.new_status}')>"
