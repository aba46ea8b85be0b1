# ================================
# OVERSTAY SCHEMAS (schemas/overstay.py)
# ================================

from typing import Optional, List, Dict, Any, Literal
from datetime import date, datetime
from decimal import Decimal
from pydantic import Field

from overstay_engine.schemas.base import BaseSchema, BaseResponseSchema, TimestampMixin

# ================================
# CONFIGURATION & CALCULATION
# ================================

class EffectivePenaltyConfig(BaseSchema):
    """Grace period, rate and cap actually applied to a booking"""
    grace_period_days: int = Field(..., ge=0)
    penalty_rate: Decimal = Field(..., ge=0, le=1)
    max_penalty_days: int = Field(..., ge=0)
    policy_text: Optional[str] = None

class PenaltyCalculation(BaseSchema):
    penalty_days: int
    daily_penalty_charge_cents: int
    calculated_penalty_cents: int

# ================================
# DETECTION
# ================================

class OverstayDetectionResult(BaseSchema):
    """Outcome of one booking in a detection sweep"""
    booking_id: int
    chef_id: Optional[int] = None
    overstay_record_id: Optional[int] = None
    days_overdue: int
    grace_period_ends_at: date
    is_in_grace_period: bool
    calculated_penalty_cents: int
    daily_rate_cents: int
    penalty_rate: Decimal
    status: str

class DetectionRunResponse(BaseSchema):
    started: bool
    processed: int = 0
    results: List[OverstayDetectionResult] = []
    message: Optional[str] = None

# ================================
# RECORDS & HISTORY
# ================================

class OverstayRecordResponse(BaseResponseSchema, TimestampMixin):
    """Full overstay record"""
    storage_booking_id: int
    status: str
    end_date: date
    days_overdue: int
    daily_rate_cents: int
    penalty_rate: Decimal
    grace_period_days: int
    max_penalty_days: int
    grace_period_ends_at: date
    calculated_penalty_cents: int
    final_penalty_cents: Optional[int] = None
    penalty_approved_by: Optional[int] = None
    penalty_approved_at: Optional[datetime] = None
    penalty_waived: bool = False
    waive_reason: Optional[str] = None
    manager_notes: Optional[str] = None
    approval_version: int = 0
    stripe_payment_intent_id: Optional[str] = None
    stripe_charge_id: Optional[str] = None
    charge_attempted_at: Optional[datetime] = None
    charge_succeeded_at: Optional[datetime] = None
    charge_failed_at: Optional[datetime] = None
    charge_failure_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_type: Optional[str] = None
    resolution_notes: Optional[str] = None
    idempotency_key: str
    detected_at: datetime

class OverstayHistoryResponse(BaseResponseSchema):
    overstay_record_id: int
    event_type: str
    event_source: str
    previous_status: Optional[str] = None
    new_status: str
    description: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_by: Optional[int] = None
    created_at: datetime

class PendingOverstayReview(BaseSchema):
    """Overstay record joined with booking, listing, kitchen and chef for triage"""
    overstay_id: int
    storage_booking_id: int
    status: str
    days_overdue: int
    grace_period_ends_at: date
    calculated_penalty_cents: int
    final_penalty_cents: Optional[int] = None
    charge_failure_reason: Optional[str] = None
    detected_at: datetime
    booking_start_date: datetime
    booking_end_date: datetime
    booking_total_price: Optional[Decimal] = None
    storage_listing_id: int
    storage_name: str
    storage_type: str
    daily_rate_cents: int
    grace_period_days: int
    penalty_rate: Decimal
    max_penalty_days: int
    kitchen_id: int
    kitchen_name: str
    location_id: int
    chef_id: Optional[int] = None
    chef_email: Optional[str] = None
    chef_name: Optional[str] = None
    has_payment_method: bool = False

class ChefUnpaidPenalty(BaseSchema):
    """Open penalty on one of a chef's bookings"""
    overstay_id: int
    storage_booking_id: int
    status: str
    days_overdue: int
    calculated_penalty_cents: int
    final_penalty_cents: Optional[int] = None
    penalty_amount_cents: int
    requires_immediate_payment: bool
    detected_at: datetime
    grace_period_ends_at: date
    penalty_approved_at: Optional[datetime] = None
    storage_name: str
    storage_type: str
    kitchen_name: str
    booking_end_date: datetime

class ChefPenaltyStatus(BaseSchema):
    """Whether a chef may book again, with the penalties in the way"""
    chef_id: int
    has_unpaid_penalties: bool
    penalties: List[ChefUnpaidPenalty] = []

class OverstayStats(BaseSchema):
    total: int = 0
    by_status: Dict[str, int] = {}
    total_penalties_collected: int = 0
    total_penalties_waived: int = 0

# ================================
# MANAGER DECISIONS
# ================================

class ManagerPenaltyDecision(BaseSchema):
    """A manager's approve/waive/adjust decision on one record"""
    overstay_record_id: int
    manager_id: int
    action: str
    final_penalty_cents: Optional[int] = None
    waive_reason: Optional[str] = None
    manager_notes: Optional[str] = None

class ManagerDecisionRequest(BaseSchema):
    """Request body for POST /overstays/{id}/decision"""
    manager_id: int
    action: Literal["approve", "waive", "adjust"]
    final_penalty_cents: Optional[int] = None
    waive_reason: Optional[str] = None
    manager_notes: Optional[str] = None

class DecisionResult(BaseSchema):
    success: bool
    record: OverstayRecordResponse

class ResolveOverstayRequest(BaseSchema):
    resolution_type: Literal["extended", "removed", "zero_penalty"]
    resolution_notes: Optional[str] = None
    resolved_by: Optional[int] = None

class RetryChargeRequest(BaseSchema):
    manager_id: int

# ================================
# CHARGING
# ================================

class PaymentResult(BaseSchema):
    """Normalized outcome of one payment processor call"""
    success: bool
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    failure_reason: Optional[str] = None
    requires_action: bool = False  # 3DS/SCA needed, cannot be completed off-session

class ChargeResult(BaseSchema):
    success: bool
    record: OverstayRecordResponse
    error: Optional[str] = None
    already_charged: bool = False
