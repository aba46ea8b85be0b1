# ================================
# MANAGER DECISION SERVICE (services/manager_decision_service.py)
# ================================

from datetime import datetime, timezone
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from overstay_engine.models.overstay import (
    OverstayRecord, OverstayStatus, OverstayEventType, OverstayEventSource
)
from overstay_engine.schemas.overstay import ManagerPenaltyDecision, DecisionResult, OverstayRecordResponse
from overstay_engine.services.overstay_state_machine import OverstayStateMachine
from overstay_engine.core.exceptions import ValidationError, NotFoundError

logger = logging.getLogger(__name__)

def format_cents(cents: int) -> str:
    return f"${cents / 100:.2f}"

class ManagerDecisionService:
    """Applies a manager's approve / adjust / waive decision to an overstay record"""

    DECIDABLE_STATUSES = (OverstayStatus.PENDING_REVIEW, OverstayStatus.CHARGE_FAILED)
    ACTIONS = ("approve", "adjust", "waive")

    @staticmethod
    def get_record_for_update(db: Session, overstay_record_id: int) -> OverstayRecord:
        record = db.execute(
            select(OverstayRecord)
            .where(OverstayRecord.id == overstay_record_id)
            .with_for_update()
        ).scalar_one_or_none()
        if not record:
            raise NotFoundError(f"Overstay record {overstay_record_id} not found")
        return record

    @staticmethod
    def process_decision(db: Session, decision: ManagerPenaltyDecision) -> DecisionResult:
        """
        Validate and apply a manager decision in one transaction.

        Business rules:
        - Only records in 'pending_review' or 'charge_failed' can be decided
        - approve charges exactly the calculated penalty
        - adjust may only reduce the penalty, never exceed the calculated maximum
        - waive requires a reason and sets the final penalty to 0 (terminal)

        Raises:
            NotFoundError, ValidationError, InvalidStateError
        """
        if decision.action not in ManagerDecisionService.ACTIONS:
            raise ValidationError(f"Invalid action: {decision.action}")
        if decision.manager_id is None or decision.manager_id <= 0:
            raise ValidationError("Invalid manager ID")

        try:
            record = ManagerDecisionService.get_record_for_update(db, decision.overstay_record_id)
            previous_status = OverstayStateMachine.ensure_status(
                record, ManagerDecisionService.DECIDABLE_STATUSES, "process a decision for"
            )

            if decision.action == "approve":
                ManagerDecisionService._approve(db, record, decision)
            elif decision.action == "adjust":
                ManagerDecisionService._adjust(db, record, decision)
            else:
                ManagerDecisionService._waive(db, record, decision)

            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(record)

        logger.info(
            f"Manager decision processed for overstay {record.id}: {decision.action} "
            f"by manager {decision.manager_id}, {previous_status.value} -> {record.status}, "
            f"final penalty {record.final_penalty_cents} cents"
        )

        return DecisionResult(success=True, record=OverstayRecordResponse.model_validate(record))

    @staticmethod
    def _approve(db: Session, record: OverstayRecord, decision: ManagerPenaltyDecision):
        amount = record.calculated_penalty_cents
        if decision.final_penalty_cents is not None and decision.final_penalty_cents != amount:
            raise ValidationError(
                "Approve charges the calculated penalty; use the adjust action to change the amount"
            )
        ManagerDecisionService._apply_approval(db, record, decision, amount)

    @staticmethod
    def _adjust(db: Session, record: OverstayRecord, decision: ManagerPenaltyDecision):
        amount = decision.final_penalty_cents
        if amount is None:
            raise ValidationError("final_penalty_cents is required for the adjust action")
        if amount < 0:
            raise ValidationError("Penalty amount cannot be negative")
        if amount > record.calculated_penalty_cents:
            raise ValidationError(
                f"Penalty amount cannot exceed the calculated maximum of "
                f"{format_cents(record.calculated_penalty_cents)}"
            )
        ManagerDecisionService._apply_approval(db, record, decision, amount)

    @staticmethod
    def _apply_approval(db: Session, record: OverstayRecord, decision: ManagerPenaltyDecision, amount: int):
        now = datetime.now(timezone.utc)
        record.final_penalty_cents = amount
        record.penalty_approved_by = decision.manager_id
        record.penalty_approved_at = now
        record.manager_notes = decision.manager_notes or record.manager_notes
        # A new approval gets its own processor idempotency key
        record.approval_version = (record.approval_version or 0) + 1
        record.charge_idempotency_key = None

        OverstayStateMachine.transition(
            db,
            record,
            OverstayStatus.PENALTY_APPROVED,
            event_type=OverstayEventType.MANAGER_DECISION,
            event_source=OverstayEventSource.MANAGER,
            description=f"Manager {decision.action}: {format_cents(amount)}",
            details=_decision_details(decision, amount, record),
            created_by=decision.manager_id
        )

    @staticmethod
    def _waive(db: Session, record: OverstayRecord, decision: ManagerPenaltyDecision):
        reason = (decision.waive_reason or "").strip()
        if not reason:
            raise ValidationError("A waive reason is required to waive a penalty")

        now = datetime.now(timezone.utc)
        record.final_penalty_cents = 0
        record.penalty_waived = True
        record.waive_reason = reason
        record.penalty_approved_by = decision.manager_id
        record.penalty_approved_at = now
        record.manager_notes = decision.manager_notes or record.manager_notes
        record.resolved_at = now
        record.resolution_type = "waived"

        OverstayStateMachine.transition(
            db,
            record,
            OverstayStatus.PENALTY_WAIVED,
            event_type=OverstayEventType.MANAGER_DECISION,
            event_source=OverstayEventSource.MANAGER,
            description=f"Manager waive: {reason}",
            details=_decision_details(decision, 0, record),
            created_by=decision.manager_id
        )

def _decision_details(decision: ManagerPenaltyDecision, amount: int, record: OverstayRecord) -> dict:
    return {
        "action": decision.action,
        "manager_id": decision.manager_id,
        "final_penalty_cents": amount,
        "calculated_penalty_cents": record.calculated_penalty_cents,
        "waive_reason": decision.waive_reason,
        "manager_notes": decision.manager_notes,
        "approval_version": record.approval_version,
    }
