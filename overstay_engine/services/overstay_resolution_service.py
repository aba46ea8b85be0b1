# ================================
# OVERSTAY RESOLUTION SERVICE (services/overstay_resolution_service.py)
# ================================

from typing import Optional
from datetime import datetime, timezone
import logging

from sqlalchemy.orm import Session

from overstay_engine.models.overstay import OverstayStatus, OverstayEventType, OverstayEventSource
from overstay_engine.schemas.overstay import OverstayRecordResponse
from overstay_engine.services.overstay_state_machine import OverstayStateMachine
from overstay_engine.services.manager_decision_service import ManagerDecisionService
from overstay_engine.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

class OverstayResolutionService:
    """Closes an overstay without a charge"""

    RESOLVABLE_STATUSES = (OverstayStatus.PENDING_REVIEW, OverstayStatus.PENALTY_APPROVED)

    # extended: booking was extended over the overdue days
    # removed: chef removed their items
    # zero_penalty: approval of a zero amount, nothing to charge
    RESOLUTION_TYPES = ("extended", "removed", "zero_penalty")

    @staticmethod
    def resolve_overstay(
        db: Session,
        overstay_record_id: int,
        resolution_type: str,
        resolution_notes: Optional[str] = None,
        resolved_by: Optional[int] = None
    ) -> OverstayRecordResponse:
        if resolution_type not in OverstayResolutionService.RESOLUTION_TYPES:
            raise ValidationError(f"Invalid resolution type: {resolution_type}")

        try:
            record = ManagerDecisionService.get_record_for_update(db, overstay_record_id)
            previous_status = OverstayStateMachine.ensure_status(
                record, OverstayResolutionService.RESOLVABLE_STATUSES, "resolve"
            )

            record.resolved_at = datetime.now(timezone.utc)
            record.resolution_type = resolution_type
            record.resolution_notes = resolution_notes

            OverstayStateMachine.transition(
                db,
                record,
                OverstayStatus.RESOLVED,
                event_type=OverstayEventType.STATUS_CHANGE,
                event_source=OverstayEventSource.MANAGER if resolved_by else OverstayEventSource.SYSTEM,
                description=f"Resolved: {resolution_type}",
                details={"resolution_type": resolution_type, "resolution_notes": resolution_notes},
                created_by=resolved_by
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(record)
        logger.info(
            f"Overstay {record.id} resolved ({resolution_type}) from {previous_status.value}"
            + (f" by user {resolved_by}" if resolved_by else "")
        )
        return OverstayRecordResponse.model_validate(record)
