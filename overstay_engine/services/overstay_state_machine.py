# ================================
# OVERSTAY STATE MACHINE (services/overstay_state_machine.py)
# ================================

from typing import Optional, Dict, Any, Union
from datetime import datetime, timezone
from sqlalchemy.orm import Session

from overstay_engine.models.overstay import (
    OverstayRecord, OverstayStatus, OverstayEventType, OverstayEventSource
)
from overstay_engine.core.exceptions import InvalidStateError
from overstay_engine.utils.audit import audit_logger

StatusLike = Union[OverstayStatus, str]

class OverstayStateMachine:
    """Canonical overstay statuses and the legal transitions between them"""

    TERMINAL_STATUSES = frozenset({
        OverstayStatus.PENALTY_WAIVED,
        OverstayStatus.CHARGE_SUCCEEDED,
        OverstayStatus.RESOLVED,
        OverstayStatus.ESCALATED,
    })

    VALID_TRANSITIONS = {
        OverstayStatus.DETECTED: {OverstayStatus.GRACE_PERIOD, OverstayStatus.PENDING_REVIEW},
        OverstayStatus.GRACE_PERIOD: {OverstayStatus.PENDING_REVIEW},
        OverstayStatus.PENDING_REVIEW: {
            OverstayStatus.PENALTY_APPROVED,
            OverstayStatus.PENALTY_WAIVED,
            OverstayStatus.RESOLVED,
        },
        OverstayStatus.PENALTY_APPROVED: {OverstayStatus.CHARGE_PENDING, OverstayStatus.RESOLVED},
        OverstayStatus.CHARGE_PENDING: {OverstayStatus.CHARGE_SUCCEEDED, OverstayStatus.CHARGE_FAILED},
        OverstayStatus.CHARGE_FAILED: {
            OverstayStatus.PENALTY_APPROVED,
            OverstayStatus.PENALTY_WAIVED,
            OverstayStatus.CHARGE_PENDING,
        },
    }

    # Statuses a freshly detected record may start in
    INITIAL_STATUSES = VALID_TRANSITIONS[OverstayStatus.DETECTED]

    @staticmethod
    def to_status(value: StatusLike) -> OverstayStatus:
        try:
            return OverstayStatus(value)
        except ValueError:
            raise InvalidStateError(f"Unknown overstay status: {value}")

    @classmethod
    def is_terminal(cls, status: StatusLike) -> bool:
        return cls.to_status(status) in cls.TERMINAL_STATUSES

    @classmethod
    def can_transition(cls, from_status: StatusLike, to_status: StatusLike) -> bool:
        """True if the table allows moving from one status to the other"""
        try:
            source = OverstayStatus(from_status)
            target = OverstayStatus(to_status)
        except ValueError:
            return False
        return target in cls.VALID_TRANSITIONS.get(source, set())

    @classmethod
    def ensure_status(cls, record: OverstayRecord, allowed, action: str):
        """Raise InvalidStateError unless the record's status is one of ``allowed``"""
        current = cls.to_status(record.status)
        if current not in allowed:
            raise InvalidStateError(
                f"Cannot {action} overstay record {record.id} in status: {current.value}"
            )
        return current

    @classmethod
    def initialize(
        cls,
        db: Session,
        record: OverstayRecord,
        status: StatusLike,
        event_source: OverstayEventSource,
        description: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> OverstayRecord:
        """Give a new record its first status and log its creation"""
        target = cls.to_status(status)
        if target not in cls.INITIAL_STATUSES:
            raise InvalidStateError(f"A new overstay record cannot start in status: {target.value}")

        record.status = target.value
        db.add(record)
        db.flush()

        audit_logger.log_event(
            db=db,
            record=record,
            event_type=OverstayEventType.STATUS_CHANGE,
            event_source=event_source,
            previous_status=None,
            new_status=target,
            description=description,
            details=details
        )
        return record

    @classmethod
    def transition(
        cls,
        db: Session,
        record: OverstayRecord,
        to_status: StatusLike,
        event_type: OverstayEventType,
        event_source: OverstayEventSource,
        description: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        created_by: Optional[int] = None
    ) -> OverstayRecord:
        """
        Move a record to a new status and append the audit entry.

        The caller owns the transaction; nothing is committed here.

        Raises:
            InvalidStateError: if the transition is not in the table
        """
        previous = cls.to_status(record.status)
        target = cls.to_status(to_status)

        if not cls.can_transition(previous, target):
            raise InvalidStateError(
                f"Invalid status transition from {previous.value} to {target.value}"
            )

        record.status = target.value
        record.updated_at = datetime.now(timezone.utc)

        audit_logger.log_event(
            db=db,
            record=record,
            event_type=event_type,
            event_source=event_source,
            previous_status=previous,
            new_status=target,
            description=description,
            details=details,
            created_by=created_by
        )
        return record
