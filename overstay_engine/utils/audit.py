# ================================
# AUDIT LOGGING UTILITY (utils/audit.py)
# ================================

from sqlalchemy.orm import Session
from typing import Optional, Dict, Any
from datetime import date, datetime
from decimal import Decimal
import enum
import json
import logging

from overstay_engine.models.overstay import (
    OverstayRecord, OverstayHistory, OverstayEventType, OverstayEventSource
)

logger = logging.getLogger(__name__)

class OverstayAuditLogger:
    """
    Append-only audit trail for overstay records.

    Every component that mutates an overstay record writes its history entry
    through this class, on the same session as the mutation, so the entry is
    committed (or rolled back) together with it. Entries are also mirrored to
    the application log.
    """

    SENSITIVE_KEYS = {
        'payment_method', 'customer_id', 'client_secret', 'api_key', 'secret', 'token'
    }

    def log_event(
        self,
        db: Session,
        record: OverstayRecord,
        event_type: OverstayEventType,
        event_source: OverstayEventSource,
        previous_status: Optional[str],
        new_status: str,
        description: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        created_by: Optional[int] = None
    ) -> OverstayHistory:
        """
        Add a history entry for a record to the current transaction.

        Args:
            db: Database session holding the record mutation
            record: Overstay record (must be flushed so it has an id)
            event_type: status_change, manager_decision or charge_attempt
            event_source: cron, manager or system
            previous_status: Status before the mutation (None on creation)
            new_status: Status after the mutation
            description: Human readable summary
            details: Structured description of what changed
            created_by: Manager id if a person triggered the event

        Returns:
            The pending OverstayHistory instance
        """
        if record.id is None:
            db.flush()

        payload = self._sanitize(details or {})

        entry = OverstayHistory(
            overstay_record_id=record.id,
            event_type=_enum_value(event_type),
            event_source=_enum_value(event_source),
            previous_status=_enum_value(previous_status) if previous_status else None,
            new_status=_enum_value(new_status),
            description=description,
            payload=payload or None,
            created_by=created_by
        )
        db.add(entry)

        self._log_to_application_logger(entry, payload)

        return entry

    # ================================
    # UTILITY METHODS
    # ================================

    def _sanitize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask payment references and make values JSON serializable"""
        sanitized = {}
        for key, value in data.items():
            key_str = str(key)
            if any(sensitive in key_str.lower() for sensitive in self.SENSITIVE_KEYS):
                sanitized[key_str] = "***REDACTED***" if value else None
            elif isinstance(value, dict):
                sanitized[key_str] = self._sanitize(value)
            elif isinstance(value, list):
                sanitized[key_str] = [
                    self._sanitize(item) if isinstance(item, dict) else _json_value(item)
                    for item in value
                ]
            else:
                sanitized[key_str] = _json_value(value)
        return sanitized

    def _log_to_application_logger(self, entry: OverstayHistory, payload: Dict[str, Any]):
        log_message = (
            f"AUDIT: overstay {entry.overstay_record_id} {entry.event_type} "
            f"{entry.previous_status or '-'} -> {entry.new_status} | Source: {entry.event_source}"
        )
        if entry.created_by:
            log_message += f" | User: {entry.created_by}"
        if payload:
            log_message += f" | Details: {json.dumps(payload, default=str)}"
        logger.info(log_message)

def _enum_value(value):
    return value.value if isinstance(value, enum.Enum) else value

def _json_value(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, str) and len(value) > 1000:
        return value[:1000] + "...[TRUNCATED]"
    return value

audit_logger = OverstayAuditLogger()

__all__ = [
    "OverstayAuditLogger",
    "audit_logger",
]
