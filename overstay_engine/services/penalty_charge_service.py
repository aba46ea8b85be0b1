# ================================
# PENALTY CHARGE SERVICE (services/penalty_charge_service.py)
# ================================

from typing import Optional, Tuple
from datetime import datetime, timezone, timedelta
import logging

from sqlalchemy.orm import Session

from overstay_engine.config import settings
from overstay_engine.models.overstay import (
    OverstayRecord, OverstayStatus, OverstayEventType, OverstayEventSource
)
from overstay_engine.models.storage import StorageBooking, User
from overstay_engine.schemas.overstay import ChargeResult, PaymentResult, OverstayRecordResponse
from overstay_engine.services.overstay_state_machine import OverstayStateMachine
from overstay_engine.services.manager_decision_service import ManagerDecisionService
from overstay_engine.services.stripe_service import StripePaymentService
from overstay_engine.utils.audit import audit_logger
from overstay_engine.core.exceptions import (
    AppException, ValidationError, InvalidStateError, NotFoundError,
    MissingPaymentMethodError, PaymentProcessorError
)

logger = logging.getLogger(__name__)

class PenaltyChargeService:
    """Collects approved penalties through the payment processor"""

    CHARGEABLE_STATUSES = (OverstayStatus.PENALTY_APPROVED, OverstayStatus.CHARGE_PENDING)

    @staticmethod
    def charge_idempotency_key(record: OverstayRecord) -> str:
        """One processor charge per record and approval"""
        return f"overstay_penalty_{record.id}_v{record.approval_version or 0}"

    @staticmethod
    def get_payment_references(db: Session, record: OverstayRecord) -> Tuple[str, str]:
        """Stripe customer and payment method for the record's booking"""
        booking = db.get(StorageBooking, record.storage_booking_id)
        if not booking:
            raise NotFoundError(f"Booking {record.storage_booking_id} not found")

        customer_id = booking.stripe_customer_id
        if not customer_id and booking.chef_id:
            chef = db.get(User, booking.chef_id)
            customer_id = chef.stripe_customer_id if chef else None

        if not customer_id or not booking.stripe_payment_method_id:
            raise MissingPaymentMethodError()

        return customer_id, booking.stripe_payment_method_id

    @staticmethod
    def charge_penalty(
        db: Session,
        overstay_record_id: int,
        gateway: Optional[StripePaymentService] = None
    ) -> ChargeResult:
        """
        Charge an approved penalty off-session against the chef's saved card.

        A declined or failed charge is recorded on the record (charge_failed)
        and returned as ``success=False``; a manager then re-decides.

        Raises:
            NotFoundError, InvalidStateError, ValidationError,
            MissingPaymentMethodError, PaymentProcessorError
        """
        gateway = gateway or StripePaymentService()

        try:
            record = ManagerDecisionService.get_record_for_update(db, overstay_record_id)

            if record.status == OverstayStatus.CHARGE_SUCCEEDED.value:
                db.rollback()
                logger.info(f"Overstay {overstay_record_id} already charged ({record.stripe_payment_intent_id})")
                return ChargeResult(
                    success=True,
                    record=OverstayRecordResponse.model_validate(record),
                    already_charged=True
                )

            OverstayStateMachine.ensure_status(record, PenaltyChargeService.CHARGEABLE_STATUSES, "charge")
            PenaltyChargeService._begin_attempt(db, record, gateway)
            db.commit()
        except Exception:
            db.rollback()
            raise

        return PenaltyChargeService._execute(db, overstay_record_id, gateway)

    @staticmethod
    def retry_failed_charge(
        db: Session,
        overstay_record_id: int,
        manager_id: int,
        gateway: Optional[StripePaymentService] = None
    ) -> ChargeResult:
        """Manager-initiated retry of a failed charge with the same final amount"""
        if manager_id is None or manager_id <= 0:
            raise ValidationError("Invalid manager ID")
        gateway = gateway or StripePaymentService()

        try:
            record = ManagerDecisionService.get_record_for_update(db, overstay_record_id)
            OverstayStateMachine.ensure_status(record, (OverstayStatus.CHARGE_FAILED,), "retry the charge for")

            record.approval_version = (record.approval_version or 0) + 1
            PenaltyChargeService._begin_attempt(
                db,
                record,
                gateway,
                event_type=OverstayEventType.MANAGER_DECISION,
                event_source=OverstayEventSource.MANAGER,
                created_by=manager_id
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        return PenaltyChargeService._execute(db, overstay_record_id, gateway)

    @staticmethod
    def _begin_attempt(
        db: Session,
        record: OverstayRecord,
        gateway: StripePaymentService,
        event_type: OverstayEventType = OverstayEventType.CHARGE_ATTEMPT,
        event_source: OverstayEventSource = OverstayEventSource.SYSTEM,
        created_by: Optional[int] = None
    ):
        """Validate preconditions and move the record to charge_pending"""
        if record.charge_succeeded_at is not None:
            # The processor already confirmed a payment for this record
            raise InvalidStateError(
                f"Penalty for overstay record {record.id} was already collected "
                f"({record.stripe_payment_intent_id}); reconcile before charging again"
            )

        if not record.final_penalty_cents or record.final_penalty_cents <= 0:
            raise ValidationError("No penalty amount to charge")

        PenaltyChargeService.get_payment_references(db, record)

        if not gateway.is_configured():
            raise PaymentProcessorError("Payment processor not configured")

        now = datetime.now(timezone.utc)

        if record.status == OverstayStatus.CHARGE_PENDING.value:
            if not PenaltyChargeService.is_stale_attempt(record, now):
                raise InvalidStateError(f"A charge for overstay record {record.id} is already in progress")

            # Interrupted attempt: resend with the stored key so the processor deduplicates
            record.charge_idempotency_key = (
                record.charge_idempotency_key or PenaltyChargeService.charge_idempotency_key(record)
            )
            record.charge_attempted_at = now
            logger.warning(f"Resuming interrupted charge for overstay {record.id} ({record.charge_idempotency_key})")
            return

        record.charge_idempotency_key = PenaltyChargeService.charge_idempotency_key(record)
        record.charge_attempted_at = now

        OverstayStateMachine.transition(
            db,
            record,
            OverstayStatus.CHARGE_PENDING,
            event_type=event_type,
            event_source=event_source,
            description=f"Charging ${record.final_penalty_cents / 100:.2f}",
            details={
                "action": "retry" if event_source == OverstayEventSource.MANAGER else "charge",
                "amount_cents": record.final_penalty_cents,
                "charge_idempotency_key": record.charge_idempotency_key,
            },
            created_by=created_by
        )

    @staticmethod
    def is_stale_attempt(record: OverstayRecord, now: Optional[datetime] = None) -> bool:
        """True once a charge_pending attempt is older than the processor can still be working on it"""
        if record.charge_attempted_at is None:
            return True
        attempted_at = record.charge_attempted_at
        if attempted_at.tzinfo is None:
            attempted_at = attempted_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return now - attempted_at >= timedelta(seconds=settings.PENALTY_CHARGE_STALE_AFTER_SECONDS)

    @staticmethod
    def _execute(db: Session, overstay_record_id: int, gateway: StripePaymentService) -> ChargeResult:
        """Call the processor outside any transaction, then record the outcome"""
        record = db.get(OverstayRecord, overstay_record_id)
        amount_cents = record.final_penalty_cents
        idempotency_key = record.charge_idempotency_key
        metadata = {
            "type": "overstay_penalty",
            "overstay_record_id": str(record.id),
            "storage_booking_id": str(record.storage_booking_id),
            "days_overdue": str(record.days_overdue),
        }

        payment = None
        try:
            customer_id, payment_method_id = PenaltyChargeService.get_payment_references(db, record)
        except AppException as e:
            # References vanished after charge_pending was committed; record it as a failed attempt
            logger.error(f"Cannot charge overstay {overstay_record_id}: {e.detail}")
            payment = PaymentResult(success=False, failure_reason=e.detail)
        db.commit()  # release the read transaction before the network call

        if payment is None:
            try:
                payment = gateway.create_charge(
                    amount_cents=amount_cents,
                    currency=settings.PENALTY_CURRENCY,
                    customer_id=customer_id,
                    payment_method_id=payment_method_id,
                    metadata=metadata,
                    idempotency_key=idempotency_key
                )
            except Exception as e:
                logger.error(f"Payment processor call failed for overstay {overstay_record_id}: {e}", exc_info=True)
                payment = PaymentResult(success=False, failure_reason=f"Payment processor error: {e}")

        try:
            record = ManagerDecisionService.get_record_for_update(db, overstay_record_id)
            now = datetime.now(timezone.utc)

            if record.status != OverstayStatus.CHARGE_PENDING.value:
                PenaltyChargeService._record_superseded_outcome(db, record, payment, idempotency_key, amount_cents, now)
            elif payment.success:
                record.stripe_payment_intent_id = payment.payment_intent_id
                record.stripe_charge_id = payment.charge_id
                record.charge_succeeded_at = now
                record.charge_failure_reason = None
                record.resolved_at = now
                record.resolution_type = "paid"
                OverstayStateMachine.transition(
                    db,
                    record,
                    OverstayStatus.CHARGE_SUCCEEDED,
                    event_type=OverstayEventType.CHARGE_ATTEMPT,
                    event_source=OverstayEventSource.SYSTEM,
                    description=f"Payment successful: {payment.payment_intent_id}",
                    details={
                        "payment_intent_id": payment.payment_intent_id,
                        "charge_id": payment.charge_id,
                        "amount_cents": amount_cents,
                    }
                )
            else:
                if payment.payment_intent_id:
                    record.stripe_payment_intent_id = payment.payment_intent_id
                record.charge_failed_at = now
                record.charge_failure_reason = payment.failure_reason
                OverstayStateMachine.transition(
                    db,
                    record,
                    OverstayStatus.CHARGE_FAILED,
                    event_type=OverstayEventType.CHARGE_ATTEMPT,
                    event_source=OverstayEventSource.SYSTEM,
                    description=f"Payment failed: {payment.failure_reason}",
                    details={
                        "payment_intent_id": payment.payment_intent_id,
                        "failure_reason": payment.failure_reason,
                        "requires_action": payment.requires_action,
                        "amount_cents": amount_cents,
                    }
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(record)

        if payment.success:
            logger.info(
                f"Penalty charged for overstay {overstay_record_id}: "
                f"{amount_cents} cents, payment intent {payment.payment_intent_id}"
            )
        else:
            logger.warning(f"Penalty charge failed for overstay {overstay_record_id}: {payment.failure_reason}")

        return ChargeResult(
            success=payment.success,
            record=OverstayRecordResponse.model_validate(record),
            error=None if payment.success else payment.failure_reason
        )

    @staticmethod
    def _record_superseded_outcome(
        db: Session,
        record: OverstayRecord,
        payment: PaymentResult,
        idempotency_key: str,
        amount_cents: int,
        now: datetime
    ):
        """
        The record left charge_pending while the processor call was running.

        A success still means the card was charged: keep the processor
        identifiers on the record so no later attempt charges again, and leave
        an audit entry for reconciliation. A failure changes nothing.
        """
        if not payment.success:
            logger.warning(
                f"Ignoring failed charge result for overstay {record.id} ({idempotency_key}); "
                f"record is already {record.status}"
            )
            return

        if record.status == OverstayStatus.CHARGE_SUCCEEDED.value:
            logger.info(f"Overstay {record.id} already recorded as charged ({record.stripe_payment_intent_id})")
            return

        record.stripe_payment_intent_id = payment.payment_intent_id
        record.stripe_charge_id = payment.charge_id
        record.charge_succeeded_at = now
        record.updated_at = now

        audit_logger.log_event(
            db=db,
            record=record,
            event_type=OverstayEventType.CHARGE_ATTEMPT,
            event_source=OverstayEventSource.SYSTEM,
            previous_status=record.status,
            new_status=record.status,
            description=(
                f"Payment {payment.payment_intent_id} succeeded after the record moved to "
                f"{record.status}; needs reconciliation"
            ),
            details={
                "payment_intent_id": payment.payment_intent_id,
                "charge_id": payment.charge_id,
                "amount_cents": amount_cents,
                "charge_idempotency_key": idempotency_key,
            }
        )
        logger.error(
            f"Overstay {record.id} was charged ({payment.payment_intent_id}) while in status "
            f"{record.status}; manual reconciliation required"
        )
