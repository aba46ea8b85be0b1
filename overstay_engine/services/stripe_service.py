# ================================
# STRIPE SERVICE (services/stripe_service.py)
# ================================

from typing import Optional, Dict
import logging

import stripe

from overstay_engine.config import settings
from overstay_engine.schemas.overstay import PaymentResult

logger = logging.getLogger(__name__)

REQUIRES_ACTION_STATUSES = ("requires_action", "requires_confirmation", "requires_payment_method")

class StripePaymentService:
    """Off-session charges against a customer's saved payment method"""

    def __init__(self, api_key: Optional[str] = None, api_version: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.api_version = api_version if api_version is not None else settings.STRIPE_API_VERSION

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _init_stripe(self) -> bool:
        if not self.api_key:
            return False
        stripe.api_key = self.api_key
        if self.api_version:
            stripe.api_version = self.api_version
        # Retries reuse the idempotency key, so they cannot double charge
        stripe.max_network_retries = 2
        return True

    def create_charge(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: Dict[str, str],
        idempotency_key: str
    ) -> PaymentResult:
        """
        Create and confirm an off-session PaymentIntent.

        Declines, authentication requirements, timeouts and API errors come
        back as ``PaymentResult(success=False)``; nothing is raised.
        """
        if not self._init_stripe():
            return PaymentResult(success=False, failure_reason="Stripe not configured")

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata=metadata,
                statement_descriptor_suffix="OVERSTAY FEE",
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            # Declines on confirm still carry the PaymentIntent
            error = getattr(e, "error", None)
            intent = getattr(error, "payment_intent", None) if error is not None else None
            intent_id = _get(intent, "id")
            code = getattr(e, "code", None) or (getattr(error, "code", None) if error is not None else None)
            logger.warning(f"Stripe card error for {idempotency_key}: {e.user_message or e}")
            return PaymentResult(
                success=False,
                payment_intent_id=intent_id,
                failure_reason=e.user_message or str(e),
                requires_action=code == "authentication_required"
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error for {idempotency_key}: {e}")
            return PaymentResult(success=False, failure_reason=f"Stripe error: {e.user_message or e}")

        status = _get(intent, "status")
        if status == "succeeded":
            latest_charge = _get(intent, "latest_charge")
            charge_id = latest_charge if isinstance(latest_charge, str) else _get(latest_charge, "id")
            return PaymentResult(success=True, payment_intent_id=_get(intent, "id"), charge_id=charge_id)

        if status in REQUIRES_ACTION_STATUSES:
            reason = "Payment requires authentication (3DS/SCA)"
        else:
            reason = f"Payment status: {status}"
        return PaymentResult(
            success=False,
            payment_intent_id=_get(intent, "id"),
            failure_reason=reason,
            requires_action=status in REQUIRES_ACTION_STATUSES
        )

def _get(obj, key: str):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)

def get_payment_service() -> StripePaymentService:
    return StripePaymentService()
